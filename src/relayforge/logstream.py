# logstream.py
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, Iterable, List

from .errors import NotFoundError
from .state import LOG_LEVELS, LogEntry
from .store import Store

logger = logging.getLogger(__name__)


class _Channel:
    """Append-only log of one run plus a wakeup for live subscribers."""

    def __init__(self, run_id: str, last_seq: int = 0):
        self.run_id = run_id
        self.entries: List[LogEntry] = []
        self.last_seq = last_seq
        self.closed = False
        self.lock = asyncio.Lock()
        self._wakeup = asyncio.Event()

    def publish(self, entry: LogEntry) -> None:
        self.entries.append(entry)
        self._notify()

    def close(self) -> None:
        self.closed = True
        self._notify()

    def changed(self) -> asyncio.Event:
        return self._wakeup

    def _notify(self) -> None:
        self._wakeup.set()
        self._wakeup = asyncio.Event()


class LogStream:
    """
    Ordered, resumable log channel per run.

    Sequence numbers are scoped to the run and assigned under the run's
    channel lock, and an entry is published to subscribers only after the
    store has accepted it, so subscribers see a gap-free sequence.
    """

    def __init__(self, store: Store):
        self.store = store
        self._channels: Dict[str, _Channel] = {}
        self._step_runs: Dict[str, str] = {}

    def open(self, run_id: str, step_ids: Iterable[str]) -> None:
        """Start a channel for a new run and index its steps."""
        if run_id not in self._channels:
            self._channels[run_id] = _Channel(run_id)
        for step_id in step_ids:
            self._step_runs[step_id] = run_id

    def close(self, run_id: str) -> None:
        """The run is terminal: subscribers finish once they have drained."""
        channel = self._channels.pop(run_id, None)
        if channel is not None:
            channel.close()
            logger.debug("log channel for run %s closed at seq %d", run_id, channel.last_seq)
        for step_id in [s for s, r in self._step_runs.items() if r == run_id]:
            del self._step_runs[step_id]

    async def append(self, step_id: str, level: str, content: str) -> LogEntry:
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level {level!r}; expected one of {LOG_LEVELS}")
        run_id = self._step_runs.get(step_id)
        channel = self._channels.get(run_id) if run_id else None
        if channel is None:
            raise NotFoundError("open log channel for step", step_id)

        async with channel.lock:
            entry = LogEntry(run_id=run_id, step_id=step_id, seq=channel.last_seq + 1, level=level, content=content)
            await self.store.add_log(entry)
            channel.last_seq = entry.seq
            channel.publish(entry)
        return entry

    async def subscribe(self, run_id: str, since_seq: int = 0) -> AsyncIterator[LogEntry]:
        """
        Yield entries with seq > since_seq in order. Keeps waiting for new
        entries while the run is live; completes once the run is terminal
        and everything has been delivered.
        """
        channel = self._channels.get(run_id)
        if channel is None:
            # Finished (or not owned by this process): replay what was stored.
            for entry in await self.store.list_logs(run_id, since_seq):
                yield entry
            return

        cursor = max(since_seq, 0)
        while True:
            changed = channel.changed()
            pending = self._after(channel, cursor)
            for entry in pending:
                yield entry
                cursor = entry.seq
            if pending:
                continue
            if channel.closed:
                return
            await changed.wait()

    @staticmethod
    def _after(channel: _Channel, cursor: int) -> List[LogEntry]:
        # entries[i].seq == i + 1 for a channel opened at seq 0
        return channel.entries[cursor:]
