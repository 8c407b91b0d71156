# dispatch.py
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import AssignmentTimeoutError
from .state import new_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueEntry:
    """A Ready job waiting for a runner."""
    job_id: str
    run_id: str
    tags: frozenset
    order: int  # declaration index, tie-break within one ready batch
    ready_seq: int = 0  # assigned by the queue on first push

    @property
    def key(self) -> Tuple[int, int, str]:
        return (self.ready_seq, self.order, self.job_id)


@dataclass(frozen=True)
class Lease:
    """Exclusive binding of one queued job to one runner."""
    entry: QueueEntry
    runner_id: str
    lease_id: str = field(default_factory=new_id)

    @property
    def job_id(self) -> str:
        return self.entry.job_id

    @property
    def run_id(self) -> str:
        return self.entry.run_id


class JobDispatchQueue:
    """
    Ready jobs, classified by required tag set.

    `dispatch()` hands a runner the earliest-ready job whose tags are a
    subset of the runner's tags: FIFO by ready sequence, ties broken by
    declaration order. Popping the job and creating its lease happen under
    one lock, so a job is never leased to two runners at once.

    A re-queued job keeps its original ready sequence and goes back to its
    place at the head of its class.
    """

    def __init__(self):
        self._classes: Dict[frozenset, List[Tuple[Tuple[int, int, str], QueueEntry]]] = {}
        self._queued: Dict[str, QueueEntry] = {}
        self._leases: Dict[str, Lease] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()
        self._wakeup: Optional[asyncio.Event] = None

    def __len__(self) -> int:
        return len(self._queued)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._queued

    # ------------------------------------------------------------------
    # Producer side (scheduler)
    # ------------------------------------------------------------------

    def push(self, entries: Iterable[QueueEntry]) -> List[QueueEntry]:
        """
        Enqueue a batch of jobs that became Ready in the same transition.
        They share one ready sequence; entries that already carry a sequence
        (re-queued after a lost lease) keep it.
        """
        entries = list(entries)
        if not entries:
            return []
        pushed: List[QueueEntry] = []
        with self._lock:
            seq = next(self._seq)
            for entry in entries:
                if entry.job_id in self._queued or entry.job_id in self._leases:
                    raise ValueError(f"job {entry.job_id} is already queued or leased")
                if not entry.ready_seq:
                    entry = QueueEntry(entry.job_id, entry.run_id, entry.tags, entry.order, seq)
                heapq.heappush(self._classes.setdefault(entry.tags, []), (entry.key, entry))
                self._queued[entry.job_id] = entry
                pushed.append(entry)
        logger.debug("queued %s", [e.job_id for e in pushed])
        self._notify()
        return pushed

    def remove(self, job_id: str) -> bool:
        """Drop a job that is still waiting (skipped or cancelled). False if not queued."""
        with self._lock:
            entry = self._queued.pop(job_id, None)
            if entry is None:
                return False
            bucket = self._classes[entry.tags]
            bucket.remove((entry.key, entry))
            heapq.heapify(bucket)
            if not bucket:
                del self._classes[entry.tags]
            return True

    # ------------------------------------------------------------------
    # Consumer side (runners)
    # ------------------------------------------------------------------

    def dispatch(self, runner_id: str, tags: Iterable[str]) -> Optional[Lease]:
        """Atomically pop the best eligible job and lease it to `runner_id`."""
        runner_tags = frozenset(tags)
        with self._lock:
            best: Optional[QueueEntry] = None
            for class_tags, bucket in self._classes.items():
                if not class_tags <= runner_tags:
                    continue
                head = bucket[0][1]
                if best is None or head.key < best.key:
                    best = head
            if best is None:
                return None

            bucket = self._classes[best.tags]
            heapq.heappop(bucket)
            if not bucket:
                del self._classes[best.tags]
            del self._queued[best.job_id]

            lease = Lease(entry=best, runner_id=runner_id)
            self._leases[best.job_id] = lease
        logger.debug("job %s leased to %s (%s)", lease.job_id, runner_id, lease.lease_id)
        return lease

    async def wait_dispatch(self, runner_id: str, tags: Iterable[str], timeout: float = 0.0) -> Lease:
        """
        Long-poll variant of dispatch(). Raises AssignmentTimeoutError if no
        eligible job shows up within `timeout` seconds.
        """
        tags = frozenset(tags)
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            wakeup = self._event()
            lease = self.dispatch(runner_id, tags)
            if lease is not None:
                return lease
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AssignmentTimeoutError(runner_id, timeout)
            try:
                await asyncio.wait_for(wakeup.wait(), remaining)
            except asyncio.TimeoutError:
                raise AssignmentTimeoutError(runner_id, timeout) from None

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    def lease_for(self, job_id: str) -> Optional[Lease]:
        with self._lock:
            return self._leases.get(job_id)

    def is_current(self, job_id: str, lease_id: Optional[str]) -> bool:
        with self._lock:
            lease = self._leases.get(job_id)
            return lease is not None and lease.lease_id == lease_id

    def complete(self, job_id: str, lease_id: Optional[str] = None) -> Optional[Lease]:
        """Drop a job's lease (job finished or the binding was rejected)."""
        with self._lock:
            lease = self._leases.get(job_id)
            if lease is None or (lease_id is not None and lease.lease_id != lease_id):
                return None
            return self._leases.pop(job_id)

    def leases_of(self, runner_id: str) -> List[Lease]:
        with self._lock:
            return [l for l in self._leases.values() if l.runner_id == runner_id]

    def revoke(self, job_id: str) -> Optional[Lease]:
        """Expire a job's lease. The caller decides whether to re-queue its entry."""
        lease = self.complete(job_id)
        if lease is not None:
            logger.warning("lease %s on job %s revoked (runner %s)", lease.lease_id, job_id, lease.runner_id)
        return lease

    def requeue(self, lease: Lease) -> None:
        """Put a leased job back at its original place in the queue."""
        with self._lock:
            current = self._leases.get(lease.job_id)
            if current is not None and current.lease_id == lease.lease_id:
                del self._leases[lease.job_id]
        self.push([lease.entry])

    # ------------------------------------------------------------------

    def _event(self) -> asyncio.Event:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        return self._wakeup

    def _notify(self) -> None:
        # Wake every waiter; each one retries dispatch() against the new state.
        if self._wakeup is not None:
            self._wakeup.set()
            self._wakeup = None
