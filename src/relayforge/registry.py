# registry.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import InvalidTransitionError, NotFoundError
from .state import Runner, RunnerStatus

logger = logging.getLogger(__name__)


class RunnerRegistry:
    """
    Tracks connected runners: tags, liveness and busy/idle state.

    A runner that misses `missed_heartbeats` consecutive heartbeats (no
    heartbeat for heartbeat_interval * missed_heartbeats seconds) goes
    Offline; `sweep()` reports the job it was holding so it can be
    reclaimed. Offline runners are removed after `offline_ttl`.

    All methods are synchronous and run under one lock, so every operation
    is exclusive.
    """

    def __init__(
        self,
        *,
        heartbeat_interval: float = 10.0,
        missed_heartbeats: int = 3,
        offline_ttl: float = 600.0,
        clock: Callable[[], float] = time.time,
    ):
        if missed_heartbeats < 1:
            raise ValueError("missed_heartbeats must be >= 1")
        self.heartbeat_interval = heartbeat_interval
        self.missed_heartbeats = missed_heartbeats
        self.offline_ttl = offline_ttl
        self._clock = clock
        self._runners: Dict[str, Runner] = {}
        self._lock = threading.Lock()

    @property
    def lease_window(self) -> float:
        return self.heartbeat_interval * self.missed_heartbeats

    def _get(self, runner_id: str) -> Runner:
        runner = self._runners.get(runner_id)
        if runner is None:
            raise NotFoundError("runner", runner_id)
        return runner

    def register(self, runner_id: str, tags: Iterable[str] = (), version: str = "") -> Runner:
        """Add or refresh a runner. A busy runner keeps its assignment."""
        with self._lock:
            now = self._clock()
            runner = self._runners.get(runner_id)
            if runner is None:
                runner = Runner(id=runner_id, tags=frozenset(tags), version=version, last_heartbeat=now)
                self._runners[runner_id] = runner
                logger.info("runner %s registered tags=%s", runner_id, sorted(runner.tags))
            else:
                runner.tags = frozenset(tags)
                runner.version = version
                runner.last_heartbeat = now
                if runner.status == RunnerStatus.OFFLINE:
                    runner.status = RunnerStatus.ONLINE
            return replace(runner)

    def heartbeat(self, runner_id: str) -> Runner:
        with self._lock:
            runner = self._get(runner_id)
            runner.last_heartbeat = self._clock()
            if runner.status == RunnerStatus.OFFLINE:
                # Whatever it held was reclaimed when it went offline.
                runner.status = RunnerStatus.ONLINE
                runner.job_id = None
                logger.info("runner %s back online", runner_id)
            return replace(runner)

    def get(self, runner_id: str) -> Runner:
        with self._lock:
            return replace(self._get(runner_id))

    def list(self) -> List[Runner]:
        with self._lock:
            return [replace(r) for r in self._runners.values()]

    def is_available(self, runner_id: str) -> bool:
        """Only Online, non-busy runners are eligible for new work."""
        with self._lock:
            runner = self._runners.get(runner_id)
            return runner is not None and runner.status == RunnerStatus.ONLINE

    def acquire(self, runner_id: str, job_id: str) -> Runner:
        """Mark a runner Busy with one job."""
        with self._lock:
            runner = self._get(runner_id)
            if runner.status != RunnerStatus.ONLINE:
                raise InvalidTransitionError("runner", runner_id, runner.status.value, "assign a job to")
            runner.status = RunnerStatus.BUSY
            runner.job_id = job_id
            return replace(runner)

    def release(self, runner_id: str, job_id: Optional[str] = None) -> Optional[Runner]:
        """
        Return a runner to Online. When `job_id` is given, only release if the
        runner is still holding that job.
        """
        with self._lock:
            runner = self._runners.get(runner_id)
            if runner is None:
                return None
            if job_id is not None and runner.job_id != job_id:
                return replace(runner)
            runner.job_id = None
            if runner.status == RunnerStatus.BUSY:
                runner.status = RunnerStatus.ONLINE
            return replace(runner)

    def sweep(self) -> Tuple[List[Tuple[Runner, Optional[str]]], List[str]]:
        """
        Mark silent runners Offline and prune long-gone ones.

        Returns ([(runner, held_job_id), ...] for runners that went Offline
        in this sweep, [ids of removed runners]).
        """
        expired: List[Tuple[Runner, Optional[str]]] = []
        removed: List[str] = []
        with self._lock:
            now = self._clock()
            for runner_id, runner in list(self._runners.items()):
                silence = now - runner.last_heartbeat
                if runner.status != RunnerStatus.OFFLINE and silence > self.lease_window:
                    held = runner.job_id
                    runner.status = RunnerStatus.OFFLINE
                    runner.job_id = None
                    logger.warning(
                        "runner %s offline after %.1fs of silence (held job %s)", runner_id, silence, held
                    )
                    expired.append((replace(runner), held))
                elif runner.status == RunnerStatus.OFFLINE and silence > self.offline_ttl:
                    del self._runners[runner_id]
                    removed.append(runner_id)
                    logger.info("runner %s removed after %.0fs offline", runner_id, silence)
        return expired, removed
