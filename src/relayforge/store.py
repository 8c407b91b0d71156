# store.py
"""
Durable store collaborator.

The orchestrator only treats a transition as applied once the store call
returns. `MemoryStore` keeps copies of every record so callers never alias
stored state.
"""
from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Dict, List

from .errors import NotFoundError
from .state import Job, LogEntry, Run, Runner, Step


class Store(ABC):
    """Create/read/update/query over runs, jobs, steps, runners and logs."""

    async def init(self) -> None:
        """Prepare the backing storage (create tables, ...)."""

    async def close(self) -> None:
        """Release connections."""

    # runs
    @abstractmethod
    async def create_run(self, run: Run, jobs: List[Job], steps: List[Step]) -> None:
        """Persist a run with all of its jobs and steps atomically."""

    @abstractmethod
    async def get_run(self, run_id: str) -> Run: ...

    @abstractmethod
    async def update_run(self, run: Run) -> None: ...

    @abstractmethod
    async def list_runs(self, limit: int = 50) -> List[Run]: ...

    # jobs
    @abstractmethod
    async def get_job(self, job_id: str) -> Job: ...

    @abstractmethod
    async def update_job(self, job: Job) -> None: ...

    @abstractmethod
    async def list_jobs(self, run_id: str) -> List[Job]: ...

    # steps
    @abstractmethod
    async def get_step(self, step_id: str) -> Step: ...

    @abstractmethod
    async def update_step(self, step: Step) -> None: ...

    @abstractmethod
    async def list_steps(self, job_id: str) -> List[Step]: ...

    # runners
    @abstractmethod
    async def save_runner(self, runner: Runner) -> None: ...

    @abstractmethod
    async def delete_runner(self, runner_id: str) -> None: ...

    @abstractmethod
    async def list_runners(self) -> List[Runner]: ...

    # logs
    @abstractmethod
    async def add_log(self, entry: LogEntry) -> None: ...

    @abstractmethod
    async def list_logs(self, run_id: str, after_seq: int = 0) -> List[LogEntry]: ...


class MemoryStore(Store):
    """In-process store used by tests and `relayforge run`."""

    def __init__(self):
        self._runs: Dict[str, Run] = {}
        self._jobs: Dict[str, Job] = {}
        self._steps: Dict[str, Step] = {}
        self._runners: Dict[str, Runner] = {}
        self._logs: Dict[str, List[LogEntry]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _lookup(table: dict, kind: str, ident: str):
        record = table.get(ident)
        if record is None:
            raise NotFoundError(kind, ident)
        return copy.copy(record)

    async def create_run(self, run: Run, jobs: List[Job], steps: List[Step]) -> None:
        async with self._lock:
            self._runs[run.id] = copy.copy(run)
            for job in jobs:
                self._jobs[job.id] = copy.copy(job)
            for step in steps:
                self._steps[step.id] = copy.copy(step)
            self._logs[run.id] = []

    async def get_run(self, run_id: str) -> Run:
        return self._lookup(self._runs, "run", run_id)

    async def update_run(self, run: Run) -> None:
        if run.id not in self._runs:
            raise NotFoundError("run", run.id)
        self._runs[run.id] = copy.copy(run)

    async def list_runs(self, limit: int = 50) -> List[Run]:
        runs = sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)
        return [copy.copy(r) for r in runs[:limit]]

    async def get_job(self, job_id: str) -> Job:
        return self._lookup(self._jobs, "job", job_id)

    async def update_job(self, job: Job) -> None:
        if job.id not in self._jobs:
            raise NotFoundError("job", job.id)
        self._jobs[job.id] = copy.copy(job)

    async def list_jobs(self, run_id: str) -> List[Job]:
        jobs = [j for j in self._jobs.values() if j.run_id == run_id]
        return [copy.copy(j) for j in sorted(jobs, key=lambda j: j.index)]

    async def get_step(self, step_id: str) -> Step:
        return self._lookup(self._steps, "step", step_id)

    async def update_step(self, step: Step) -> None:
        if step.id not in self._steps:
            raise NotFoundError("step", step.id)
        self._steps[step.id] = copy.copy(step)

    async def list_steps(self, job_id: str) -> List[Step]:
        steps = [s for s in self._steps.values() if s.job_id == job_id]
        return [copy.copy(s) for s in sorted(steps, key=lambda s: s.index)]

    async def save_runner(self, runner: Runner) -> None:
        self._runners[runner.id] = copy.copy(runner)

    async def delete_runner(self, runner_id: str) -> None:
        self._runners.pop(runner_id, None)

    async def list_runners(self) -> List[Runner]:
        return [copy.copy(r) for r in self._runners.values()]

    async def add_log(self, entry: LogEntry) -> None:
        self._logs.setdefault(entry.run_id, []).append(entry)

    async def list_logs(self, run_id: str, after_seq: int = 0) -> List[LogEntry]:
        return [e for e in self._logs.get(run_id, []) if e.seq > after_seq]
