# orchestrator.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Union

from .compiler import compile_workflow
from .dispatch import JobDispatchQueue
from .errors import AssignmentTimeoutError, InvalidTransitionError, LeaseExpiredError
from .logstream import LogStream
from .model import WorkflowSpec
from .protocol import Assignment, JobResult, StepResult
from .registry import RunnerRegistry
from .scheduler import RunScheduler
from .settings import Settings
from .state import Job, LogEntry, Run, Runner, Step
from .store import MemoryStore, Store

logger = logging.getLogger(__name__)


@dataclass
class RunDetail:
    """A run with its full job/step breakdown."""
    run: Run
    jobs: List[Job]
    steps: Dict[str, List[Step]] = field(default_factory=dict)  # job id -> steps

    def job(self, name: str) -> Job:
        for job in self.jobs:
            if job.name == name:
                return job
        raise KeyError(name)

    def steps_of(self, name: str) -> List[Step]:
        return self.steps[self.job(name).id]


class Orchestrator:
    """
    Control plane: wires the registry, dispatch queue, scheduler and log
    stream around one store, and exposes the run API and the runner
    protocol (register / heartbeat / poll / report).
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or Settings()
        self.store = store or MemoryStore()
        self.registry = RunnerRegistry(
            heartbeat_interval=self.settings.heartbeat_interval,
            missed_heartbeats=self.settings.missed_heartbeats,
            offline_ttl=self.settings.runner_offline_ttl,
            clock=clock,
        )
        self.queue = JobDispatchQueue()
        self.logs = LogStream(self.store)
        self.scheduler = RunScheduler(
            self.store,
            self.queue,
            self.registry,
            self.logs,
            cancel_grace=self.settings.cancel_grace,
        )
        self._sweeper: Optional[asyncio.Task] = None

    async def start(self, *, sweep: bool = True) -> None:
        await self.store.init()
        if sweep and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="runner-sweeper")

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.scheduler.shutdown()
        await self.store.close()

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def submit(
        self,
        source: Union[str, WorkflowSpec],
        inputs: Optional[Dict[str, str]] = None,
        *,
        start: bool = True,
    ) -> Run:
        """
        Compile and create a run (and start it unless start=False).
        Compile errors propagate before anything is persisted.
        """
        compiled = compile_workflow(source)
        run = await self.scheduler.create_run(compiled, inputs)
        if start:
            run = await self.scheduler.start(run.id)
        return run

    async def start_run(self, run_id: str) -> Run:
        return await self.scheduler.start(run_id)

    async def cancel(self, run_id: str, reason: str = "cancelled") -> Run:
        run = await self.store.get_run(run_id)
        if run.status.terminal:
            raise InvalidTransitionError("run", run_id, run.status.value, "cancel")
        return await self.scheduler.cancel(run_id, reason)

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> Run:
        return await self.scheduler.wait(run_id, timeout)

    async def get_run(self, run_id: str) -> RunDetail:
        run = await self.store.get_run(run_id)
        jobs = await self.store.list_jobs(run_id)
        steps = {job.id: await self.store.list_steps(job.id) for job in jobs}
        return RunDetail(run=run, jobs=jobs, steps=steps)

    async def list_runs(self, limit: int = 50) -> List[Run]:
        return await self.store.list_runs(limit)

    def subscribe(self, run_id: str, since_seq: int = 0) -> AsyncIterator[LogEntry]:
        return self.logs.subscribe(run_id, since_seq)

    # ------------------------------------------------------------------
    # Runner protocol
    # ------------------------------------------------------------------

    async def register(self, runner_id: str, tags: Iterable[str] = (), version: str = "") -> Runner:
        runner = self.registry.register(runner_id, tags, version)
        await self.store.save_runner(runner)
        return runner

    async def heartbeat(self, runner_id: str) -> List[str]:
        """Refresh liveness; returns the held job ids the runner must cancel."""
        runner = self.registry.heartbeat(runner_id)
        await self.store.save_runner(runner)
        held = [lease.job_id for lease in self.queue.leases_of(runner_id)]
        return self.scheduler.pending_cancellations(held)

    async def list_runners(self) -> List[Runner]:
        return self.registry.list()

    async def poll(
        self,
        runner_id: str,
        tags: Optional[Iterable[str]] = None,
        wait: Optional[float] = None,
    ) -> Optional[Assignment]:
        """
        Hand the runner its next job, waiting up to `wait` seconds
        (settings.poll_wait by default). Returns None when there is no work.
        """
        runner = self.registry.heartbeat(runner_id)  # a poll proves liveness
        if tags is not None and frozenset(tags) != runner.tags:
            runner = self.registry.register(runner_id, tags, runner.version)
        if not self.registry.is_available(runner_id):
            return None

        wait = self.settings.poll_wait if wait is None else wait
        deadline = time.monotonic() + wait
        while True:
            try:
                lease = await self.queue.wait_dispatch(
                    runner_id, runner.tags, timeout=max(0.0, deadline - time.monotonic())
                )
            except AssignmentTimeoutError as e:
                logger.debug("%s", e)
                return None

            try:
                runner = self.registry.acquire(runner_id, lease.job_id)
            except InvalidTransitionError:
                self.queue.requeue(lease)
                return None

            assignment = await self.scheduler.on_dispatched(lease)
            if assignment is not None:
                await self.store.save_runner(runner)
                logger.info("job %s (run %s) assigned to %s", lease.job_id, lease.run_id, runner_id)
                return assignment
            self.registry.release(runner_id, lease.job_id)

    async def report_step(self, result: StepResult) -> None:
        await self.scheduler.on_step_result(result)

    async def report_job(self, result: JobResult) -> None:
        await self.scheduler.on_job_result(result)

    async def append_log(self, step_id: str, lease_id: str, level: str, content: str) -> LogEntry:
        if not self.scheduler.lease_is_current(step_id, lease_id):
            step = await self.store.get_step(step_id)
            raise LeaseExpiredError(step.job_id, lease_id)
        return await self.logs.append(step_id, level, content)

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def sweep(self) -> None:
        """Expire silent runners and hand their jobs back to the queue."""
        expired, removed = self.registry.sweep()
        for runner, _held in expired:
            await self.store.save_runner(runner)
            for lease in self.queue.leases_of(runner.id):
                if self.queue.revoke(lease.job_id) is not None:
                    await self.scheduler.on_lease_expired(lease)
        for runner_id in removed:
            await self.store.delete_runner(runner_id)

    async def _sweep_loop(self) -> None:
        interval = self.settings.effective_sweep_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("runner sweep failed")
