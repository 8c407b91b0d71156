# scheduler.py
"""
Run lifecycle state machine.

Every run is owned by one `_RunActor`: a task draining a command inbox
(start, dispatched, step-result, job-result, lease-expired, cancel, ...).
All transitions of a run are applied one command at a time, while separate
runs proceed concurrently. Callers get the outcome of their command (or
its exception) through a reply future.
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .dag import CompiledWorkflow
from .dispatch import JobDispatchQueue, Lease, QueueEntry
from .errors import InvalidTransitionError, LeaseExpiredError
from .logstream import LogStream
from .protocol import AssignedStep, Assignment, JobPayload, JobResult, StepResult
from .registry import RunnerRegistry
from .state import Job, JobStatus, Run, RunStatus, Step, StepStatus, now_utc
from .store import Store

logger = logging.getLogger(__name__)


@dataclass
class _Command:
    kind: str
    payload: Any = None
    reply: Optional[asyncio.Future] = None


_STOP = _Command("stop")


def input_env(inputs: Dict[str, str]) -> Dict[str, str]:
    """Run inputs become INPUT_<NAME> environment variables."""
    return {"INPUT_" + re.sub(r"[^A-Za-z0-9]", "_", k).upper(): str(v) for k, v in inputs.items()}


class _RunActor:
    """Single owner of one run's jobs and steps (an arena indexed like the compiled graph)."""

    def __init__(self, scheduler: RunScheduler, compiled: CompiledWorkflow, run: Run, jobs: List[Job], steps: List[List[Step]]):
        self.scheduler = scheduler
        self.compiled = compiled
        self.run = run
        self.jobs = jobs
        self.steps = steps
        self.slot_of_job: Dict[str, int] = {j.id: j.index for j in jobs}
        self.slot_of_step: Dict[str, Tuple[int, int]] = {
            s.id: (s_job, s.index) for s_job, job_steps in enumerate(steps) for s in job_steps
        }
        # job slot -> step index -> step reports that arrived ahead of their predecessors
        self._early: Dict[int, Dict[int, List[StepResult]]] = defaultdict(dict)
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.done: asyncio.Future = asyncio.get_running_loop().create_future()
        self.closed = False
        self.task = asyncio.create_task(self._loop(), name=f"run-{run.id}")

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    def submit(self, kind: str, payload: Any = None) -> asyncio.Future:
        reply = asyncio.get_running_loop().create_future()
        self.inbox.put_nowait(_Command(kind, payload, reply))
        return reply

    def post(self, kind: str, payload: Any = None) -> None:
        self.inbox.put_nowait(_Command(kind, payload))

    async def _loop(self) -> None:
        while not (self.closed and self.inbox.empty()):
            cmd = await self.inbox.get()
            if cmd is _STOP:
                break
            try:
                result = await self._apply(cmd)
            except Exception as exc:
                if cmd.reply is None:
                    logger.exception("run %s: %s failed", self.run.id, cmd.kind)
                elif not cmd.reply.done():
                    cmd.reply.set_exception(exc)
            else:
                if cmd.reply is not None and not cmd.reply.done():
                    cmd.reply.set_result(result)

    async def _apply(self, cmd: _Command) -> Any:
        handler = {
            "start": self._start,
            "cancel": self._cancel,
            "dispatched": self._on_dispatched,
            "step_result": self._on_step_result,
            "job_result": self._on_job_result,
            "lease_expired": self._on_lease_expired,
            "cancel_timeout": self._on_cancel_timeout,
        }[cmd.kind]
        return await handler(cmd.payload)

    def _schedule(self, key: str, delay: float, kind: str, payload: Any = None) -> None:
        self._cancel_timer(key)
        self._timers[key] = asyncio.get_running_loop().call_later(delay, self.post, kind, payload)

    def _cancel_timer(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @property
    def store(self) -> Store:
        return self.scheduler.store

    async def _save_job(self, job: Job) -> None:
        await self.store.update_job(job)
        logger.debug("run %s job %s -> %s", self.run.id, job.name, job.status.value)

    def _entry(self, i: int) -> QueueEntry:
        return QueueEntry(
            job_id=self.jobs[i].id,
            run_id=self.run.id,
            tags=self.compiled.job(i).tags,
            order=i,
        )

    def _check_lease(self, job: Job, lease_id: Optional[str]) -> None:
        if job.lease_id is None or job.lease_id != lease_id:
            raise LeaseExpiredError(job.id, lease_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _start(self, _payload: Any = None) -> Run:
        if self.run.status != RunStatus.PENDING:
            raise InvalidTransitionError("run", self.run.id, self.run.status.value, "start")

        self.run.status = RunStatus.RUNNING
        self.run.started_at = now_utc()
        await self.store.update_run(self.run)
        logger.info("run %s (%s) started with %d job(s)", self.run.id, self.compiled.name, len(self.jobs))

        timeout = self.compiled.spec.timeout
        if timeout:
            self._schedule("run-timeout", timeout, "cancel", f"timed out after {timeout:g}s")

        await self._make_ready(self.compiled.roots())
        await self._maybe_finish()
        return replace(self.run)

    async def _cancel(self, reason: Optional[str] = None) -> Run:
        if self.run.status.terminal:
            raise InvalidTransitionError("run", self.run.id, self.run.status.value, "cancel")
        if self.run.cancel_requested:
            return replace(self.run)

        reason = reason or "cancelled"
        self.run.cancel_requested = True
        self.run.error = reason
        await self.store.update_run(self.run)
        logger.info("run %s cancellation requested (%s)", self.run.id, reason)

        waiting = [i for i, j in enumerate(self.jobs) if j.status in (JobStatus.PENDING, JobStatus.READY)]
        await self._skip(waiting, f"run {reason}")

        grace = self.scheduler.cancel_grace
        for i, job in enumerate(self.jobs):
            if not job.status.active:
                continue
            job.cancel_requested = True
            await self._save_job(job)
            self.scheduler.cancel_signals.add(job.id)
            self._schedule(f"cancel:{job.id}", grace, "cancel_timeout", (i, job.lease_id))

        await self._maybe_finish()
        return replace(self.run)

    async def _on_dispatched(self, lease: Lease) -> Optional[Assignment]:
        i = self.slot_of_job[lease.job_id]
        job = self.jobs[i]
        if job.status != JobStatus.READY or self.run.cancel_requested:
            # Skipped or cancelled between the queue pop and this command.
            self.scheduler.queue.complete(job.id, lease.lease_id)
            return None

        job.status = JobStatus.DISPATCHED
        job.runner_id = lease.runner_id
        job.lease_id = lease.lease_id
        await self._save_job(job)
        return self._assignment(i, lease)

    async def _on_step_result(self, result: StepResult) -> None:
        i, k = self.slot_of_step[result.step_id]
        job = self.jobs[i]
        self._check_lease(job, result.lease_id)
        if result.status == StepStatus.PENDING:
            raise InvalidTransitionError("step", result.step_id, self.steps[i][k].status.value, "report pending for")

        if not all(s.status.terminal for s in self.steps[i][:k]):
            # Step k reported before an earlier step finished: hold it.
            self._early[i].setdefault(k, []).append(result)
            logger.debug("run %s: buffered early result for %s step %d", self.run.id, job.name, k)
            return

        await self._apply_step(i, k, result)
        await self._flush_early(i)

    async def _on_job_result(self, result: JobResult) -> None:
        i = self.slot_of_job[result.job_id]
        job = self.jobs[i]
        self._check_lease(job, result.lease_id)
        if result.status not in (JobStatus.SUCCESS, JobStatus.FAILED):
            raise InvalidTransitionError("job", job.id, job.status.value, f"report {result.status.value} for")

        status = result.status
        if result.cancelled and (job.cancel_requested or self.run.cancel_requested):
            status = JobStatus.CANCELLED
        await self._finish_job(i, status, result.error)

    async def _on_lease_expired(self, lease: Lease) -> None:
        i = self.slot_of_job[lease.job_id]
        job = self.jobs[i]
        if job.lease_id != lease.lease_id or not job.status.active:
            return

        if job.cancel_requested or self.run.cancel_requested:
            await self._finish_job(i, JobStatus.CANCELLED, f"runner {job.runner_id} lost during cancellation")
            return

        logger.warning("%s; re-queueing job %s", LeaseExpiredError(job.id, lease.lease_id), job.name)
        job.status = JobStatus.READY
        job.runner_id = None
        job.lease_id = None
        job.started_at = None
        await self._save_job(job)
        for step in self.steps[i]:
            step.status = StepStatus.PENDING
            step.exit_code = None
            step.output = step.error = ""
            step.started_at = step.finished_at = None
            await self.store.update_step(step)
        self._early.pop(i, None)
        self.scheduler.queue.requeue(lease)

    async def _on_cancel_timeout(self, payload: Tuple[int, Optional[str]]) -> None:
        i, lease_id = payload
        job = self.jobs[i]
        if job.status.terminal or job.lease_id != lease_id:
            return
        grace = self.scheduler.cancel_grace
        logger.warning("run %s: job %s did not acknowledge cancellation within %gs", self.run.id, job.name, grace)
        self.scheduler.queue.revoke(job.id)
        await self._finish_job(i, JobStatus.CANCELLED, f"runner did not acknowledge cancellation within {grace:g}s")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _make_ready(self, slots: Iterable[int]) -> None:
        slots = list(slots)
        for i in slots:
            job = self.jobs[i]
            job.status = JobStatus.READY
            await self._save_job(job)
        self.scheduler.queue.push(self._entry(i) for i in slots)

    async def _skip(self, slots: Iterable[int], reason: str) -> None:
        for i in slots:
            job = self.jobs[i]
            if job.status not in (JobStatus.PENDING, JobStatus.READY):
                continue
            if job.status == JobStatus.READY:
                self.scheduler.queue.remove(job.id)
            job.status = JobStatus.SKIPPED
            job.error = reason
            job.finished_at = now_utc()
            await self._save_job(job)
            for step in self.steps[i]:
                step.status = StepStatus.SKIPPED
                await self.store.update_step(step)

    async def _apply_step(self, i: int, k: int, result: StepResult) -> None:
        job = self.jobs[i]
        step = self.steps[i][k]
        if step.status.terminal:
            return

        if job.status == JobStatus.DISPATCHED:
            job.status = JobStatus.RUNNING
            job.started_at = now_utc()
            await self._save_job(job)

        step.status = result.status
        step.started_at = result.started_at or step.started_at or now_utc()
        if result.status.terminal:
            step.exit_code = result.exit_code
            step.output = result.output
            step.error = result.error
            step.finished_at = result.finished_at or now_utc()
        await self.store.update_step(step)

    async def _flush_early(self, i: int) -> None:
        early = self._early.get(i)
        while early:
            k = min(early)
            if not all(s.status.terminal for s in self.steps[i][:k]):
                return
            for result in early.pop(k):
                await self._apply_step(i, k, result)

    async def _finish_job(self, i: int, status: JobStatus, error: Optional[str]) -> None:
        job = self.jobs[i]
        job.status = status
        job.error = error
        job.finished_at = now_utc()
        lease_id, job.lease_id = job.lease_id, None
        job.cancel_requested = False
        await self._save_job(job)

        for step in self.steps[i]:
            if step.status.terminal:
                continue
            if step.status == StepStatus.RUNNING and status == JobStatus.CANCELLED:
                step.status = StepStatus.CANCELLED
            else:
                step.status = StepStatus.SKIPPED
            step.finished_at = now_utc()
            await self.store.update_step(step)
        self._early.pop(i, None)

        self._cancel_timer(f"cancel:{job.id}")
        self.scheduler.cancel_signals.discard(job.id)
        self.scheduler.queue.complete(job.id, lease_id)
        if job.runner_id:
            runner = self.scheduler.registry.release(job.runner_id, job.id)
            if runner is not None:
                await self.store.save_runner(runner)

        logger.info("run %s job %s finished: %s", self.run.id, job.name, status.value)

        if status == JobStatus.SUCCESS:
            await self._release_dependents(i)
        else:
            reason = f"dependency '{job.name}' {status.value}"
            await self._skip(self.compiled.transitive_dependents(i), reason)
        await self._maybe_finish()

    async def _release_dependents(self, i: int) -> None:
        ready: List[int] = []
        for d in self.compiled.dependents[i]:
            if self.jobs[d].status != JobStatus.PENDING:
                continue
            needed = [self.jobs[n].status for n in self.compiled.needs[d]]
            if all(s == JobStatus.SUCCESS for s in needed):
                ready.append(d)
        if self.run.cancel_requested:
            await self._skip(ready, f"run {self.run.error or 'cancelled'}")
        else:
            await self._make_ready(ready)

    async def _maybe_finish(self) -> None:
        if self.run.status.terminal:
            return
        if self.run.status == RunStatus.PENDING and not self.run.cancel_requested:
            return
        if any(not j.status.terminal for j in self.jobs):
            return

        if any(j.status == JobStatus.FAILED for j in self.jobs):
            self.run.status = RunStatus.FAILED
        elif self.run.cancel_requested:
            self.run.status = RunStatus.CANCELLED
        else:
            self.run.status = RunStatus.SUCCESS
        self.run.finished_at = now_utc()
        await self.store.update_run(self.run)

        for key in list(self._timers):
            self._cancel_timer(key)
        self.scheduler.logs.close(self.run.id)
        self.scheduler._retire(self)
        self.closed = True
        if not self.done.done():
            self.done.set_result(replace(self.run))
        logger.info("run %s finished: %s", self.run.id, self.run.status.value)

    # ------------------------------------------------------------------

    def _assignment(self, i: int, lease: Lease) -> Assignment:
        spec = self.compiled.job(i)
        env = input_env(self.run.inputs)
        env.update(spec.env)
        steps = [
            AssignedStep(
                step_id=record.id,
                name=s.name,
                run=s.run,
                kind=s.kind,
                env=dict(s.env),
                cwd=s.cwd,
                continue_on_error=s.continue_on_error,
                timeout=s.timeout,
            )
            for s, record in zip(spec.steps, self.steps[i])
        ]
        return Assignment(
            job_id=self.jobs[i].id,
            run_id=self.run.id,
            lease_id=lease.lease_id,
            job_spec=JobPayload(
                name=spec.name,
                tags=sorted(spec.tags),
                env=env,
                timeout=spec.timeout,
                steps=steps,
            ),
        )


class RunScheduler:
    """
    Creates runs from compiled workflows and routes commands to their actors.

    The dispatch queue, runner registry, log stream and store are injected;
    the scheduler mutates them only through their own operations.
    """

    def __init__(
        self,
        store: Store,
        queue: JobDispatchQueue,
        registry: RunnerRegistry,
        logs: LogStream,
        *,
        cancel_grace: float = 30.0,
    ):
        self.store = store
        self.queue = queue
        self.registry = registry
        self.logs = logs
        self.cancel_grace = cancel_grace
        # job ids whose runner must be told to stop (read by heartbeats)
        self.cancel_signals: Set[str] = set()
        self._actors: Dict[str, _RunActor] = {}
        self._job_runs: Dict[str, str] = {}
        self._step_runs: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def create_run(self, compiled: CompiledWorkflow, inputs: Optional[Dict[str, str]] = None) -> Run:
        """Persist a Pending run with all of its jobs and steps."""
        run = Run(workflow=compiled.spec, inputs=dict(inputs or {}))
        jobs: List[Job] = [Job(run_id=run.id, name=name, index=i) for i, name in enumerate(compiled.names)]
        steps: List[List[Step]] = []
        for i, job in enumerate(jobs):
            job.needs = tuple(jobs[n].id for n in compiled.needs[i])
            steps.append([
                Step(
                    run_id=run.id,
                    job_id=job.id,
                    index=k,
                    name=s.name,
                    command=s.run,
                    continue_on_error=s.continue_on_error,
                )
                for k, s in enumerate(compiled.job(i).steps)
            ])

        flat = [s for job_steps in steps for s in job_steps]
        await self.store.create_run(run, jobs, flat)
        self.logs.open(run.id, (s.id for s in flat))

        self._actors[run.id] = _RunActor(self, compiled, run, jobs, steps)
        for job in jobs:
            self._job_runs[job.id] = run.id
        for step in flat:
            self._step_runs[step.id] = run.id
        return replace(run)

    async def start(self, run_id: str) -> Run:
        return await self._actor(run_id, "start").submit("start")

    async def cancel(self, run_id: str, reason: str = "cancelled") -> Run:
        return await self._actor(run_id, "cancel").submit("cancel", reason)

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> Run:
        """Wait until a run is terminal and return its final record."""
        actor = self._actors.get(run_id)
        if actor is None:
            return await self.store.get_run(run_id)
        return await asyncio.wait_for(asyncio.shield(actor.done), timeout)

    # ------------------------------------------------------------------
    # Dispatch / results
    # ------------------------------------------------------------------

    async def on_dispatched(self, lease: Lease) -> Optional[Assignment]:
        actor = self._actors.get(lease.run_id)
        if actor is None:
            self.queue.complete(lease.job_id, lease.lease_id)
            return None
        return await actor.submit("dispatched", lease)

    async def on_step_result(self, result: StepResult) -> None:
        actor = await self._actor_for(self._step_runs, "step", result.step_id, result.lease_id)
        await actor.submit("step_result", result)

    async def on_job_result(self, result: JobResult) -> None:
        actor = await self._actor_for(self._job_runs, "job", result.job_id, result.lease_id)
        await actor.submit("job_result", result)

    async def on_lease_expired(self, lease: Lease) -> None:
        actor = self._actors.get(lease.run_id)
        if actor is not None:
            await actor.submit("lease_expired", lease)

    def lease_is_current(self, step_id: str, lease_id: Optional[str]) -> bool:
        """True if `lease_id` is the active lease of the job owning `step_id`."""
        actor = self._actors.get(self._step_runs.get(step_id, ""))
        if actor is None or step_id not in actor.slot_of_step:
            return False
        job = actor.jobs[actor.slot_of_step[step_id][0]]
        return job.lease_id is not None and job.lease_id == lease_id

    def pending_cancellations(self, job_ids: Iterable[Optional[str]]) -> List[str]:
        return [j for j in job_ids if j and j in self.cancel_signals]

    # ------------------------------------------------------------------

    def _actor(self, run_id: str, operation: str) -> _RunActor:
        actor = self._actors.get(run_id)
        if actor is None:
            raise InvalidTransitionError("run", run_id, "finished or unknown", operation)
        return actor

    async def _actor_for(self, index: Dict[str, str], kind: str, ident: str, lease_id: Optional[str]) -> _RunActor:
        run_id = index.get(ident)
        if run_id is None:
            record = await (self.store.get_step(ident) if kind == "step" else self.store.get_job(ident))
            run_id = record.run_id
        actor = self._actors.get(run_id)
        if actor is None:
            # The run is already terminal, so no lease on it can be active.
            job_id = ident if kind == "job" else (await self.store.get_step(ident)).job_id
            raise LeaseExpiredError(job_id, lease_id)
        return actor

    def _retire(self, actor: _RunActor) -> None:
        self._actors.pop(actor.run.id, None)
        for job in actor.jobs:
            self._job_runs.pop(job.id, None)
            self.cancel_signals.discard(job.id)
        for step_id in actor.slot_of_step:
            self._step_runs.pop(step_id, None)

    async def shutdown(self) -> None:
        """Drain every actor's inbox, then join the actor tasks."""
        actors = list(self._actors.values())
        for actor in actors:
            actor.inbox.put_nowait(_STOP)
        await asyncio.gather(*(a.task for a in actors), return_exceptions=True)
        for actor in actors:
            for key in list(actor._timers):
                actor._cancel_timer(key)
        self._actors.clear()

