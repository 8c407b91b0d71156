# agent/executor.py
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from relayforge.errors import CancellationError, ExecutionError
from relayforge.model import SHELL
from relayforge.protocol import AssignedStep, Assignment, JobResult, StepResult
from relayforge.state import JobStatus, StepStatus, now_utc

from .api_client import APIError
from .models import JobOutcome, StepOutcome

logger = logging.getLogger(__name__)

# (step_id, level, line) -> None
LogEmitter = Callable[[str, str, str], Awaitable[None]]

_READ_CHUNK = 64 * 1024
# longer lines are forwarded in pieces of this size
_MAX_LINE = 1024 * 1024

REPORT_ATTEMPTS = 4
REPORT_BACKOFF = 0.1


class StepExecutor:
    """
    Runs step commands as isolated subprocesses, one at a time.

    stdout and stderr are captured separately and forwarded line by line to
    `emit` (info / error). `cancel()` terminates the active subprocess and
    makes every later `execute()` return Cancelled without running.
    """

    def __init__(self, work_dir: Path = Path("."), emit: Optional[LogEmitter] = None, kill_grace: float = 5.0):
        self.work_dir = Path(work_dir)
        self.emit = emit
        self.kill_grace = kill_grace
        self.cancelled = False
        self._proc: Optional[asyncio.subprocess.Process] = None

    def cancel(self) -> None:
        self.cancelled = True
        proc = self._proc
        if proc is not None and proc.returncode is None:
            _signal_group(proc, signal.SIGTERM)
            asyncio.get_running_loop().call_later(self.kill_grace, _kill_if_alive, proc)

    async def execute(self, step: AssignedStep, job_env: Dict[str, str], timeout: Optional[float] = None) -> StepOutcome:
        """
        Run one step. Environment is os.environ + job env + step env (step
        wins on collision). `timeout` overrides the step's own timeout.
        """
        started = now_utc()
        timeout = step.timeout if timeout is None else timeout

        if self.cancelled:
            return StepOutcome(step.step_id, StepStatus.CANCELLED, error="cancelled", started_at=started, finished_at=started)
        if step.kind != SHELL:
            return await self._refuse(step, started, f"unsupported step kind {step.kind!r}")

        cwd = (self.work_dir / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            return await self._refuse(step, started, f"working directory not found: {cwd}")

        env = os.environ.copy()
        env.update(job_env)
        env.update(step.env)

        proc = await asyncio.create_subprocess_shell(
            step.run,
            cwd=str(cwd),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        self._proc = proc
        out: List[str] = []
        err: List[str] = []
        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    self._pump(step.step_id, proc.stdout, "info", out),
                    self._pump(step.step_id, proc.stderr, "error", err),
                    proc.wait(),
                ),
                timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            await self._terminate(proc)
        except BaseException:
            await self._terminate(proc)
            raise
        finally:
            self._proc = None

        outcome = StepOutcome(
            step_id=step.step_id,
            status=StepStatus.SUCCESS,
            exit_code=proc.returncode,
            output="".join(out),
            error="".join(err),
            started_at=started,
            finished_at=now_utc(),
        )
        if self.cancelled:
            outcome.status = StepStatus.CANCELLED
        elif timed_out:
            outcome.status = StepStatus.FAILED
            outcome.error += f"timed out after {timeout:g}s\n"
        elif proc.returncode != 0:
            outcome.status = StepStatus.FAILED
        return outcome

    async def _pump(self, step_id: str, stream: asyncio.StreamReader, level: str, chunks: List[str]) -> None:
        """
        Forward a stream line by line. Reads fixed-size chunks rather than
        readline() so a line of any length is captured; lines over _MAX_LINE
        bytes are emitted in pieces.
        """
        pending = b""
        while True:
            data = await stream.read(_READ_CHUNK)
            if not data:
                break
            pending += data
            *lines, pending = pending.split(b"\n")
            for line in lines:
                await self._forward(step_id, level, line + b"\n", chunks)
            while len(pending) >= _MAX_LINE:
                piece, pending = pending[:_MAX_LINE], pending[_MAX_LINE:]
                await self._forward(step_id, level, piece, chunks)
        if pending:
            await self._forward(step_id, level, pending, chunks)

    async def _forward(self, step_id: str, level: str, raw: bytes, chunks: List[str]) -> None:
        text = raw.decode("utf-8", errors="replace")
        chunks.append(text)
        if self.emit is not None:
            await self.emit(step_id, level, text.rstrip("\n"))

    async def _refuse(self, step: AssignedStep, started, message: str) -> StepOutcome:
        if self.emit is not None:
            await self.emit(step.step_id, "error", message)
        return StepOutcome(
            step_id=step.step_id,
            status=StepStatus.FAILED,
            error=message,
            started_at=started,
            finished_at=now_utc(),
        )

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), self.kill_grace)
        except asyncio.TimeoutError:
            _signal_group(proc, signal.SIGKILL)
            await proc.wait()


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _kill_if_alive(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        _signal_group(proc, signal.SIGKILL)


async def with_retries(call: Callable[..., Awaitable], *args):
    """
    Await `call(*args)`, retrying transport failures (APIError without a
    status, or a 5xx) with exponential backoff. Typed errors such as
    LeaseExpiredError propagate at once.
    """
    for attempt in range(1, REPORT_ATTEMPTS + 1):
        try:
            return await call(*args)
        except APIError as e:
            if attempt == REPORT_ATTEMPTS or (e.status is not None and e.status < 500):
                raise
            delay = REPORT_BACKOFF * 2 ** (attempt - 1)
            logger.warning("%s failed (%s), retry %d in %.2fs", getattr(call, "__name__", "call"), e, attempt, delay)
            await asyncio.sleep(delay)


async def execute_assignment(assignment: Assignment, client, executor: StepExecutor) -> JobOutcome:
    """
    Execute a job's steps strictly in order and report every step result
    followed by the job result.

    A failed step without continue-on-error stops the job: the remaining
    steps are reported Skipped and the job Failed. A continue-on-error
    failure is recorded and execution moves on.
    """
    job = assignment.job_spec
    lease_id = assignment.lease_id
    deadline = time.monotonic() + job.timeout if job.timeout else None

    outcome = JobOutcome(status=JobStatus.SUCCESS)
    stop = False

    for step in job.steps:
        if not stop and executor.cancelled:
            stop = True
            outcome.cancelled = True
            outcome.status = JobStatus.FAILED
            outcome.error = str(CancellationError(assignment.run_id))

        timeout = step.timeout
        if not stop and deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                stop = True
                outcome.status = JobStatus.FAILED
                outcome.error = f"job '{job.name}' timed out after {job.timeout:g}s"
            else:
                timeout = min(timeout, remaining) if timeout else remaining

        if stop:
            skipped = StepOutcome(step.step_id, StepStatus.SKIPPED)
            outcome.steps.append(skipped)
            await with_retries(client.report_step, skipped.to_result(lease_id))
            continue

        await with_retries(
            client.report_step,
            StepResult(step_id=step.step_id, lease_id=lease_id, status=StepStatus.RUNNING, started_at=now_utc()),
        )
        result = await executor.execute(step, job.env, timeout=timeout)
        outcome.steps.append(result)
        await with_retries(client.report_step, result.to_result(lease_id))
        logger.debug("step %s (%s) -> %s", step.name, step.step_id, result.status.value)

        if result.status == StepStatus.CANCELLED:
            stop = True
            outcome.cancelled = True
            if not step.continue_on_error:
                outcome.status = JobStatus.FAILED
                outcome.error = str(CancellationError(assignment.run_id))
        elif result.status == StepStatus.FAILED and not step.continue_on_error:
            stop = True
            outcome.status = JobStatus.FAILED
            outcome.error = str(ExecutionError(step.name, result.error.strip() or "non-zero exit", result.exit_code))

    await with_retries(
        client.report_job,
        JobResult(
            job_id=assignment.job_id,
            lease_id=lease_id,
            status=outcome.status,
            error=outcome.error,
            cancelled=outcome.cancelled,
        ),
    )
    return outcome
