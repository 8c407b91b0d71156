# agent/agent.py
from __future__ import annotations

import asyncio
import logging
import signal
import time
from functools import partial
from pathlib import Path
from typing import Iterable, List, Optional

from relayforge import __version__
from relayforge.errors import LeaseExpiredError, NotFoundError, OrchestratorError
from relayforge.protocol import Assignment, JobResult
from relayforge.state import JobStatus
from relayforge.ui.console import get_console

from .api_client import APIClient, APIError, RunnerClient
from .executor import StepExecutor, execute_assignment, with_retries

logger = logging.getLogger(__name__)


class Agent:
    """Runner agent that polls for jobs and executes them."""

    def __init__(
        self,
        client: RunnerClient,
        runner_id: str,
        tags: Iterable[str] = (),
        *,
        version: str = __version__,
        poll_interval: float = 5.0,
        heartbeat_interval: float = 10.0,
        work_dir: Path = Path("."),
    ):
        """
        Args:
            client: Control-plane client (HTTP or in-process)
            runner_id: Unique identifier for this runner
            tags: Capability tags advertised at registration and on every poll
            poll_interval: Seconds to wait between polls when no jobs are available
            heartbeat_interval: Seconds between heartbeats
            work_dir: Directory step working directories are resolved against
        """
        self.client = client
        self.runner_id = runner_id
        self.tags = frozenset(tags)
        self.version = version
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.work_dir = Path(work_dir)
        self.jobs_run = 0
        self._stop = asyncio.Event()
        self._current: Optional[Assignment] = None
        self._executor: Optional[StepExecutor] = None
        # job results the control plane has not acknowledged yet
        self._unreported: List[JobResult] = []

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def register(self) -> None:
        await self.client.register(self.runner_id, self.tags, self.version)

    async def run(self) -> None:
        """Register, then poll and execute until stop() is called."""
        await self.register()
        heartbeat = asyncio.create_task(self._heartbeat_loop(), name=f"heartbeat-{self.runner_id}")
        try:
            while not self._stop.is_set():
                try:
                    handled = await self.run_once()
                except APIError as e:
                    get_console().print_error(
                        "API error",
                        str(e),
                        suggestion="Check API connectivity and retry.",
                    )
                    await self._sleep(self.poll_interval)
                except NotFoundError:
                    # the control plane forgot us (offline TTL); register again
                    await self.register()
                except Exception as e:
                    get_console().print_exception(e)
                    await self._sleep(self.poll_interval)
                else:
                    if not handled:
                        await self._sleep(self.poll_interval)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            if self._executor is not None:
                self._executor.cancel()

    async def run_once(self) -> bool:
        """Poll once and execute the assignment if there is one."""
        assignment = await self.client.poll(self.runner_id, self.tags)
        if assignment is None:
            return False
        await self._execute(assignment)
        return True

    async def _execute(self, assignment: Assignment) -> None:
        console = get_console()
        console.print_assignment(assignment.job_spec.name, assignment.run_id)
        start_time = time.time()

        executor = StepExecutor(
            self.work_dir,
            emit=partial(self._emit, assignment.lease_id),
        )
        self._current = assignment
        self._executor = executor
        try:
            outcome = await execute_assignment(assignment, self.client, executor)
        except LeaseExpiredError as e:
            # the job was handed to someone else; stop touching it
            executor.cancel()
            console.print_info(f"Lease lost, abandoning job {assignment.job_id}: {e}")
            return
        except Exception as e:
            # the job cannot finish here; stop its process and tell the control plane
            executor.cancel()
            logger.exception("job %s failed on runner %s", assignment.job_id, self.runner_id)
            await self._report_broken(assignment, e)
            console.print_failure(assignment.job_spec.name, f"runner error: {e}", is_job=True)
            return
        finally:
            self._current = None
            self._executor = None
            self.jobs_run += 1

        status = "cancelled" if outcome.cancelled else outcome.status.value
        console.print_execution_complete(status=status, duration=time.time() - start_time)
        console.print_debug(f"job {assignment.job_id}: {outcome.to_dict()}")
        if outcome.error:
            console.print_failure(assignment.job_spec.name, outcome.error, is_job=True)

    async def _report_broken(self, assignment: Assignment, exc: Exception) -> None:
        result = JobResult(
            job_id=assignment.job_id,
            lease_id=assignment.lease_id,
            status=JobStatus.FAILED,
            error=f"runner error: {type(exc).__name__}: {exc}",
        )
        try:
            await with_retries(self.client.report_job, result)
        except LeaseExpiredError:
            pass
        except Exception as e:
            logger.warning("could not report job %s as failed, retrying after the next heartbeat: %s", assignment.job_id, e)
            self._unreported.append(result)

    async def _flush_unreported(self) -> None:
        while self._unreported:
            try:
                await self.client.report_job(self._unreported[0])
            except APIError as e:
                logger.warning("job result for %s still undelivered: %s", self._unreported[0].job_id, e)
                return
            except OrchestratorError as e:
                # rejected outright, e.g. the lease is gone
                logger.warning("dropping job result for %s: %s", self._unreported[0].job_id, e)
            except Exception as e:
                logger.warning("job result for %s still undelivered: %s", self._unreported[0].job_id, e)
                return
            self._unreported.pop(0)

    async def _emit(self, lease_id: str, step_id: str, level: str, content: str) -> None:
        await with_retries(self.client.append_log, step_id, lease_id, level, content)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                cancel = await self.client.heartbeat(self.runner_id)
            except NotFoundError:
                await self.register()
                continue
            except Exception as e:
                logger.warning("heartbeat from %s failed: %s", self.runner_id, e)
                continue
            await self._flush_unreported()
            current = self._current
            if current is not None and current.job_id in cancel and self._executor is not None:
                logger.info("cancelling job %s on request", current.job_id)
                self._executor.cancel()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), seconds)
        except asyncio.TimeoutError:
            pass


def run_agent(
    api_url: str,
    runner_id: str,
    tags: Iterable[str] = (),
    *,
    poll_interval: float = 5.0,
    heartbeat_interval: float = 10.0,
    poll_wait: Optional[float] = None,
    work_dir: Path = Path("."),
) -> None:
    """Run an HTTP agent until SIGINT/SIGTERM."""
    console = get_console()
    client = APIClient(api_url, poll_wait=poll_wait)

    async def main() -> None:
        agent = Agent(
            client,
            runner_id,
            tags,
            poll_interval=poll_interval,
            heartbeat_interval=heartbeat_interval,
            work_dir=work_dir,
        )
        loop = asyncio.get_running_loop()

        def _shutdown(signum: int) -> None:
            console.print_info(f"\nReceived signal {signum}, shutting down gracefully...")
            agent.stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _shutdown, sig)

        console.print_agent_started(runner_id, client.base_url, poll_interval, agent.tags)
        await agent.run()

    asyncio.run(main())
    console.print_info("Agent stopped.")
