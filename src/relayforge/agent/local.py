# agent/local.py
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List, Optional

from relayforge.protocol import Assignment, JobResult, StepResult

from .api_client import RunnerClient

if TYPE_CHECKING:
    from relayforge.orchestrator import Orchestrator


class LocalClient(RunnerClient):
    """Talks to an in-process Orchestrator; used by `relayforge run` and tests."""

    def __init__(self, orchestrator: Orchestrator, poll_wait: Optional[float] = None):
        self.orchestrator = orchestrator
        self.poll_wait = poll_wait

    async def register(self, runner_id: str, tags: Iterable[str], version: str) -> None:
        await self.orchestrator.register(runner_id, tags, version)

    async def heartbeat(self, runner_id: str) -> List[str]:
        return await self.orchestrator.heartbeat(runner_id)

    async def poll(self, runner_id: str, tags: Iterable[str]) -> Optional[Assignment]:
        return await self.orchestrator.poll(runner_id, tags, wait=self.poll_wait)

    async def report_step(self, result: StepResult) -> None:
        await self.orchestrator.report_step(result)

    async def report_job(self, result: JobResult) -> None:
        await self.orchestrator.report_job(result)

    async def append_log(self, step_id: str, lease_id: str, level: str, content: str) -> None:
        await self.orchestrator.append_log(step_id, lease_id, level, content)
