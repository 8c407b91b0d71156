import pytest

from relayforge.orchestrator import Orchestrator
from relayforge.protocol import Assignment, JobResult, StepResult
from relayforge.settings import Settings
from relayforge.state import JobStatus, StepStatus


class FakeClock:
    """Manually advanced clock for the runner registry."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def finish_job(
    orch: Orchestrator,
    assignment: Assignment,
    step_status: StepStatus = StepStatus.SUCCESS,
    job_status: JobStatus = JobStatus.SUCCESS,
    **job_fields,
) -> None:
    """Report every step of an assignment, then the job, the way a runner would."""
    for step in assignment.job_spec.steps:
        await orch.report_step(
            StepResult(step_id=step.step_id, lease_id=assignment.lease_id, status=step_status)
        )
    await orch.report_job(
        JobResult(job_id=assignment.job_id, lease_id=assignment.lease_id, status=job_status, **job_fields)
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(heartbeat_interval=1.0, missed_heartbeats=3, cancel_grace=0.2, poll_wait=0.05)


@pytest.fixture
async def orch(settings, clock):
    orchestrator = Orchestrator(settings=settings, clock=clock)
    await orchestrator.start(sweep=False)
    yield orchestrator
    await orchestrator.close()


@pytest.fixture
def finish():
    return finish_job
