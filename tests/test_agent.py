"""End-to-end tests: Agent + LocalClient against an in-process Orchestrator."""

import asyncio
import sys

import pytest

from relayforge.agent import executor as executor_module
from relayforge.agent.agent import Agent
from relayforge.agent.api_client import APIError
from relayforge.agent.local import LocalClient
from relayforge.state import JobStatus, RunnerStatus, RunStatus, StepStatus

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="steps run through a POSIX shell")

PIPELINE = """
name: pipeline
jobs:
  build:
    steps:
      - name: compile
        run: echo compiling $INPUT_TARGET
  test:
    needs: build
    steps:
      - name: unit
        run: echo unit ok
      - name: lint
        run: exit 3
        continue-on-error: true
  deploy:
    needs: [test]
    steps:
      - run: echo deploying
"""


@pytest.fixture
async def start_agents(orch, tmp_path):
    agents = []
    tasks = []

    def start(count=1, tags=(), heartbeat_interval=0.05):
        for i in range(count):
            agent = Agent(
                LocalClient(orch, poll_wait=0.05),
                f"agent-{len(agents)}",
                tags,
                poll_interval=0.02,
                heartbeat_interval=heartbeat_interval,
                work_dir=tmp_path,
            )
            agents.append(agent)
            tasks.append(asyncio.create_task(agent.run()))
        return agents

    yield start

    for agent in agents:
        agent.stop()
    await asyncio.wait_for(asyncio.gather(*tasks), 5)


async def test_pipeline_runs_to_success(orch, start_agents):
    agents = start_agents(2)
    run = await orch.submit(PIPELINE, {"target": "linux"})
    done = await orch.wait(run.id, timeout=10)

    assert done.status == RunStatus.SUCCESS
    detail = await orch.get_run(run.id)
    assert {j.name: j.status for j in detail.jobs} == {
        "build": JobStatus.SUCCESS,
        "test": JobStatus.SUCCESS,
        "deploy": JobStatus.SUCCESS,
    }
    unit, lint = detail.steps_of("test")
    assert unit.status == StepStatus.SUCCESS
    assert lint.status == StepStatus.FAILED
    assert lint.exit_code == 3

    logs = [e.content async for e in orch.subscribe(run.id)]
    assert logs.index("compiling linux") < logs.index("unit ok") < logs.index("deploying")
    assert sum(a.jobs_run for a in agents) == 3


async def test_failed_job_skips_dependents(orch, start_agents):
    start_agents(1)
    run = await orch.submit(
        """
jobs:
  a:
    steps:
      - run: exit 1
      - run: echo unreachable
  b:
    needs: a
    steps:
      - run: echo never
"""
    )
    done = await orch.wait(run.id, timeout=10)

    assert done.status == RunStatus.FAILED
    detail = await orch.get_run(run.id)
    assert detail.job("a").status == JobStatus.FAILED
    assert [s.status for s in detail.steps_of("a")] == [StepStatus.FAILED, StepStatus.SKIPPED]
    assert detail.job("b").status == JobStatus.SKIPPED


async def test_tagged_job_waits_for_matching_runner(orch, start_agents):
    start_agents(1, tags=["linux"])
    run = await orch.submit(
        """
jobs:
  gpu:
    runs-on: gpu
    steps:
      - run: echo trained
"""
    )
    await asyncio.sleep(0.3)
    assert (await orch.get_run(run.id)).job("gpu").status == JobStatus.READY

    start_agents(1, tags=["linux", "gpu"])
    done = await orch.wait(run.id, timeout=10)
    assert done.status == RunStatus.SUCCESS
    assert (await orch.get_run(run.id)).job("gpu").runner_id == "agent-1"


async def test_cancel_stops_running_step(orch, start_agents):
    start_agents(1)
    run = await orch.submit(
        """
jobs:
  slow:
    steps:
      - run: echo started; sleep 30
      - run: echo never
"""
    )
    for _ in range(100):
        detail = await orch.get_run(run.id)
        if detail.steps_of("slow")[0].status == StepStatus.RUNNING:
            break
        await asyncio.sleep(0.05)

    await orch.cancel(run.id)
    done = await orch.wait(run.id, timeout=10)

    assert done.status == RunStatus.CANCELLED
    detail = await orch.get_run(run.id)
    assert detail.job("slow").status == JobStatus.CANCELLED
    assert detail.steps_of("slow")[1].status != StepStatus.SUCCESS


async def test_runner_becomes_idle_after_job(orch, start_agents):
    start_agents(1)
    run = await orch.submit("jobs:\n  one:\n    steps:\n      - run: 'true'\n")
    await orch.wait(run.id, timeout=10)
    await asyncio.sleep(0.1)
    (runner,) = await orch.list_runners()
    assert runner.status == RunnerStatus.ONLINE
    assert runner.job_id is None


class FlakyClient(LocalClient):
    """LocalClient whose step reports fail with a transport error `failures` times."""

    def __init__(self, orchestrator, failures=1, **kwargs):
        super().__init__(orchestrator, **kwargs)
        self.failures = failures
        self.attempts = 0

    async def report_step(self, result):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise APIError("Network error")
        await super().report_step(result)


@pytest.fixture
def fast_retries(monkeypatch):
    monkeypatch.setattr(executor_module, "REPORT_BACKOFF", 0.01)


async def run_with(orch, client):
    agent = Agent(client, "flaky", poll_interval=0.02, heartbeat_interval=0.05)
    task = asyncio.create_task(agent.run())
    try:
        run = await orch.submit("jobs:\n  one:\n    steps:\n      - run: echo hi\n")
        done = await orch.wait(run.id, timeout=5)
    finally:
        agent.stop()
        await asyncio.wait_for(task, 5)
    return done, await orch.get_run(run.id)


async def test_transient_report_failure_is_retried(orch, fast_retries):
    client = FlakyClient(orch, failures=1, poll_wait=0.05)
    done, detail = await run_with(orch, client)

    assert done.status == RunStatus.SUCCESS
    assert detail.steps_of("one")[0].status == StepStatus.SUCCESS
    assert client.attempts == 3
    (runner,) = await orch.list_runners()
    assert runner.status == RunnerStatus.ONLINE


async def test_persistent_report_failure_fails_the_job(orch, fast_retries):
    client = FlakyClient(orch, failures=100, poll_wait=0.05)
    done, detail = await run_with(orch, client)

    assert done.status == RunStatus.FAILED
    job = detail.job("one")
    assert job.status == JobStatus.FAILED
    assert "Network error" in job.error
    (runner,) = await orch.list_runners()
    assert runner.status == RunnerStatus.ONLINE
    assert runner.job_id is None
