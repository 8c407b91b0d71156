"""Tests for the SQLAlchemy store (sqlite+aiosqlite)."""

import pytest

from relayforge.cloud.db import SqlStore
from relayforge.dsl import job, sh, wf
from relayforge.errors import NotFoundError
from relayforge.orchestrator import Orchestrator
from relayforge.state import (
    Job,
    JobStatus,
    LogEntry,
    Run,
    Runner,
    RunnerStatus,
    RunStatus,
    Step,
    StepStatus,
)


@pytest.fixture
async def store(tmp_path):
    s = SqlStore(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    await s.init()
    yield s
    await s.close()


def sample_run():
    spec = wf(
        job("build", sh("compile", "make")),
        job("test", sh("unit", "make test"), sh("lint", "make lint"), needs=["build"]),
        name="sample",
    )
    run = Run(workflow=spec, inputs={"target": "arm"})
    build = Job(run_id=run.id, name="build", index=0)
    test = Job(run_id=run.id, name="test", index=1, needs=(build.id,))
    steps = [
        Step(run_id=run.id, job_id=build.id, index=0, name="compile", command="make"),
        Step(run_id=run.id, job_id=test.id, index=0, name="unit", command="make test"),
        Step(run_id=run.id, job_id=test.id, index=1, name="lint", command="make lint", continue_on_error=True),
    ]
    return run, [build, test], steps


class TestRecords:

    async def test_create_and_read_back(self, store):
        run, jobs, steps = sample_run()
        await store.create_run(run, jobs, steps)

        loaded = await store.get_run(run.id)
        assert loaded.workflow == run.workflow
        assert loaded.inputs == {"target": "arm"}
        assert loaded.status == RunStatus.PENDING
        assert loaded.created_at == run.created_at

        assert [j.name for j in await store.list_jobs(run.id)] == ["build", "test"]
        assert (await store.get_job(jobs[1].id)).needs == (jobs[0].id,)
        lint = (await store.list_steps(jobs[1].id))[1]
        assert lint.name == "lint"
        assert lint.continue_on_error

    async def test_updates(self, store):
        run, jobs, steps = sample_run()
        await store.create_run(run, jobs, steps)

        jobs[0].status = JobStatus.RUNNING
        jobs[0].runner_id = "r1"
        jobs[0].lease_id = "lease-1"
        await store.update_job(jobs[0])

        steps[0].status = StepStatus.FAILED
        steps[0].exit_code = 2
        steps[0].error = "boom"
        await store.update_step(steps[0])

        run.status = RunStatus.FAILED
        run.error = "build failed"
        await store.update_run(run)

        assert (await store.get_job(jobs[0].id)).lease_id == "lease-1"
        step = await store.get_step(steps[0].id)
        assert (step.status, step.exit_code, step.error) == (StepStatus.FAILED, 2, "boom")
        assert (await store.get_run(run.id)).error == "build failed"

    async def test_missing_records(self, store):
        with pytest.raises(NotFoundError):
            await store.get_run("nope")
        with pytest.raises(NotFoundError):
            await store.get_step("nope")
        run, _, _ = sample_run()
        with pytest.raises(NotFoundError):
            await store.update_run(run)

    async def test_list_runs_newest_first(self, store):
        first = sample_run()
        second = sample_run()
        await store.create_run(*first)
        await store.create_run(*second)
        assert [r.id for r in await store.list_runs()] == [second[0].id, first[0].id]
        assert len(await store.list_runs(limit=1)) == 1


class TestRunnersAndLogs:

    async def test_runner_upsert_and_delete(self, store):
        runner = Runner(id="r1", tags=frozenset({"linux"}), version="1.0", last_heartbeat=12.5)
        await store.save_runner(runner)
        runner.status = RunnerStatus.BUSY
        runner.job_id = "job-1"
        await store.save_runner(runner)

        (loaded,) = await store.list_runners()
        assert loaded.tags == frozenset({"linux"})
        assert loaded.status == RunnerStatus.BUSY
        assert loaded.last_heartbeat == 12.5

        await store.delete_runner("r1")
        assert await store.list_runners() == []

    async def test_logs_ordered_and_resumable(self, store):
        run, jobs, steps = sample_run()
        await store.create_run(run, jobs, steps)
        for seq, text in ((2, "second"), (1, "first"), (3, "third")):
            await store.add_log(LogEntry(run.id, steps[0].id, seq, "info", text))

        assert [e.content for e in await store.list_logs(run.id)] == ["first", "second", "third"]
        assert [e.seq for e in await store.list_logs(run.id, after_seq=2)] == [3]


async def test_orchestrator_over_sql_store(store, settings, clock, finish):
    orch = Orchestrator(store, settings, clock=clock)
    await orch.start(sweep=False)
    try:
        run = await orch.submit("jobs:\n  a:\n    steps: [{run: x}]\n  b:\n    needs: a\n    steps: [{run: y}]\n")
        await orch.register("r1")
        for _ in range(2):
            assignment = await orch.poll("r1")
            await orch.append_log(assignment.job_spec.steps[0].step_id, assignment.lease_id, "info", assignment.job_spec.name)
            await finish(orch, assignment)
        done = await orch.wait(run.id, timeout=5)
    finally:
        await orch.close()

    assert done.status == RunStatus.SUCCESS
    reopened = SqlStore(store.database_url)
    try:
        assert (await reopened.get_run(run.id)).status == RunStatus.SUCCESS
        assert [j.status for j in await reopened.list_jobs(run.id)] == [JobStatus.SUCCESS, JobStatus.SUCCESS]
        assert [e.content for e in await reopened.list_logs(run.id)] == ["a", "b"]
    finally:
        await reopened.close()
