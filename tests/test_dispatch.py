"""Tests for relayforge.dispatch."""

import asyncio

import pytest

from relayforge.dispatch import JobDispatchQueue, QueueEntry
from relayforge.errors import AssignmentTimeoutError


def entry(job_id, order=0, tags=(), run_id="run-1"):
    return QueueEntry(job_id=job_id, run_id=run_id, tags=frozenset(tags), order=order)


@pytest.fixture
def queue():
    return JobDispatchQueue()


class TestOrdering:

    def test_declaration_order_within_batch(self, queue):
        queue.push([entry("c", order=2), entry("a", order=0), entry("b", order=1)])
        assert [queue.dispatch("r", ()).job_id for _ in range(3)] == ["a", "b", "c"]
        assert queue.dispatch("r", ()) is None

    def test_earlier_batch_first(self, queue):
        queue.push([entry("late-decl", order=5)])
        queue.push([entry("early-decl", order=0)])
        assert queue.dispatch("r", ()).job_id == "late-decl"

    def test_runs_interleave_fifo(self, queue):
        queue.push([entry("x1", run_id="x")])
        queue.push([entry("y1", run_id="y")])
        queue.push([entry("x2", order=1, run_id="x")])
        assert [queue.dispatch("r", ()).job_id for _ in range(3)] == ["x1", "y1", "x2"]

    def test_requeue_keeps_place(self, queue):
        queue.push([entry("first")])
        queue.push([entry("second")])
        lease = queue.dispatch("r1", ())
        assert lease.job_id == "first"

        queue.revoke("first")
        queue.requeue(lease)
        assert queue.dispatch("r2", ()).job_id == "first"


class TestTags:

    def test_tags_must_be_subset(self, queue):
        queue.push([entry("gpu-job", tags=["gpu"]), entry("plain", order=1)])
        lease = queue.dispatch("cpu-runner", ["linux"])
        assert lease.job_id == "plain"
        assert queue.dispatch("cpu-runner", ["linux"]) is None
        assert queue.dispatch("gpu-runner", ["linux", "gpu"]).job_id == "gpu-job"

    def test_untagged_job_goes_anywhere(self, queue):
        queue.push([entry("any")])
        assert queue.dispatch("r", ["whatever"]).job_id == "any"

    def test_best_across_classes(self, queue):
        queue.push([entry("tagged", order=1, tags=["a"])])
        queue.push([entry("untagged", order=0)])
        assert queue.dispatch("r", ["a"]).job_id == "tagged"


class TestLeases:

    def test_job_leased_at_most_once(self, queue):
        queue.push([entry("only")])
        first = queue.dispatch("r1", ())
        assert queue.dispatch("r2", ()) is None
        assert queue.lease_for("only") == first
        assert queue.is_current("only", first.lease_id)

    def test_push_rejects_duplicates(self, queue):
        queue.push([entry("j")])
        with pytest.raises(ValueError):
            queue.push([entry("j")])
        queue.dispatch("r", ())
        with pytest.raises(ValueError):
            queue.push([entry("j")])

    def test_complete_checks_lease_id(self, queue):
        queue.push([entry("j")])
        lease = queue.dispatch("r", ())
        assert queue.complete("j", "other-lease") is None
        assert queue.complete("j", lease.lease_id) == lease
        assert not queue.is_current("j", lease.lease_id)

    def test_leases_of(self, queue):
        queue.push([entry("a"), entry("b", order=1)])
        queue.dispatch("r1", ())
        queue.dispatch("r2", ())
        assert [l.job_id for l in queue.leases_of("r1")] == ["a"]

    def test_remove(self, queue):
        queue.push([entry("a"), entry("b", order=1)])
        assert queue.remove("a")
        assert not queue.remove("a")
        assert "a" not in queue
        assert len(queue) == 1
        assert queue.dispatch("r", ()).job_id == "b"


class TestWaitDispatch:

    async def test_times_out(self, queue):
        with pytest.raises(AssignmentTimeoutError):
            await queue.wait_dispatch("r", (), timeout=0.05)

    async def test_wakes_on_push(self, queue):
        waiter = asyncio.create_task(queue.wait_dispatch("r", (), timeout=2))
        await asyncio.sleep(0.01)
        queue.push([entry("j")])
        lease = await asyncio.wait_for(waiter, 1)
        assert lease.job_id == "j"

    async def test_ineligible_push_keeps_waiting(self, queue):
        waiter = asyncio.create_task(queue.wait_dispatch("r", (), timeout=0.1))
        await asyncio.sleep(0.01)
        queue.push([entry("gpu", tags=["gpu"])])
        with pytest.raises(AssignmentTimeoutError):
            await waiter
        assert "gpu" in queue

    async def test_concurrent_waiters_get_distinct_jobs(self, queue):
        waiters = [asyncio.create_task(queue.wait_dispatch(f"r{i}", (), timeout=1)) for i in range(3)]
        await asyncio.sleep(0.01)
        queue.push([entry("a"), entry("b", order=1)])
        done, pending = await asyncio.wait(waiters, timeout=0.5)
        leased = sorted(t.result().job_id for t in done if t.exception() is None)
        assert leased == ["a", "b"]
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
