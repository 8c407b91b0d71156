"""Tests for relayforge.logstream."""

import asyncio

import pytest

from relayforge.errors import NotFoundError
from relayforge.logstream import LogStream
from relayforge.store import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def logs(store):
    stream = LogStream(store)
    stream.open("run-1", ["s1", "s2"])
    return stream


async def collect(agen):
    return [entry async for entry in agen]


async def test_sequence_numbers_are_per_run(logs):
    logs.open("run-2", ["t1"])
    a = await logs.append("s1", "info", "hi")
    b = await logs.append("t1", "info", "other run")
    c = await logs.append("s2", "error", "ok")
    assert (a.seq, c.seq) == (1, 2)
    assert b.seq == 1
    assert c.run_id == "run-1"


async def test_append_persists_before_publish(logs, store):
    await logs.append("s1", "info", "hi")
    assert [e.content for e in await store.list_logs("run-1")] == ["hi"]


async def test_unknown_level(logs):
    with pytest.raises(ValueError):
        await logs.append("s1", "verbose", "x")


async def test_unknown_step(logs):
    with pytest.raises(NotFoundError):
        await logs.append("nope", "info", "x")


async def test_closed_run_rejects_appends(logs):
    logs.close("run-1")
    with pytest.raises(NotFoundError):
        await logs.append("s1", "info", "late")


async def test_subscribe_live_then_complete(logs):
    subscriber = asyncio.create_task(collect(logs.subscribe("run-1")))
    await asyncio.sleep(0)
    await logs.append("s1", "info", "hi")
    await logs.append("s1", "info", "ok")
    logs.close("run-1")
    entries = await asyncio.wait_for(subscriber, 1)
    assert [(e.seq, e.content) for e in entries] == [(1, "hi"), (2, "ok")]


async def test_subscribe_resumes_after_seq(logs):
    for line in ("one", "two", "three"):
        await logs.append("s1", "info", line)
    logs.close("run-1")
    entries = await collect(logs.subscribe("run-1", since_seq=1))
    assert [e.content for e in entries] == ["two", "three"]


async def test_resume_on_live_channel(logs):
    for line in ("one", "two"):
        await logs.append("s1", "info", line)
    subscriber = asyncio.create_task(collect(logs.subscribe("run-1", since_seq=1)))
    await asyncio.sleep(0)
    await logs.append("s2", "info", "three")
    logs.close("run-1")
    entries = await asyncio.wait_for(subscriber, 1)
    assert [e.seq for e in entries] == [2, 3]


async def test_concurrent_appends_are_gap_free(logs):
    await asyncio.gather(*(logs.append("s1" if i % 2 else "s2", "info", str(i)) for i in range(50)))
    logs.close("run-1")
    entries = await collect(logs.subscribe("run-1"))
    assert [e.seq for e in entries] == list(range(1, 51))


async def test_subscribe_unknown_run_is_empty(logs):
    assert await collect(logs.subscribe("never-existed")) == []
