import pytest

from autoresearch.events import EventBus
from autoresearch.job_store import InMemoryJobStore


@pytest.mark.asyncio
async def test_create_and_get_job():
    store = InMemoryJobStore()
    job = await store.create("topic")
    assert job.status == "queued"
    assert job.attempts == 0
    assert job.created_at.endswith("Z")
    assert await store.get(job.job_id) is job
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_events_have_per_job_seq():
    store = InMemoryJobStore()
    first = await store.create("a")
    second = await store.create("b")
    e1 = await store.add_event(first.job_id, "log", {"message": "one"})
    e2 = await store.add_event(first.job_id, "status", {"status": "planning"})
    other = await store.add_event(second.job_id, "log", {"message": "x"})
    assert (e1["seq"], e2["seq"], other["seq"]) == (1, 2, 1)
    assert [ev["seq"] for ev in await store.list_events(first.job_id, after_seq=1)] == [2]
    assert e1["created_at"].endswith("Z")


@pytest.mark.asyncio
async def test_append_log_and_unknown_job():
    store = InMemoryJobStore()
    job = await store.create("topic")
    entry = await store.append_log(job.job_id, "hello", "warning")
    assert job.logs == [entry]
    assert entry.level == "warning"
    with pytest.raises(KeyError):
        await store.append_log("missing", "nope")
    with pytest.raises(KeyError):
        await store.add_event("missing", "log", {})


@pytest.mark.asyncio
async def test_bus_fans_out_to_every_subscriber():
    store = InMemoryJobStore()
    bus = EventBus(store)
    job = await store.create("topic")
    q1 = await bus.subscribe(job.job_id)
    q2 = await bus.subscribe(job.job_id)
    stored = await bus.emit(job.job_id, "status", {"status": "planning"})
    assert q1.get_nowait() == stored
    assert q2.get_nowait() == stored
    await bus.unsubscribe(job.job_id, q1)
    assert bus.subscriber_count(job.job_id) == 1
    await bus.unsubscribe(job.job_id, q2)
    assert job.job_id not in bus.subscribers
