import asyncio
import json
from typing import AsyncIterator, Dict, List

from .job_store import JobStore

KEEPALIVE_FRAME = ": keep-alive\n\n"


class EventBus:
    """In-memory fan-out for SSE plus the persisted per-job event history."""

    def __init__(self, store: JobStore):
        self.store = store
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.lock = asyncio.Lock()

    async def emit(self, job_id: str, event_type: str, payload: dict) -> dict:
        stored = await self.store.add_event(job_id, event_type, dict(payload or {}))
        async with self.lock:
            queues = list(self.subscribers.get(job_id, []))
        for q in queues:
            await q.put(stored)
        return stored

    async def subscribe(self, job_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(job_id, []).append(queue)
        return queue

    async def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(job_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        return len(self.subscribers.get(job_id, []))


def sse_format(event: dict) -> str:
    data = {**(event.get("payload") or {}), "seq": event.get("seq")}
    return f"event: {event['event_type']}\ndata: {json.dumps(data)}\n\n"


def closes_stream(event: dict) -> bool:
    if event.get("event_type") == "result":
        return True
    if event.get("event_type") == "status":
        return (event.get("payload") or {}).get("status") in ("failed", "cancelled")
    return False


async def job_event_stream(
    job_id: str,
    store: JobStore,
    bus: EventBus,
    keepalive_interval_s: float = 15.0,
) -> AsyncIterator[str]:
    """Replay a job's log, then follow it live until it ends.

    The queue is registered before the history snapshot is taken, so nothing
    emitted in between is lost; anything already replayed is skipped by seq.
    """
    queue = await bus.subscribe(job_id)
    try:
        history = await store.list_events(job_id)
        job = await store.get(job_id)
        if job is None:
            return
        # Snapshot before the first yield; the job keeps running while frames go out.
        terminal = job.is_terminal
        report = job.final_report if job.status == "completed" else None
        last_seq = 0
        stored_result = None
        for ev in history:
            last_seq = ev["seq"]
            if ev["event_type"] == "log":
                yield sse_format(ev)
            elif ev["event_type"] == "result":
                stored_result = ev
        if terminal:
            if stored_result is not None:
                yield sse_format(stored_result)
            elif report:
                yield sse_format({"event_type": "result", "seq": last_seq + 1, "payload": {"report": report}})
            return
        while True:
            try:
                ev = await asyncio.wait_for(queue.get(), timeout=keepalive_interval_s)
            except asyncio.TimeoutError:
                yield KEEPALIVE_FRAME
                continue
            if ev["seq"] <= last_seq:
                continue
            last_seq = ev["seq"]
            yield sse_format(ev)
            if closes_stream(ev):
                return
    except asyncio.CancelledError:
        pass
    finally:
        await bus.unsubscribe(job_id, queue)
