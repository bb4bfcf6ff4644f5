import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .schemas import Job, LogEntry, LogLevel


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_job_id() -> str:
    return str(uuid.uuid4())


class JobStore(ABC):
    """Storage seam for jobs, their logs and their event history.

    The orchestrator only talks to this interface, so a persistent backend can
    replace the in-memory one without touching the state machine.
    """

    @abstractmethod
    async def create(self, topic: str) -> Job: ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    async def list_jobs(self) -> List[Job]: ...

    @abstractmethod
    async def save(self, job: Job) -> None: ...

    @abstractmethod
    async def append_log(self, job_id: str, message: str, level: LogLevel = "info") -> LogEntry: ...

    @abstractmethod
    async def add_event(self, job_id: str, event_type: str, payload: dict) -> dict: ...

    @abstractmethod
    async def list_events(self, job_id: str, after_seq: int = 0) -> List[dict]: ...


class InMemoryJobStore(JobStore):
    """Process-lifetime store; nothing is pruned."""

    def __init__(self) -> None:
        self.jobs: Dict[str, Job] = {}
        self.events: Dict[str, List[Dict[str, Any]]] = {}

    async def create(self, topic: str) -> Job:
        job = Job(job_id=new_job_id(), topic=topic, created_at=utc_now())
        self.jobs[job.job_id] = job
        self.events[job.job_id] = []
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    async def list_jobs(self) -> List[Job]:
        # Insertion order is creation order.
        return list(reversed(list(self.jobs.values())))

    async def save(self, job: Job) -> None:
        self.jobs[job.job_id] = job

    async def append_log(self, job_id: str, message: str, level: LogLevel = "info") -> LogEntry:
        job = self.jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        entry = LogEntry(timestamp=utc_now(), message=message, level=level)
        job.logs.append(entry)
        return entry

    async def add_event(self, job_id: str, event_type: str, payload: dict) -> dict:
        history = self.events.get(job_id)
        if history is None:
            raise KeyError(job_id)
        stored = {
            "job_id": job_id,
            "seq": len(history) + 1,
            "event_type": event_type,
            "payload": payload,
            "created_at": utc_now(),
        }
        history.append(stored)
        return stored

    async def list_events(self, job_id: str, after_seq: int = 0) -> List[dict]:
        return [ev for ev in self.events.get(job_id, []) if ev["seq"] > after_seq]
