"""
Queue Client — the durable job queue the kernel hands work to.

The decision engine only decides and enqueues; QueueWorker consumes.
Retries and dead-lettering belong to a durable backend. Delivery is assumed
at-least-once and is not deduplicated here.

The client has an explicit lifecycle owned by the process: open() before
use, close() on shutdown. Enqueueing on a closed client raises.
"""

import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from autopilot_kernel.clock import Clock, SystemClock


AUTOPILOT_QUEUE = "autopilot-jobs"
FLOW_QUEUE = "flow-jobs"

SCAN_MESSAGE_JOB = "scan-message"
SEND_MESSAGE_JOB = "send-message"
RUN_FLOW_JOB = "run-flow"


class QueueError(Exception):
    """Raised when a job cannot be handed to the queue."""
    pass


class QueueClosedError(QueueError):
    """Raised when the client is used outside its open/close lifecycle."""
    pass


class Job(BaseModel):
    id: str
    queue: str
    name: str
    payload: dict
    delay_ms: int = Field(ge=0, default=0)
    enqueued_at: datetime
    available_at: datetime


class QueueClient:
    """Queue client interface."""

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def enqueue(
        self,
        queue: str,
        job_name: str,
        payload: dict,
        delay_ms: Optional[int] = None,
    ) -> Job:
        raise NotImplementedError

    def take(self, queue: str, limit: int) -> List[Job]:
        """Claim up to `limit` due jobs; claimed jobs leave the queue."""
        raise NotImplementedError

    def waiting_count(self, queue: str) -> int:
        raise NotImplementedError

    def stats(self) -> Dict[str, dict]:
        raise NotImplementedError


class InMemoryQueue(QueueClient):
    """
    Process-local queue for the prototype and tests, consumed in-process by
    QueueWorker. Production would back this interface with a Redis-based
    job queue.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._jobs: Dict[str, List[Job]] = {}
        self._open = False
        self._lock = threading.Lock()

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def enqueue(
        self,
        queue: str,
        job_name: str,
        payload: dict,
        delay_ms: Optional[int] = None,
    ) -> Job:
        if not self._open:
            raise QueueClosedError(f"Queue client is closed; cannot enqueue {job_name} on {queue}")

        now = self.clock.now()
        delay = max(0, int(delay_ms or 0))
        job = Job(
            id=f"job_{uuid4().hex[:12]}",
            queue=queue,
            name=job_name,
            payload=payload,
            delay_ms=delay,
            enqueued_at=now,
            available_at=now + timedelta(milliseconds=delay),
        )
        with self._lock:
            self._jobs.setdefault(queue, []).append(job)
        return job

    def jobs(self, queue: str, name: Optional[str] = None) -> List[Job]:
        """All jobs on a queue, in enqueue order."""
        jobs = self._jobs.get(queue, [])
        return [j for j in jobs if name is None or j.name == name]

    def take(self, queue: str, limit: int) -> List[Job]:
        now = self.clock.now()
        with self._lock:
            jobs = self._jobs.get(queue, [])
            due = sorted(
                (j for j in jobs if j.available_at <= now), key=lambda j: j.available_at
            )[:limit]
            taken = {j.id for j in due}
            self._jobs[queue] = [j for j in jobs if j.id not in taken]
        return due

    def waiting_count(self, queue: str) -> int:
        now = self.clock.now()
        return sum(1 for j in self._jobs.get(queue, []) if j.available_at <= now)

    def stats(self) -> Dict[str, dict]:
        now = self.clock.now()
        result = {}
        for queue in (AUTOPILOT_QUEUE, FLOW_QUEUE):
            jobs = self._jobs.get(queue, [])
            result[queue] = {
                "waiting": sum(1 for j in jobs if j.available_at <= now),
                "delayed": sum(1 for j in jobs if j.available_at > now),
            }
        return result


def enqueue_scan(
    queue: QueueClient,
    workspace_id: str,
    contact_id: Optional[str] = None,
    phone: Optional[str] = None,
    message: str = "",
    delay_ms: Optional[int] = None,
) -> Job:
    """Ask the autopilot worker to (re)process one contact."""
    return queue.enqueue(
        AUTOPILOT_QUEUE,
        SCAN_MESSAGE_JOB,
        {
            "workspaceId": workspace_id,
            "contactId": contact_id,
            "phone": phone,
            "messageContent": message or "",
        },
        delay_ms=delay_ms if delay_ms and delay_ms > 0 else None,
    )
