"""
Queue Worker — consumes autopilot and flow jobs in-process.

Each pass claims the due jobs of both queues (autopilot-jobs first, so sends
produced by a scan are delivered in the same pass) and hands each job to the
handler registered for its name. A handler failure is logged and the job is
dropped; redelivery is the business of a durable queue backend.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from autopilot_kernel.jobs.queue import AUTOPILOT_QUEUE, FLOW_QUEUE, Job, QueueClient

logger = logging.getLogger(__name__)


JobHandler = Callable[[Job], Any]


class WorkerReport(BaseModel):
    processed: int = 0
    failed: int = 0
    by_job: Dict[str, int] = Field(default_factory=dict)


class QueueWorker:
    """Routes claimed jobs to their handlers."""

    def __init__(
        self,
        queue: QueueClient,
        handlers: Optional[Dict[str, JobHandler]] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        self.queue = queue
        self._handlers: Dict[str, JobHandler] = dict(handlers or {})
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

    def register(self, job_name: str, handler: JobHandler) -> None:
        self._handlers[job_name] = handler

    @property
    def is_running(self) -> bool:
        return self._running

    def process_available(self) -> WorkerReport:
        """Run every due job once."""
        report = WorkerReport()
        for queue_name in (AUTOPILOT_QUEUE, FLOW_QUEUE):
            for job in self.queue.take(queue_name, self.batch_size):
                self._handle(job, report)
        return report

    def _handle(self, job: Job, report: WorkerReport) -> None:
        handler = self._handlers.get(job.name)
        if handler is None:
            logger.warning("No handler registered for job %s on %s", job.name, job.queue)
            report.failed += 1
            return

        try:
            handler(job)
        except Exception:
            logger.exception(
                "Job %s (%s) failed",
                job.id,
                job.name,
                extra={"workspace_id": job.payload.get("workspaceId")},
            )
            report.failed += 1
            return

        report.processed += 1
        report.by_job[job.name] = report.by_job.get(job.name, 0) + 1

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll the queues until stopped."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                self.process_available()
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.poll_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._running = False
