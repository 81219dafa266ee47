"""
Retry Scheduler — dispatch now, dispatch later, or refuse.

Retry state is not stored on its own. It is derived on every call from:
- the contact's next_retry_at (the only mutable scheduling state)
- the count of error entries for the contact in the last hour
- the most recent ledger entry for the contact, any status

Precedence, first match wins:
1. billing suspended   -> raise
2. retry pending       -> refuse, report the pending time
3. error rate exceeded -> back off 30 minutes
4. cooldown active     -> wait out the remaining cooldown
5. otherwise           -> enqueue immediately and clear next_retry_at

next_retry_at is read then written without a lock; concurrent callers for
the same contact can both pass step 2.
"""

import logging
from datetime import timedelta
from uuid import uuid4

from autopilot_kernel.clock import Clock
from autopilot_kernel.compliance.billing import BillingGuard
from autopilot_kernel.crm.store import CrmStore
from autopilot_kernel.jobs.queue import QueueClient, enqueue_scan
from autopilot_kernel.ledger.store import EventLedger
from autopilot_kernel.models.ledger import (
    SCHEDULED_ACTION,
    AutopilotEvent,
    EventStatus,
    RetryMeta,
)
from autopilot_kernel.models.scheduling import RetryReason, RetryResult

logger = logging.getLogger(__name__)


COOLDOWN = timedelta(minutes=5)
ERROR_WINDOW = timedelta(hours=1)
ERROR_THRESHOLD = 3
ERROR_BACKOFF = timedelta(minutes=30)


def _to_ms(delta: timedelta) -> int:
    return int(round(delta.total_seconds() * 1000))


class RetryScheduler:
    """Applies error-rate backoff and cooldown to manual or webhook retries."""

    def __init__(
        self,
        crm: CrmStore,
        ledger: EventLedger,
        queue: QueueClient,
        clock: Clock,
        billing: BillingGuard,
    ):
        self.crm = crm
        self.ledger = ledger
        self.queue = queue
        self.clock = clock
        self.billing = billing

    def retry_contact(self, workspace_id: str, contact_id: str) -> RetryResult:
        self.billing.ensure_not_suspended(workspace_id, source="retry")
        contact = self.crm.require_contact(workspace_id, contact_id)
        now = self.clock.now()

        if contact.next_retry_at is not None and contact.next_retry_at > now:
            return RetryResult(
                queued=False,
                reason=RetryReason.ALREADY_SCHEDULED,
                next_retry_at=contact.next_retry_at,
            )

        errors = self.ledger.count(
            workspace_id,
            contact_id=contact_id,
            status=EventStatus.ERROR,
            since=now - ERROR_WINDOW,
        )
        if errors >= ERROR_THRESHOLD:
            return self._schedule(
                workspace_id, contact_id, ERROR_BACKOFF, RetryReason.RATE_LIMITED_ERROR_1H
            )

        last = self.ledger.latest_for_contact(workspace_id, contact_id)
        if last is not None:
            since_last = max(now - last.created_at, timedelta(0))
            if since_last < COOLDOWN:
                return self._schedule(
                    workspace_id, contact_id, COOLDOWN - since_last, RetryReason.COOLDOWN_5M
                )

        enqueue_scan(self.queue, workspace_id, contact_id=contact_id)
        self.crm.set_next_retry_at(contact_id, None)
        logger.info(
            "Retry dispatched immediately",
            extra={"workspace_id": workspace_id, "contact_id": contact_id},
        )
        return RetryResult(queued=True, scheduled=False)

    def _schedule(
        self,
        workspace_id: str,
        contact_id: str,
        delay: timedelta,
        reason: RetryReason,
    ) -> RetryResult:
        """Enqueue a delayed scan, persist next_retry_at and record it."""
        now = self.clock.now()
        delay_ms = _to_ms(delay)
        next_retry_at = now + timedelta(milliseconds=delay_ms)

        job = enqueue_scan(self.queue, workspace_id, contact_id=contact_id, delay_ms=delay_ms)
        self.crm.set_next_retry_at(contact_id, next_retry_at)
        self.ledger.append(
            AutopilotEvent(
                id=f"evt_{uuid4().hex[:12]}",
                workspace_id=workspace_id,
                contact_id=contact_id,
                intent="RETRY",
                action=SCHEDULED_ACTION,
                status=EventStatus.SCHEDULED,
                reason=reason.value,
                meta=RetryMeta(next_retry_at=next_retry_at, delay_ms=delay_ms, job_id=job.id),
                created_at=now,
            )
        )
        logger.info(
            "Retry deferred",
            extra={
                "workspace_id": workspace_id,
                "contact_id": contact_id,
                "reason": reason.value,
                "delay_ms": delay_ms,
            },
        )
        return RetryResult(
            queued=True,
            scheduled=True,
            delay_ms=delay_ms,
            reason=reason,
            next_retry_at=next_retry_at,
        )
