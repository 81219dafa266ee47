"""
Conversion Ledger — idempotent revenue attribution keyed by external order id.

Behavioral Contract:
- One executed CONVERSION entry per (workspace, order id). A repeat delivery
  returns deduped=True and writes nothing.
- The lookup is only a fast path; the ledger's unique index is what holds
  under concurrent deliveries. Losing that race is reported as deduped too.
- Conversions without an order id are never deduplicated.
- A converted contact is scored as a hot, positive lead.
- If the workspace configured a post-conversion flow, it is enqueued with the
  conversion context as input variables.
"""

import logging
from typing import Optional
from uuid import uuid4

from autopilot_kernel.clock import Clock
from autopilot_kernel.compliance.billing import BillingGuard
from autopilot_kernel.crm.store import CrmStore
from autopilot_kernel.jobs.queue import FLOW_QUEUE, RUN_FLOW_JOB, QueueClient, QueueError
from autopilot_kernel.ledger.store import DuplicateEventError, EventLedger
from autopilot_kernel.models.conversion import ConversionRequest, ConversionResult
from autopilot_kernel.models.ledger import (
    CONVERSION_ACTION,
    AutopilotEvent,
    ConversionMeta,
    EventStatus,
)

logger = logging.getLogger(__name__)


DEFAULT_REASON = "webhook_conversion"
FLOW_SOURCE = "autopilot_conversion"


class ConversionLedger:
    """Records conversions exactly once per order id."""

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

    def mark_conversion(self, request: ConversionRequest) -> ConversionResult:
        workspace_id = request.workspace_id
        self.billing.ensure_not_suspended(workspace_id, source="conversion")

        order_id = request.meta.order_id
        if order_id:
            existing = self.ledger.find_conversion(workspace_id, order_id)
            if existing is not None:
                return ConversionResult(ok=True, contact_id=existing.contact_id, deduped=True)

        contact_id = self._resolve_contact_id(request)
        settings = self.crm.get_workspace(workspace_id).settings
        meta = request.meta
        if meta.currency is None and meta.amount is not None:
            meta = meta.model_copy(update={"currency": settings.currency_default})

        try:
            self.ledger.append(
                AutopilotEvent(
                    id=f"evt_{uuid4().hex[:12]}",
                    workspace_id=workspace_id,
                    contact_id=contact_id,
                    intent="BUYING",
                    action=CONVERSION_ACTION,
                    status=EventStatus.EXECUTED,
                    reason=request.reason or DEFAULT_REASON,
                    meta=meta,
                    created_at=self.clock.now(),
                )
            )
        except DuplicateEventError:
            # A concurrent delivery of the same order won the insert
            winner = self.ledger.find_conversion(workspace_id, order_id)
            return ConversionResult(
                ok=True,
                contact_id=winner.contact_id if winner else contact_id,
                deduped=True,
            )

        phone = request.phone
        if contact_id:
            contact = self.crm.update_contact(
                contact_id, purchase_probability="HIGH", sentiment="POSITIVE"
            )
            if contact is not None and contact.phone:
                phone = contact.phone

        logger.info(
            "Conversion recorded",
            extra={
                "workspace_id": workspace_id,
                "contact_id": contact_id,
                "action": CONVERSION_ACTION,
            },
        )

        if settings.conversion_flow_id and (contact_id or phone):
            self._start_conversion_flow(
                workspace_id, settings.conversion_flow_id, phone or contact_id, meta
            )

        return ConversionResult(ok=True, contact_id=contact_id)

    def _resolve_contact_id(self, request: ConversionRequest) -> Optional[str]:
        if request.contact_id:
            return request.contact_id
        if request.phone:
            contact = self.crm.find_contact_by_phone(request.workspace_id, request.phone)
            return contact.id if contact else None
        return None

    def _start_conversion_flow(
        self, workspace_id: str, flow_id: str, user: str, meta: ConversionMeta
    ) -> None:
        try:
            self.queue.enqueue(
                FLOW_QUEUE,
                RUN_FLOW_JOB,
                {
                    "workspaceId": workspace_id,
                    "flowId": flow_id,
                    "user": user,
                    "initialVars": {
                        "source": FLOW_SOURCE,
                        "amount": meta.amount,
                        "orderId": meta.order_id,
                        "provider": meta.provider,
                    },
                },
            )
        except QueueError:
            logger.exception(
                "Failed to enqueue post-conversion flow %s",
                flow_id,
                extra={"workspace_id": workspace_id},
            )
