"""
Send Delivery — the send-time half of the compliance contract.

A send-message job can sit in the queue long enough for the world to change:
the 24h session window may close, or the contact may lose opt-in. Delivery
therefore re-runs the ComplianceGuard when the job is consumed and only then
hands the text to the transport.

Ledger entries written here:
- skipped / <compliance reason>   the window closed while the job waited
- error / contact_unreachable     the destination no longer maps to a contact
- error / delivery_failed         the transport refused the message

A successful delivery writes nothing: the dispatch entry recorded at
enqueue time already stands for the send.
"""

import logging
from typing import Optional

from autopilot_kernel.clock import Clock
from autopilot_kernel.crm.store import CrmStore
from autopilot_kernel.dispatch.dispatcher import ActionDispatcher
from autopilot_kernel.jobs.queue import Job
from autopilot_kernel.models.crm import MessageDirection
from autopilot_kernel.models.cycle import DispatchOutcome
from autopilot_kernel.models.ledger import ComplianceMeta, ErrorMeta, EventStatus

logger = logging.getLogger(__name__)


DELIVERY_INTENT = "DELIVERY"
SEND_MESSAGE_ACTION = "send_message"
DELIVERY_FAILED_REASON = "delivery_failed"
CONTACT_UNREACHABLE_REASON = "contact_unreachable"


class TransportError(Exception):
    """Raised when the channel refuses or fails to accept a message."""
    pass


class Transport:
    """Outbound channel interface."""

    def send(self, workspace_id: str, to: str, message: str) -> None:
        raise NotImplementedError


class CrmOutboxTransport(Transport):
    """
    Writes the message to the contact's conversation as OUTBOUND.
    The WhatsApp provider itself lives outside the kernel; this keeps the
    CRM view (last message, unread count) consistent with what was sent.
    """

    def __init__(self, crm: CrmStore, clock: Clock):
        self.crm = crm
        self.clock = clock

    def send(self, workspace_id: str, to: str, message: str) -> None:
        contact = self.crm.find_contact_by_phone(workspace_id, to)
        if contact is None:
            raise TransportError(f"No contact with phone {to} in workspace {workspace_id}")
        self.crm.record_message(
            workspace_id, contact.id, MessageDirection.OUTBOUND, message, self.clock.now()
        )


class SendDelivery:
    """Handles send-message jobs."""

    def __init__(
        self,
        crm: CrmStore,
        dispatcher: ActionDispatcher,
        transport: Transport,
    ):
        self.crm = crm
        self.dispatcher = dispatcher
        self.transport = transport

    def deliver(self, job: Job) -> DispatchOutcome:
        workspace_id = job.payload["workspaceId"]
        to = job.payload.get("to") or ""
        message = job.payload.get("message") or ""

        contact = self.crm.find_contact_by_phone(workspace_id, to)
        if contact is None:
            self.dispatcher.record(
                workspace_id, None, DELIVERY_INTENT, SEND_MESSAGE_ACTION,
                EventStatus.ERROR, CONTACT_UNREACHABLE_REASON,
                ErrorMeta(error=f"no contact for {to or 'empty destination'}"),
            )
            return DispatchOutcome(
                action=SEND_MESSAGE_ACTION,
                status=EventStatus.ERROR,
                reason=CONTACT_UNREACHABLE_REASON,
                job_id=job.id,
            )

        conversation = self.crm.conversation_for_contact(workspace_id, contact.id)
        conversation_id: Optional[str] = conversation.id if conversation else None
        messages = conversation.messages if conversation else []

        compliance = self.dispatcher.check_compliance(workspace_id, contact, messages)
        if not compliance.allowed:
            reason = compliance.reason.value
            self.dispatcher.record(
                workspace_id, contact.id, DELIVERY_INTENT, SEND_MESSAGE_ACTION,
                EventStatus.SKIPPED, reason,
                ComplianceMeta(conversation_id=conversation_id, guard="delivery"),
            )
            return DispatchOutcome(
                action=SEND_MESSAGE_ACTION, status=EventStatus.SKIPPED, reason=reason, job_id=job.id
            )

        try:
            self.transport.send(workspace_id, to, message)
        except TransportError as e:
            self.dispatcher.record(
                workspace_id, contact.id, DELIVERY_INTENT, SEND_MESSAGE_ACTION,
                EventStatus.ERROR, DELIVERY_FAILED_REASON,
                ErrorMeta(error=str(e), conversation_id=conversation_id),
            )
            return DispatchOutcome(
                action=SEND_MESSAGE_ACTION,
                status=EventStatus.ERROR,
                reason=DELIVERY_FAILED_REASON,
                job_id=job.id,
            )

        logger.info(
            "Message delivered",
            extra={"workspace_id": workspace_id, "contact_id": contact.id},
        )
        return DispatchOutcome(
            action=SEND_MESSAGE_ACTION,
            status=EventStatus.EXECUTED,
            job_id=job.id,
            message=message,
        )
