"""
Action Dispatcher — turns a decided action into at most one queued send.

Execution order for one action:
1. handover_human: record the handover and step back. Nothing is sent.
2. Re-run the compliance guard. Decision time and send time differ, so the
   verdict is recomputed here, never reused.
3. Enforce the per-contact and per-workspace daily send limits.
4. Resolve the text: canned for night/calendar actions, generated otherwise,
   with a fixed greeting when generation is unavailable or fails.
5. Enqueue the send job. Delivery retries belong to the send worker.
6. Record the outcome in the ledger.

Every path writes exactly one ledger entry.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from autopilot_kernel.clock import Clock
from autopilot_kernel.compliance.guard import ComplianceGuard, policy_for_workspace
from autopilot_kernel.config import RuntimeConfig
from autopilot_kernel.crm.store import CrmStore
from autopilot_kernel.intelligence.classifier import Classifier, ClassifierError
from autopilot_kernel.jobs.queue import FLOW_QUEUE, SEND_MESSAGE_JOB, QueueClient, QueueError
from autopilot_kernel.ledger.store import EventLedger
from autopilot_kernel.models.compliance import ComplianceResult
from autopilot_kernel.models.crm import Contact, Conversation, Message
from autopilot_kernel.models.cycle import DispatchOutcome
from autopilot_kernel.models.decision import Action, Analysis
from autopilot_kernel.models.ledger import (
    MANUAL_SEND_ACTION,
    AutopilotEvent,
    ComplianceMeta,
    DispatchMeta,
    ErrorMeta,
    EventStatus,
    HandoverMeta,
)

logger = logging.getLogger(__name__)


FALLBACK_GREETING = "Olá, como posso ajudar?"

CANNED_TEXTS = {
    Action.SEND_CALENDAR: (
        "Vou te enviar meu link de agenda para marcarmos um horário: "
        "https://cal.com/agenda (Exemplo)"
    ),
    Action.SOFT_CLOSE_NIGHT: (
        "Oi! Vi seu interesse. Já deixei separado aqui pra você. "
        "Amanhã cedo te chamo pra finalizarmos, pode ser? 🌙"
    ),
    Action.AUTO_REPLY_NIGHT: (
        "Opa! Agora estou offline, mas já anotei sua dúvida. "
        "Amanhã 8h te respondo sem falta!"
    ),
}

# Generation instruction per action
GENERATION_TYPES = {
    Action.SEND_OFFER: "offer",
    Action.SEND_OFFER_SOFT: "offer_soft",
    Action.SEND_PRICE: "price",
    Action.FOLLOW_UP: "follow_up",
    Action.LEAD_UNLOCKER: "lead_unlocker",
    Action.HANDLE_OBJECTION: "objection",
    Action.QUALIFY: "qualify",
    Action.TRY_UPSELL: "upsell",
    Action.SEND_CTA: "send_cta",
    Action.AI_CHAT: "chat",
}

CONTACT_DAILY_LIMIT_REASON = "contact_daily_limit"
WORKSPACE_DAILY_LIMIT_REASON = "workspace_daily_limit"
ENQUEUE_FAILED_REASON = "enqueue_failed"
NEXT_BEST_ACTION_REASON = "next_best_action"


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


class ActionDispatcher:
    """Executes decided actions against the compliance guard, limits and queue."""

    def __init__(
        self,
        crm: CrmStore,
        ledger: EventLedger,
        queue: QueueClient,
        classifier: Classifier,
        clock: Clock,
        config: RuntimeConfig,
        guard: Optional[ComplianceGuard] = None,
    ):
        self.crm = crm
        self.ledger = ledger
        self.queue = queue
        self.classifier = classifier
        self.clock = clock
        self.config = config
        self.guard = guard or ComplianceGuard()

    # --- Ledger ---

    def record(
        self,
        workspace_id: str,
        contact_id: Optional[str],
        intent: str,
        action: str,
        status: EventStatus,
        reason: Optional[str],
        meta,
    ) -> AutopilotEvent:
        event = AutopilotEvent(
            id=f"evt_{uuid4().hex[:12]}",
            workspace_id=workspace_id,
            contact_id=contact_id,
            intent=intent,
            action=action,
            status=status,
            reason=reason,
            meta=meta,
            created_at=self.clock.now(),
        )
        self.ledger.append(event)
        logger.info(
            "Autopilot %s %s",
            action,
            status.value,
            extra={
                "workspace_id": workspace_id,
                "contact_id": contact_id,
                "action": action,
                "status": status,
                "reason": reason,
            },
        )
        return event

    # --- Guards ---

    def check_compliance(
        self, workspace_id: str, contact: Contact, messages: List[Message]
    ) -> ComplianceResult:
        settings = self.crm.get_workspace(workspace_id).settings
        policy = policy_for_workspace(settings, self.config)
        return self.guard.check(policy, contact, messages, self.clock.now())

    def _daily_limit_reason(self, workspace_id: str, contact_id: str) -> Optional[str]:
        since = start_of_day(self.clock.now())
        sent_to_contact = self.ledger.count(
            workspace_id,
            contact_id=contact_id,
            status=EventStatus.EXECUTED,
            meta_kind="dispatch",
            since=since,
        )
        if sent_to_contact >= self.config.contact_daily_limit:
            return CONTACT_DAILY_LIMIT_REASON

        sent_in_workspace = self.ledger.count(
            workspace_id,
            status=EventStatus.EXECUTED,
            meta_kind="dispatch",
            since=since,
        )
        if sent_in_workspace >= self.config.workspace_daily_limit:
            return WORKSPACE_DAILY_LIMIT_REASON
        return None

    # --- Text ---

    def resolve_text(
        self,
        action: Action,
        messages: List[Message],
        analysis: Optional[Analysis],
    ):
        """Returns (text, generated)."""
        if action in CANNED_TEXTS:
            return CANNED_TEXTS[action], False

        instruction = GENERATION_TYPES.get(action, "chat")
        try:
            text = self.classifier.generate(instruction, messages, analysis)
        except ClassifierError as e:
            logger.warning("Text generation failed, using fallback greeting: %s", e)
            text = None
        if not text:
            return FALLBACK_GREETING, False
        return text, True

    # --- Sending ---

    def _enqueue_send(self, workspace_id: str, phone: str, text: str) -> str:
        job = self.queue.enqueue(
            FLOW_QUEUE,
            SEND_MESSAGE_JOB,
            {
                "workspaceId": workspace_id,
                "to": phone,
                "user": phone,
                "message": text,
            },
        )
        return job.id

    def execute_action(
        self,
        action: Action,
        conversation: Conversation,
        analysis: Optional[Analysis] = None,
    ) -> DispatchOutcome:
        action = Action(action)
        workspace_id = conversation.workspace_id
        contact_id = conversation.contact_id
        intent = analysis.intent if analysis else "UNKNOWN"

        if action == Action.HANDOVER_HUMAN:
            self.record(
                workspace_id, contact_id, intent, action.value,
                EventStatus.EXECUTED, "handover_human",
                HandoverMeta(conversation_id=conversation.id),
            )
            return DispatchOutcome(
                action=action.value, status=EventStatus.EXECUTED,
                reason="handover_human", handover=True,
            )

        contact = self.crm.get_contact(contact_id)
        if contact is None or not contact.phone:
            self.record(
                workspace_id, contact_id, intent, action.value,
                EventStatus.ERROR, "contact_unreachable",
                ErrorMeta(error="contact missing or without phone", conversation_id=conversation.id),
            )
            return DispatchOutcome(
                action=action.value, status=EventStatus.ERROR, reason="contact_unreachable"
            )

        compliance = self.check_compliance(workspace_id, contact, conversation.messages)
        if not compliance.allowed:
            reason = compliance.reason.value
            self.record(
                workspace_id, contact_id, intent, action.value,
                EventStatus.SKIPPED, reason,
                ComplianceMeta(conversation_id=conversation.id, guard="compliance"),
            )
            return DispatchOutcome(action=action.value, status=EventStatus.SKIPPED, reason=reason)

        limit_reason = self._daily_limit_reason(workspace_id, contact_id)
        if limit_reason:
            self.record(
                workspace_id, contact_id, intent, action.value,
                EventStatus.SKIPPED, limit_reason,
                ComplianceMeta(conversation_id=conversation.id, guard="daily_limit"),
            )
            return DispatchOutcome(
                action=action.value, status=EventStatus.SKIPPED, reason=limit_reason
            )

        text, generated = self.resolve_text(
            action, conversation.recent_messages(), analysis
        )

        try:
            job_id = self._enqueue_send(workspace_id, contact.phone, text)
        except QueueError as e:
            logger.warning(
                "Failed to enqueue send: %s",
                e,
                extra={"workspace_id": workspace_id, "contact_id": contact_id},
            )
            self.record(
                workspace_id, contact_id, intent, action.value,
                EventStatus.ERROR, ENQUEUE_FAILED_REASON,
                ErrorMeta(error=str(e), conversation_id=conversation.id),
            )
            return DispatchOutcome(
                action=action.value, status=EventStatus.ERROR, reason=ENQUEUE_FAILED_REASON
            )

        self.record(
            workspace_id, contact_id, intent, action.value,
            EventStatus.EXECUTED, None,
            DispatchMeta(
                conversation_id=conversation.id,
                job_id=job_id,
                message=text,
                generated=generated,
            ),
        )
        return DispatchOutcome(
            action=action.value, status=EventStatus.EXECUTED, job_id=job_id, message=text
        )

    def send_direct(
        self, workspace_id: str, contact: Contact, message: str
    ) -> DispatchOutcome:
        """
        Send an operator-chosen message (e.g. a next-best-action suggestion).
        Compliance applies; daily limits do not.
        """
        if not contact.phone:
            raise ValueError(f"Contact {contact.id} has no phone to send to")

        conversation = self.crm.conversation_for_contact(workspace_id, contact.id)
        messages = conversation.messages if conversation else []
        conversation_id = conversation.id if conversation else None

        compliance = self.check_compliance(workspace_id, contact, messages)
        if not compliance.allowed:
            reason = compliance.reason.value
            self.record(
                workspace_id, contact.id, "NBA", MANUAL_SEND_ACTION,
                EventStatus.SKIPPED, reason,
                ComplianceMeta(conversation_id=conversation_id),
            )
            return DispatchOutcome(
                action=MANUAL_SEND_ACTION, status=EventStatus.SKIPPED, reason=reason
            )

        try:
            job_id = self._enqueue_send(workspace_id, contact.phone, message)
        except QueueError as e:
            logger.warning(
                "Failed to enqueue direct send: %s",
                e,
                extra={"workspace_id": workspace_id, "contact_id": contact.id},
            )
            self.record(
                workspace_id, contact.id, "NBA", MANUAL_SEND_ACTION,
                EventStatus.ERROR, ENQUEUE_FAILED_REASON,
                ErrorMeta(error=str(e), conversation_id=conversation_id),
            )
            return DispatchOutcome(
                action=MANUAL_SEND_ACTION, status=EventStatus.ERROR, reason=ENQUEUE_FAILED_REASON
            )

        self.record(
            workspace_id, contact.id, "NBA", MANUAL_SEND_ACTION,
            EventStatus.EXECUTED, NEXT_BEST_ACTION_REASON,
            DispatchMeta(conversation_id=conversation_id, job_id=job_id, message=message),
        )
        return DispatchOutcome(
            action=MANUAL_SEND_ACTION,
            status=EventStatus.EXECUTED,
            reason=NEXT_BEST_ACTION_REASON,
            job_id=job_id,
            message=message,
        )
