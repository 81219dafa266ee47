"""
Autopilot Service — the public surface of the kernel.

Wires the components together and exposes the operations callers use:
workspace toggles and settings, the cycle, manual retries, conversions,
direct sends, next-best-action recommendations and ledger reads.
"""

import logging
from typing import Callable, Dict, List, Optional

from autopilot_kernel.clock import Clock, SystemClock
from autopilot_kernel.compliance.billing import BillingGuard
from autopilot_kernel.config import RuntimeConfig, get_runtime_config
from autopilot_kernel.conversion.ledger import ConversionLedger
from autopilot_kernel.crm.store import CrmStore
from autopilot_kernel.cycle.orchestrator import CycleOrchestrator
from autopilot_kernel.decision.engine import DecisionEngine
from autopilot_kernel.dispatch.delivery import CrmOutboxTransport, SendDelivery, Transport
from autopilot_kernel.dispatch.dispatcher import ActionDispatcher
from autopilot_kernel.intelligence.classifier import Classifier, build_classifier
from autopilot_kernel.jobs.queue import (
    RUN_FLOW_JOB,
    SCAN_MESSAGE_JOB,
    SEND_MESSAGE_JOB,
    InMemoryQueue,
    Job,
    QueueClient,
    enqueue_scan,
)
from autopilot_kernel.jobs.worker import QueueWorker, WorkerReport
from autopilot_kernel.ledger.store import EventLedger
from autopilot_kernel.models.conversion import ConversionRequest, ConversionResult
from autopilot_kernel.models.crm import MessageDirection
from autopilot_kernel.models.cycle import CycleReport, NextBestAction
from autopilot_kernel.models.ledger import AutopilotEvent, EventStatus
from autopilot_kernel.models.scheduling import BestTime, RetryResult
from autopilot_kernel.scheduling.retry import RetryScheduler
from autopilot_kernel.scheduling.smart_time import SmartTimeOptimizer

logger = logging.getLogger(__name__)


BUYING_KEYWORDS = ("preço", "valor", "quanto", "custa", "pix", "boleto")
LONG_SILENCE_MINUTES = 720

NBA_MESSAGES = {
    "GHOST_CLOSER": "Consigo te garantir a condição especial agora. Quer que eu finalize e te envie o link?",
    "REACTIVATE": "Voltei com uma novidade só pra você: preparei uma condição especial se retomarmos hoje. Quer ver?",
    "INTRO": "Olá! Sou seu assistente. Posso te mandar uma condição especial ou entender melhor sua necessidade?",
    "FOLLOW_UP_SOFT": "Oi! Só checando se posso te ajudar em algo ou se prefere que eu volte mais tarde. 🙂",
}

# Workspace settings callers may change, and whether None is a valid value
EDITABLE_SETTINGS = {
    "conversion_flow_id": True,
    "currency_default": False,
    "recovery_template_name": True,
    "require_opt_in": False,
}


class AutopilotService:
    """Composition root and public operations of the autopilot kernel."""

    def __init__(
        self,
        crm: CrmStore,
        ledger: EventLedger,
        queue: QueueClient,
        classifier: Classifier,
        clock: Clock,
        config: RuntimeConfig,
        transport: Optional[Transport] = None,
        flow_runner: Optional[Callable[[dict], None]] = None,
    ):
        self.crm = crm
        self.ledger = ledger
        self.queue = queue
        self.classifier = classifier
        self.clock = clock
        self.config = config
        self.flow_runner = flow_runner

        self.billing = BillingGuard(crm, ledger, clock)
        self.engine = DecisionEngine()
        self.smart_time = SmartTimeOptimizer(crm, clock)
        self.dispatcher = ActionDispatcher(crm, ledger, queue, classifier, clock, config)
        self.retries = RetryScheduler(crm, ledger, queue, clock, self.billing)
        self.conversions = ConversionLedger(crm, ledger, queue, clock, self.billing)
        self.orchestrator = CycleOrchestrator(
            crm=crm,
            classifier=classifier,
            engine=self.engine,
            dispatcher=self.dispatcher,
            smart_time=self.smart_time,
            queue=queue,
            billing=self.billing,
            clock=clock,
            config=config,
        )
        self.delivery = SendDelivery(
            crm, self.dispatcher, transport or CrmOutboxTransport(crm, clock)
        )
        self.worker = QueueWorker(
            queue,
            {
                SCAN_MESSAGE_JOB: self._handle_scan,
                SEND_MESSAGE_JOB: self.delivery.deliver,
                RUN_FLOW_JOB: self._handle_flow,
            },
            batch_size=config.worker_batch_size,
            poll_interval_seconds=config.worker_poll_seconds,
        )

    # --- Workspace settings ---

    def toggle_autopilot(self, workspace_id: str, enabled: bool) -> dict:
        if enabled:
            self.billing.ensure_not_suspended(workspace_id, source="toggle")
        self.crm.update_workspace_settings(workspace_id, autopilot_enabled=enabled)
        logger.info(
            "Autopilot %s", "enabled" if enabled else "disabled",
            extra={"workspace_id": workspace_id},
        )
        return {"workspaceId": workspace_id, "enabled": enabled}

    def get_status(self, workspace_id: str) -> dict:
        settings = self.crm.get_workspace(workspace_id).settings
        return {
            "workspaceId": workspace_id,
            "enabled": settings.autopilot_enabled,
            "billingSuspended": settings.billing_suspended,
        }

    def get_config(self, workspace_id: str) -> dict:
        settings = self.crm.get_workspace(workspace_id).settings
        return {
            "workspaceId": workspace_id,
            "conversionFlowId": settings.conversion_flow_id,
            "currencyDefault": settings.currency_default,
            "recoveryTemplateName": settings.recovery_template_name,
            "requireOptIn": settings.require_opt_in,
        }

    def update_config(self, workspace_id: str, **updates) -> dict:
        """
        Change editable workspace settings. Keys not passed are left alone;
        passing None clears a nullable setting and is ignored otherwise.
        """
        unknown = set(updates) - set(EDITABLE_SETTINGS)
        if unknown:
            raise ValueError(f"Unknown autopilot settings: {sorted(unknown)}")
        changes = {
            key: value
            for key, value in updates.items()
            if value is not None or EDITABLE_SETTINGS[key]
        }
        if changes:
            self.crm.update_workspace_settings(workspace_id, **changes)
        return self.get_config(workspace_id)

    def get_runtime_config(self) -> dict:
        return self.config.tunables()

    # --- Operations ---

    def run_cycle(self, workspace_id: str) -> CycleReport:
        return self.orchestrator.run_cycle(workspace_id)

    def retry_contact(self, workspace_id: str, contact_id: str) -> RetryResult:
        return self.retries.retry_contact(workspace_id, contact_id)

    def mark_conversion(self, request: ConversionRequest) -> ConversionResult:
        return self.conversions.mark_conversion(request)

    def get_best_time(self, workspace_id: str) -> BestTime:
        return self.smart_time.get_best_time(workspace_id)

    def send_direct_message(self, workspace_id: str, contact_id: str, message: str) -> dict:
        self.billing.ensure_not_suspended(workspace_id, source="direct_send")
        contact = self.crm.require_contact(workspace_id, contact_id)
        outcome = self.dispatcher.send_direct(workspace_id, contact, message)
        if outcome.status != EventStatus.EXECUTED:
            return {"queued": False, "reason": outcome.reason}
        return {"queued": True, "jobId": outcome.job_id}

    def enqueue_processing(
        self,
        workspace_id: str,
        contact_id: Optional[str] = None,
        phone: Optional[str] = None,
        message: Optional[str] = None,
        delay_ms: Optional[int] = None,
    ) -> dict:
        self.billing.ensure_not_suspended(workspace_id, source="enqueue")
        if not contact_id and not phone:
            raise ValueError("contact_id or phone is required to enqueue autopilot processing")
        job = enqueue_scan(
            self.queue, workspace_id,
            contact_id=contact_id, phone=phone, message=message or "", delay_ms=delay_ms,
        )
        return {"queued": True, "jobId": job.id}

    def next_best_action(self, workspace_id: str, contact_id: str) -> NextBestAction:
        """Heuristic recommendation for one contact. Never dispatches."""
        contact = self.crm.require_contact(workspace_id, contact_id)
        conv = self.crm.conversation_for_contact(workspace_id, contact_id)
        last = conv.last_message if conv else None

        action, reason = "FOLLOW_UP_SOFT", "keep_warm"
        if last is None:
            action, reason = "INTRO", "no_history"
        elif last.direction == MessageDirection.INBOUND:
            text = (last.content or "").lower()
            if any(k in text for k in BUYING_KEYWORDS):
                action, reason = "GHOST_CLOSER", "buying_signal"
        else:
            age_minutes = round((self.clock.now() - last.created_at).total_seconds() / 60)
            if age_minutes > LONG_SILENCE_MINUTES:
                action, reason = "REACTIVATE", "long_silence"

        return NextBestAction(
            workspace_id=workspace_id,
            contact_id=contact_id,
            contact=contact.name or contact.phone,
            action=action,
            reason=reason,
            recommended_message=NBA_MESSAGES[action],
            last_message_at=last.created_at if last else None,
        )

    # --- Jobs ---

    def process_jobs(self) -> WorkerReport:
        """Consume every due job once (scans, sends, conversion flows)."""
        return self.worker.process_available()

    def _handle_scan(self, job: Job) -> None:
        self.orchestrator.scan_contact(
            job.payload["workspaceId"],
            contact_id=job.payload.get("contactId"),
            phone=job.payload.get("phone"),
        )

    def _handle_flow(self, job: Job) -> None:
        if self.flow_runner is None:
            logger.info(
                "No flow runner configured, flow %s not started",
                job.payload.get("flowId"),
                extra={"workspace_id": job.payload.get("workspaceId")},
            )
            return
        self.flow_runner(job.payload)

    # --- Reads ---

    def get_queue_stats(self) -> Dict[str, dict]:
        return self.queue.stats()

    def recent_events(
        self,
        workspace_id: str,
        limit: int = 50,
        status: Optional[EventStatus] = None,
    ) -> List[AutopilotEvent]:
        return self.ledger.query_recent(workspace_id, limit=limit, status=status)


def build_service(
    config: Optional[RuntimeConfig] = None,
    clock: Optional[Clock] = None,
    crm: Optional[CrmStore] = None,
    queue: Optional[QueueClient] = None,
    classifier: Optional[Classifier] = None,
) -> AutopilotService:
    """Build a service from runtime config, defaulting every collaborator."""
    config = config or get_runtime_config()
    clock = clock or SystemClock()
    return AutopilotService(
        crm=crm or CrmStore(),
        ledger=EventLedger(config.ledger_db_path),
        queue=queue or InMemoryQueue(clock),
        classifier=classifier or build_classifier(config.openai_api_key, config.openai_model),
        clock=clock,
        config=config,
    )
