"""
Cycle Orchestrator — one autopilot pass over a workspace.

Gates, in order (the first that fails ends the cycle):
- billing suspended  -> raise BillingSuspendedError
- autopilot disabled -> status "disabled"
- send queue backlog at or above threshold -> status "backpressure"

Then two sequential phases:
- Reactive: OPEN conversations with unread inbound messages.
  Classify -> Decide -> Execute, one conversation at a time. Runs at any
  hour; at night the decision table answers with the night actions.
- Proactive: OPEN conversations silent past the threshold where the business
  spoke last. Skipped entirely outside the operating window or when the
  current hour is far from the best hour; otherwise each gets a
  lead_unlocker.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from croniter import croniter

from autopilot_kernel.clock import Clock
from autopilot_kernel.compliance.billing import BillingGuard
from autopilot_kernel.config import RuntimeConfig
from autopilot_kernel.crm.store import CrmStore
from autopilot_kernel.decision.engine import DecisionEngine
from autopilot_kernel.dispatch.dispatcher import ActionDispatcher
from autopilot_kernel.intelligence.classifier import Classifier, ClassifierError
from autopilot_kernel.jobs.queue import FLOW_QUEUE, QueueClient
from autopilot_kernel.models.crm import Conversation, MessageDirection
from autopilot_kernel.models.cycle import CycleReport, DispatchOutcome, PhaseReport
from autopilot_kernel.models.decision import DEFAULT_ANALYSIS, Action, Analysis
from autopilot_kernel.scheduling.smart_time import SmartTimeOptimizer

logger = logging.getLogger(__name__)


CLASSIFY_HISTORY = 10
NOT_NEAR_BEST_HOUR = "not_near_best_hour"
OUTSIDE_WINDOW = "outside_window"


def _hours(first: int, last: int) -> str:
    return str(first) if first == last else f"{first}-{last}"


def operating_window_cron(window_start: int, window_end: int) -> Optional[str]:
    """
    Cron expression matching every minute of [window_start, window_end).

    Windows may wrap past midnight. Equal bounds mean no restriction (None).
    """
    if window_start == window_end:
        return None
    if window_start < window_end:
        hours = _hours(window_start, window_end - 1)
    elif window_end == 0:
        hours = _hours(window_start, 23)
    else:
        hours = f"{_hours(window_start, 23)},{_hours(0, window_end - 1)}"
    return f"* {hours} * * *"


def within_operating_window(config: RuntimeConfig, current_time: datetime) -> bool:
    expr = operating_window_cron(config.window_start, config.window_end)
    if expr is None:
        return True
    return croniter.match(expr, current_time)


class CycleOrchestrator:
    """Runs the reactive and proactive phases for one workspace."""

    def __init__(
        self,
        crm: CrmStore,
        classifier: Classifier,
        engine: DecisionEngine,
        dispatcher: ActionDispatcher,
        smart_time: SmartTimeOptimizer,
        queue: QueueClient,
        billing: BillingGuard,
        clock: Clock,
        config: RuntimeConfig,
    ):
        self.crm = crm
        self.classifier = classifier
        self.engine = engine
        self.dispatcher = dispatcher
        self.smart_time = smart_time
        self.queue = queue
        self.billing = billing
        self.clock = clock
        self.config = config

    def run_cycle(self, workspace_id: str) -> CycleReport:
        self.billing.ensure_not_suspended(workspace_id, source="cycle")

        now = self.clock.now()
        report = CycleReport(
            workspace_id=workspace_id, status="completed", started_at=now, hour=now.hour
        )

        if not self.crm.get_workspace(workspace_id).settings.autopilot_enabled:
            report.status = "disabled"
            return report

        waiting = self.queue.waiting_count(FLOW_QUEUE)
        if waiting >= self.config.queue_waiting_threshold:
            report.status = "backpressure"
            logger.warning(
                "Send queue backlog %d >= %d, cycle skipped",
                waiting,
                self.config.queue_waiting_threshold,
                extra={"workspace_id": workspace_id},
            )
            return report

        best = self.smart_time.get_best_time(workspace_id)
        report.best_hour = best.best_hour
        report.is_optimal_time = self.smart_time.is_optimal_hour(best.best_hour, now.hour)

        self._run_reactive(workspace_id, report)
        self._run_proactive(workspace_id, best.best_hour, report)

        logger.info(
            "Cycle completed: reactive %d executed, proactive %d executed",
            report.reactive.executed,
            report.proactive.executed,
            extra={"workspace_id": workspace_id},
        )
        return report

    def _classify(self, conversation: Conversation) -> Analysis:
        try:
            return self.classifier.classify(conversation.recent_messages(CLASSIFY_HISTORY))
        except ClassifierError as e:
            logger.warning(
                "Classifier failed, using neutral analysis: %s",
                e,
                extra={"workspace_id": conversation.workspace_id, "contact_id": conversation.contact_id},
            )
            return DEFAULT_ANALYSIS

    def _run_reactive(self, workspace_id: str, report: CycleReport) -> None:
        phase: PhaseReport = report.reactive
        conversations = self.crm.list_unread_open(workspace_id, self.config.cycle_limit)
        phase.candidates = len(conversations)

        for conv in conversations:
            outcome = self._react(conv, report.hour, report.is_optimal_time)
            if outcome is not None:
                phase.record(outcome)

    def _react(
        self, conv: Conversation, hour: int, is_optimal_time: bool
    ) -> Optional[DispatchOutcome]:
        """Classify -> Decide -> Execute for one conversation. None when nothing to answer."""
        last = conv.last_message
        if last is None or last.direction == MessageDirection.OUTBOUND:
            return None
        analysis = self._classify(conv)
        action = self.engine.decide(analysis, hour, is_optimal_time)
        return self.dispatcher.execute_action(action, conv, analysis)

    def scan_contact(
        self,
        workspace_id: str,
        contact_id: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Optional[DispatchOutcome]:
        """
        Reactive pass over a single contact, as requested by a scan-message
        job (manual retries, webhook-triggered processing).
        """
        self.billing.ensure_not_suspended(workspace_id, source="scan")
        if not self.crm.get_workspace(workspace_id).settings.autopilot_enabled:
            return None

        contact = self.crm.find_contact(workspace_id, contact_id=contact_id, phone=phone)
        if contact is None:
            logger.info(
                "Scan target not found",
                extra={"workspace_id": workspace_id, "contact_id": contact_id},
            )
            return None
        conv = self.crm.conversation_for_contact(workspace_id, contact.id)
        if conv is None:
            return None

        hour = self.clock.now().hour
        best = self.smart_time.get_best_time(workspace_id)
        return self._react(conv, hour, self.smart_time.is_optimal_hour(best.best_hour, hour))

    def _run_proactive(self, workspace_id: str, best_hour: int, report: CycleReport) -> None:
        phase: PhaseReport = report.proactive
        if not within_operating_window(self.config, report.started_at):
            phase.skipped_reason = OUTSIDE_WINDOW
            logger.info(
                "Outside operating window, proactive phase skipped",
                extra={"workspace_id": workspace_id},
            )
            return
        if not self.smart_time.is_near_best_hour(best_hour, report.hour):
            phase.skipped_reason = NOT_NEAR_BEST_HOUR
            return

        silent_before = report.started_at - timedelta(hours=self.config.silence_hours)
        conversations = self.crm.list_stalled(workspace_id, silent_before, self.config.cycle_limit)
        phase.candidates = len(conversations)

        for conv in conversations:
            phase.record(self.dispatcher.execute_action(Action.LEAD_UNLOCKER, conv))
