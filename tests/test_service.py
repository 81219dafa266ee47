"""Tests for the Autopilot Service public operations."""

from datetime import datetime, timedelta

import pytest

from autopilot_kernel.clock import FixedClock
from autopilot_kernel.compliance.billing import BillingSuspendedError
from autopilot_kernel.config import RuntimeConfig
from autopilot_kernel.crm.store import ContactNotFoundError, CrmStore
from autopilot_kernel.intelligence.classifier import RuleOnlyClassifier
from autopilot_kernel.jobs.queue import AUTOPILOT_QUEUE, FLOW_QUEUE, SCAN_MESSAGE_JOB, InMemoryQueue
from autopilot_kernel.ledger.store import EventLedger
from autopilot_kernel.models.crm import Contact, MessageDirection
from autopilot_kernel.models.ledger import EventStatus
from autopilot_kernel.service import AutopilotService, build_service


NOW = datetime(2026, 3, 10, 14, 0, 0)


def _make_service(clock=None, **config) -> AutopilotService:
    clock = clock or FixedClock(NOW)
    queue = InMemoryQueue(clock)
    queue.open()
    values = {"enforce_opt_in": False}
    values.update(config)
    return AutopilotService(
        crm=CrmStore(),
        ledger=EventLedger(db_path=":memory:"),
        queue=queue,
        classifier=RuleOnlyClassifier(),
        clock=clock,
        config=RuntimeConfig(**values),
    )


class TestWorkspaceSettings:
    def setup_method(self):
        self.service = _make_service()

    def test_toggle_and_status(self):
        assert self.service.toggle_autopilot("ws_1", True) == {"workspaceId": "ws_1", "enabled": True}
        assert self.service.get_status("ws_1") == {
            "workspaceId": "ws_1",
            "enabled": True,
            "billingSuspended": False,
        }
        self.service.toggle_autopilot("ws_1", False)
        assert not self.service.get_status("ws_1")["enabled"]

    def test_enable_blocked_when_suspended(self):
        self.service.crm.update_workspace_settings("ws_1", billing_suspended=True)
        with pytest.raises(BillingSuspendedError):
            self.service.toggle_autopilot("ws_1", True)
        assert not self.service.get_status("ws_1")["enabled"]

    def test_disable_allowed_when_suspended(self):
        self.service.crm.update_workspace_settings(
            "ws_1", billing_suspended=True, autopilot_enabled=True
        )
        assert self.service.toggle_autopilot("ws_1", False)["enabled"] is False

    def test_partial_config_update(self):
        self.service.update_config("ws_1", conversion_flow_id="flow_1", require_opt_in=True)
        config = self.service.update_config("ws_1", recovery_template_name="recovery_v2")

        assert config["conversionFlowId"] == "flow_1"
        assert config["recoveryTemplateName"] == "recovery_v2"
        assert config["requireOptIn"] is True
        assert config["currencyDefault"] == "BRL"

    def test_none_clears_nullable_only(self):
        self.service.update_config("ws_1", conversion_flow_id="flow_1")
        config = self.service.update_config("ws_1", conversion_flow_id=None, currency_default=None)
        assert config["conversionFlowId"] is None
        assert config["currencyDefault"] == "BRL"

    def test_unknown_setting_rejected(self):
        with pytest.raises(ValueError):
            self.service.update_config("ws_1", billing_suspended=False)

    def test_runtime_config_tunables(self):
        service = _make_service(window_start=9, contact_daily_limit=3)
        tunables = service.get_runtime_config()
        assert tunables["windowStart"] == 9
        assert tunables["windowEnd"] == 22
        assert tunables["contactDailyLimit"] == 3
        assert tunables["silenceHours"] == 24
        assert tunables["enforce24h"] is True
        assert set(tunables) == {
            "windowStart", "windowEnd", "silenceHours", "cycleLimit",
            "contactDailyLimit", "workspaceDailyLimit", "queueWaitingThreshold",
            "enforceOptIn", "enforce24h",
        }


class TestRuntimeConfig:
    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("AUTOPILOT_WINDOW_START", "6")
        monkeypatch.setenv("AUTOPILOT_CYCLE_LIMIT", "50")
        monkeypatch.setenv("AUTOPILOT_ENFORCE_24H", "false")
        config = RuntimeConfig()
        assert config.window_start == 6
        assert config.cycle_limit == 50
        assert config.enforce_24h is False

    def test_legacy_enforce_optin_variable(self, monkeypatch):
        monkeypatch.delenv("AUTOPILOT_ENFORCE_OPTIN", raising=False)
        monkeypatch.setenv("ENFORCE_OPTIN", "true")
        assert RuntimeConfig().enforce_opt_in is True

    def test_invalid_hour_rejected(self, monkeypatch):
        monkeypatch.setenv("AUTOPILOT_WINDOW_END", "24")
        with pytest.raises(ValueError):
            RuntimeConfig()


class TestNextBestAction:
    def setup_method(self):
        self.clock = FixedClock(NOW)
        self.service = _make_service(clock=self.clock)
        self.service.crm.upsert_contact(
            Contact(id="c_1", workspace_id="ws_1", phone="5511999990000", name="Ana")
        )

    def _say(self, direction, content, minutes_ago):
        self.service.crm.record_message(
            "ws_1", "c_1", direction, content, NOW - timedelta(minutes=minutes_ago)
        )

    def test_no_history_intro(self):
        nba = self.service.next_best_action("ws_1", "c_1")
        assert nba.action == "INTRO"
        assert nba.reason == "no_history"
        assert nba.contact == "Ana"
        assert nba.last_message_at is None

    def test_price_keyword_ghost_closer(self):
        self._say(MessageDirection.INBOUND, "Qual o VALOR no pix?", 5)
        nba = self.service.next_best_action("ws_1", "c_1")
        assert nba.action == "GHOST_CLOSER"
        assert nba.reason == "buying_signal"
        assert nba.last_message_at == NOW - timedelta(minutes=5)

    def test_long_outbound_silence_reactivates(self):
        self._say(MessageDirection.OUTBOUND, "Posso ajudar?", 721)
        nba = self.service.next_best_action("ws_1", "c_1")
        assert nba.action == "REACTIVATE"
        assert nba.reason == "long_silence"

    def test_recent_outbound_keeps_warm(self):
        self._say(MessageDirection.OUTBOUND, "Posso ajudar?", 60)
        nba = self.service.next_best_action("ws_1", "c_1")
        assert nba.action == "FOLLOW_UP_SOFT"
        assert nba.reason == "keep_warm"
        assert nba.recommended_message

    def test_inbound_without_keyword_keeps_warm(self):
        self._say(MessageDirection.INBOUND, "bom dia", 900)
        assert self.service.next_best_action("ws_1", "c_1").action == "FOLLOW_UP_SOFT"

    def test_never_dispatches(self):
        self._say(MessageDirection.INBOUND, "quanto custa?", 5)
        self.service.next_best_action("ws_1", "c_1")
        assert self.service.queue.jobs(FLOW_QUEUE) == []
        assert self.service.ledger.count("ws_1") == 0

    def test_unknown_contact(self):
        with pytest.raises(ContactNotFoundError):
            self.service.next_best_action("ws_1", "c_missing")


class TestDirectMessageAndEnqueue:
    def setup_method(self):
        self.service = _make_service()
        self.service.crm.upsert_contact(
            Contact(id="c_1", workspace_id="ws_1", phone="5511999990000")
        )

    def test_direct_message_queued(self):
        self.service.crm.record_message(
            "ws_1", "c_1", MessageDirection.INBOUND, "oi", NOW - timedelta(hours=1)
        )
        result = self.service.send_direct_message("ws_1", "c_1", "Olá!")
        assert result["queued"] is True
        assert len(self.service.queue.jobs(FLOW_QUEUE)) == 1

    def test_direct_message_blocked(self):
        result = self.service.send_direct_message("ws_1", "c_1", "Olá!")
        assert result == {"queued": False, "reason": "session_expired_24h"}

    def test_direct_message_suspended(self):
        self.service.crm.update_workspace_settings("ws_1", billing_suspended=True)
        with pytest.raises(BillingSuspendedError):
            self.service.send_direct_message("ws_1", "c_1", "Olá!")

    def test_enqueue_processing_with_delay(self):
        result = self.service.enqueue_processing("ws_1", phone="5511999990000", delay_ms=5000)
        assert result["queued"]
        job = self.service.queue.jobs(AUTOPILOT_QUEUE, SCAN_MESSAGE_JOB)[0]
        assert job.delay_ms == 5000
        assert job.payload["phone"] == "5511999990000"
        assert job.payload["messageContent"] == ""

    def test_enqueue_processing_requires_target(self):
        with pytest.raises(ValueError):
            self.service.enqueue_processing("ws_1")

    def test_queue_stats_split_waiting_and_delayed(self):
        self.service.enqueue_processing("ws_1", contact_id="c_1")
        self.service.enqueue_processing("ws_1", contact_id="c_1", delay_ms=60000)
        stats = self.service.get_queue_stats()
        assert stats[AUTOPILOT_QUEUE] == {"waiting": 1, "delayed": 1}
        assert stats[FLOW_QUEUE] == {"waiting": 0, "delayed": 0}

    def test_recent_events(self):
        self.service.send_direct_message("ws_1", "c_1", "Olá!")
        events = self.service.recent_events("ws_1", status=EventStatus.SKIPPED)
        assert len(events) == 1
        assert events[0].action == "MANUAL_SEND"


class TestBuildService:
    def test_defaults_to_rule_only_mode(self):
        service = build_service(config=RuntimeConfig(openai_api_key=None))
        assert isinstance(service.classifier, RuleOnlyClassifier)
        assert not service.queue.is_open
