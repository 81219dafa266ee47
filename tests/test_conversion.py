"""Tests for the Conversion Ledger."""

from datetime import datetime

import pytest

from autopilot_kernel.clock import FixedClock
from autopilot_kernel.compliance.billing import BillingGuard, BillingSuspendedError
from autopilot_kernel.conversion.ledger import ConversionLedger
from autopilot_kernel.crm.store import CrmStore
from autopilot_kernel.jobs.queue import FLOW_QUEUE, RUN_FLOW_JOB, InMemoryQueue
from autopilot_kernel.ledger.store import EventLedger
from autopilot_kernel.models.conversion import ConversionRequest
from autopilot_kernel.models.crm import Contact
from autopilot_kernel.models.ledger import ConversionMeta, EventStatus


NOW = datetime(2026, 3, 10, 14, 0, 0)


def _make_request(order_id=None, contact_id="c_1", phone=None, amount=199.0) -> ConversionRequest:
    return ConversionRequest(
        workspace_id="ws_1",
        contact_id=contact_id,
        phone=phone,
        meta=ConversionMeta(order_id=order_id, amount=amount, provider="stripe"),
    )


class TestConversionLedger:
    def setup_method(self):
        self.clock = FixedClock(NOW)
        self.crm = CrmStore()
        self.crm.upsert_contact(Contact(id="c_1", workspace_id="ws_1", phone="+55 (11) 99999-0000"))
        self.ledger = EventLedger(db_path=":memory:")
        self.queue = InMemoryQueue(self.clock)
        self.queue.open()
        self.conversions = ConversionLedger(
            self.crm,
            self.ledger,
            self.queue,
            self.clock,
            BillingGuard(self.crm, self.ledger, self.clock),
        )

    def _executed_conversions(self):
        return self.ledger.count("ws_1", action="CONVERSION", status=EventStatus.EXECUTED)

    def test_records_conversion_and_scores_contact(self):
        result = self.conversions.mark_conversion(_make_request(order_id="ord_1"))

        assert result.ok
        assert result.contact_id == "c_1"
        assert not result.deduped
        assert self._executed_conversions() == 1

        event = self.ledger.find_conversion("ws_1", "ord_1")
        assert event.intent == "BUYING"
        assert event.reason == "webhook_conversion"
        assert event.meta.currency == "BRL"

        contact = self.crm.get_contact("c_1")
        assert contact.purchase_probability == "HIGH"
        assert contact.sentiment == "POSITIVE"

    def test_same_order_twice_is_deduped(self):
        first = self.conversions.mark_conversion(_make_request(order_id="ord_1"))
        second = self.conversions.mark_conversion(_make_request(order_id="ord_1", contact_id=None))

        assert not first.deduped
        assert second.ok
        assert second.deduped
        assert second.contact_id == "c_1"
        assert self._executed_conversions() == 1

    def test_without_order_id_never_deduped(self):
        self.conversions.mark_conversion(_make_request())
        result = self.conversions.mark_conversion(_make_request())
        assert not result.deduped
        assert self._executed_conversions() == 2

    def test_resolves_contact_from_phone(self):
        result = self.conversions.mark_conversion(
            _make_request(order_id="ord_2", contact_id=None, phone="5511999990000")
        )
        assert result.contact_id == "c_1"

    def test_unknown_phone_still_recorded(self):
        result = self.conversions.mark_conversion(
            _make_request(order_id="ord_3", contact_id=None, phone="000")
        )
        assert result.ok
        assert result.contact_id is None
        assert self._executed_conversions() == 1

    def test_lost_insert_race_reported_as_deduped(self, monkeypatch):
        self.conversions.mark_conversion(_make_request(order_id="ord_race"))
        # A concurrent writer that passed the lookup before the first insert landed
        monkeypatch.setattr(self.ledger, "find_conversion", lambda workspace_id, order_id: None)

        result = self.conversions.mark_conversion(_make_request(order_id="ord_race"))

        assert result.deduped
        assert self._executed_conversions() == 1

    def test_enqueues_post_conversion_flow(self):
        self.crm.update_workspace_settings("ws_1", conversion_flow_id="flow_thanks")

        self.conversions.mark_conversion(_make_request(order_id="ord_4"))

        jobs = self.queue.jobs(FLOW_QUEUE, RUN_FLOW_JOB)
        assert len(jobs) == 1
        payload = jobs[0].payload
        assert payload["flowId"] == "flow_thanks"
        assert payload["user"] == "5511999990000"
        assert payload["initialVars"] == {
            "source": "autopilot_conversion",
            "amount": 199.0,
            "orderId": "ord_4",
            "provider": "stripe",
        }

    def test_no_flow_without_configuration(self):
        self.conversions.mark_conversion(_make_request(order_id="ord_5"))
        assert self.queue.jobs(FLOW_QUEUE) == []

    def test_flow_enqueue_failure_is_swallowed(self):
        self.crm.update_workspace_settings("ws_1", conversion_flow_id="flow_thanks")
        self.queue.close()

        result = self.conversions.mark_conversion(_make_request(order_id="ord_6"))

        assert result.ok
        assert self._executed_conversions() == 1

    def test_billing_suspended_writes_nothing(self):
        self.crm.update_workspace_settings("ws_1", billing_suspended=True)
        with pytest.raises(BillingSuspendedError):
            self.conversions.mark_conversion(_make_request(order_id="ord_7"))
        assert self._executed_conversions() == 0
