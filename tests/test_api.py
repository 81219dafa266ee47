"""Tests for the FastAPI API endpoints."""

import time
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from autopilot_kernel.api.app import create_app
from autopilot_kernel.clock import FixedClock
from autopilot_kernel.config import RuntimeConfig
from autopilot_kernel.crm.store import CrmStore
from autopilot_kernel.intelligence.classifier import RuleOnlyClassifier
from autopilot_kernel.jobs.queue import FLOW_QUEUE, InMemoryQueue
from autopilot_kernel.ledger.store import EventLedger
from autopilot_kernel.models.crm import Contact, MessageDirection
from autopilot_kernel.service import AutopilotService


NOW = datetime(2026, 3, 10, 14, 0, 0)


@pytest.fixture
def service():
    clock = FixedClock(NOW)
    return AutopilotService(
        crm=CrmStore(),
        ledger=EventLedger(db_path=":memory:"),
        queue=InMemoryQueue(clock),
        classifier=RuleOnlyClassifier(),
        clock=clock,
        config=RuntimeConfig(enforce_opt_in=False, worker_poll_seconds=0),
    )


@pytest.fixture
def client(service):
    """Test client whose lifespan opens and closes the queue."""
    app = create_app(service=service)
    with TestClient(app) as c:
        yield c


def _ingest_contact(client, contact_id="c_1", phone="5511999990000", **extra):
    body = {"contact_id": contact_id, "phone": phone}
    body.update(extra)
    return client.post("/crm/ws_1/contacts", json=body)


def _ingest_message(client, contact_id="c_1", direction="INBOUND", content="oi", minutes_ago=5):
    return client.post("/crm/ws_1/messages", json={
        "contact_id": contact_id,
        "direction": direction,
        "content": content,
        "created_at": (NOW - timedelta(minutes=minutes_ago)).isoformat(),
    })


class TestLifecycle:
    def test_queue_opened_and_closed_by_lifespan(self, service):
        app = create_app(service=service)
        assert not service.queue.is_open
        with TestClient(app):
            assert service.queue.is_open
        assert not service.queue.is_open

    def test_background_worker_delivers_queued_sends(self):
        clock = FixedClock(NOW)
        service = AutopilotService(
            crm=CrmStore(),
            ledger=EventLedger(db_path=":memory:"),
            queue=InMemoryQueue(clock),
            classifier=RuleOnlyClassifier(),
            clock=clock,
            config=RuntimeConfig(enforce_opt_in=False, worker_poll_seconds=0.01),
        )
        service.crm.upsert_contact(Contact(id="c_1", workspace_id="ws_1", phone="5511999990000"))
        service.crm.record_message(
            "ws_1", "c_1", MessageDirection.INBOUND, "oi", NOW - timedelta(minutes=5)
        )

        with TestClient(create_app(service=service)) as client:
            client.post("/autopilot/ws_1/contacts/c_1/send", json={"message": "Olá!"})
            deadline = time.monotonic() + 5
            while service.queue.waiting_count(FLOW_QUEUE) and time.monotonic() < deadline:
                time.sleep(0.02)
            assert service.queue.waiting_count(FLOW_QUEUE) == 0

        assert not service.worker.is_running
        last = service.crm.conversation_for_contact("ws_1", "c_1").last_message
        assert last.direction == MessageDirection.OUTBOUND
        assert last.content == "Olá!"


class TestSettingsEndpoints:
    def test_toggle_and_status(self, client):
        response = client.post("/autopilot/ws_1/toggle", json={"enabled": True})
        assert response.status_code == 200
        assert response.json() == {"workspaceId": "ws_1", "enabled": True}

        status = client.get("/autopilot/ws_1/status").json()
        assert status["enabled"] is True
        assert status["billingSuspended"] is False

    def test_toggle_suspended_workspace_forbidden(self, client, service):
        service.crm.update_workspace_settings("ws_1", billing_suspended=True)
        response = client.post("/autopilot/ws_1/toggle", json={"enabled": True})
        assert response.status_code == 403
        assert response.json()["reason"] == "billing_suspended"

    def test_partial_config_update(self, client):
        client.put("/autopilot/ws_1/config", json={"conversion_flow_id": "flow_1"})
        response = client.put("/autopilot/ws_1/config", json={"require_opt_in": True})
        data = response.json()
        assert data["conversionFlowId"] == "flow_1"
        assert data["requireOptIn"] is True

    def test_runtime_config(self, client):
        data = client.get("/autopilot/runtime-config").json()
        assert data["windowStart"] == 8
        assert data["workspaceDailyLimit"] == 1000


class TestOperationEndpoints:
    def test_run_cycle(self, client):
        client.post("/autopilot/ws_1/toggle", json={"enabled": True})
        _ingest_contact(client)
        _ingest_message(client, content="quero saber mais")

        response = client.post("/autopilot/ws_1/run")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["reactive"]["executed"] == 1

    def test_retry_unknown_contact_404(self, client):
        response = client.post("/autopilot/ws_1/contacts/c_missing/retry")
        assert response.status_code == 404

    def test_retry_contact(self, client):
        _ingest_contact(client)
        response = client.post("/autopilot/ws_1/contacts/c_1/retry")
        assert response.status_code == 200
        assert response.json()["queued"] is True
        assert response.json()["scheduled"] is False

    def test_conversion_webhook_dedupes(self, client):
        _ingest_contact(client)
        body = {"phone": "+55 11 99999-0000", "meta": {"orderId": "ord_1", "amount": "120.5"}}

        first = client.post("/autopilot/ws_1/conversions", json=body).json()
        second = client.post("/autopilot/ws_1/conversions", json=body).json()

        assert first == {"ok": True, "contact_id": "c_1", "deduped": False}
        assert second["deduped"] is True

        events = client.get("/autopilot/ws_1/events").json()
        conversions = [e for e in events if e["action"] == "CONVERSION"]
        assert len(conversions) == 1
        assert conversions[0]["meta"]["amount"] == 120.5

    def test_next_best_action_and_send(self, client):
        _ingest_contact(client, name="Ana")
        _ingest_message(client, content="quanto custa?")

        nba = client.get("/autopilot/ws_1/contacts/c_1/next-best-action").json()
        assert nba["action"] == "GHOST_CLOSER"

        sent = client.post(
            "/autopilot/ws_1/contacts/c_1/send", json={"message": nba["recommended_message"]}
        ).json()
        assert sent["queued"] is True

        stats = client.get("/autopilot/queue/stats").json()
        assert stats["flow-jobs"]["waiting"] == 1

    def test_enqueue_requires_target(self, client):
        response = client.post("/autopilot/ws_1/enqueue", json={})
        assert response.status_code == 400

    def test_best_time_default(self, client):
        data = client.get("/autopilot/ws_1/best-time").json()
        assert data["best_hour"] == 10
        assert data["best_day"] == 1
        assert data["confidence"] == "LOW"

    def test_events_filtered_by_status(self, client):
        _ingest_contact(client)
        client.post("/autopilot/ws_1/contacts/c_1/send", json={"message": "Oi"})
        skipped = client.get("/autopilot/ws_1/events", params={"status": "skipped"}).json()
        executed = client.get("/autopilot/ws_1/events", params={"status": "executed"}).json()
        assert len(skipped) == 1
        assert executed == []

    def test_message_for_unknown_contact_404(self, client):
        response = _ingest_message(client, contact_id="c_missing")
        assert response.status_code == 404

    def test_offset_timestamps_normalised_on_ingest(self, client):
        client.post("/autopilot/ws_1/toggle", json={"enabled": True})
        _ingest_contact(client)

        utc = client.post("/crm/ws_1/messages", json={
            "contact_id": "c_1", "direction": "INBOUND", "content": "oi",
            "created_at": "2026-03-10T13:30:00Z",
        })
        offset = client.post("/crm/ws_1/messages", json={
            "contact_id": "c_1", "direction": "INBOUND", "content": "tem desconto?",
            "created_at": "2026-03-10T10:45:00-03:00",
        })
        assert utc.status_code == 200
        assert utc.json()["created_at"] == "2026-03-10T13:30:00"
        assert offset.json()["created_at"] == "2026-03-10T13:45:00"

        response = client.post("/autopilot/ws_1/run")
        assert response.status_code == 200
        assert response.json()["reactive"]["executed"] == 1

    def test_process_jobs_empties_send_queue(self, client):
        _ingest_contact(client)
        _ingest_message(client)
        client.post("/autopilot/ws_1/contacts/c_1/send", json={"message": "Oi"})

        data = client.post("/autopilot/queue/process").json()

        assert data["processed"] == 1
        assert data["by_job"] == {"send-message": 1}
        stats = client.get("/autopilot/queue/stats").json()
        assert stats["flow-jobs"]["waiting"] == 0
