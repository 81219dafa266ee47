"""
Autopilot Kernel API — FastAPI endpoints.

Exposes the kernel's functionality via a REST API for:
- Workspace autopilot toggles and settings
- Cycle runs and manual retries
- Conversion webhooks
- Next-best-action recommendations and direct sends
- Ledger and queue inspection, on-demand job processing
- CRM ingestion (contacts and messages)
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from autopilot_kernel.clock import to_naive_utc
from autopilot_kernel.compliance.billing import BillingSuspendedError
from autopilot_kernel.crm.store import ContactNotFoundError
from autopilot_kernel.logging_config import setup_logging
from autopilot_kernel.models.conversion import ConversionRequest
from autopilot_kernel.models.crm import Contact, MessageDirection
from autopilot_kernel.models.ledger import ConversionMeta, EventStatus
from autopilot_kernel.service import AutopilotService, build_service


# --- Request/Response Models ---

class ToggleRequest(BaseModel):
    enabled: bool


class ConfigUpdateRequest(BaseModel):
    conversion_flow_id: Optional[str] = None
    currency_default: Optional[str] = None
    recovery_template_name: Optional[str] = None
    require_opt_in: Optional[bool] = None


class ConversionWebhookRequest(BaseModel):
    contact_id: Optional[str] = None
    phone: Optional[str] = None
    reason: Optional[str] = None
    meta: dict = {}


class DirectSendRequest(BaseModel):
    message: str = Field(min_length=1)


class EnqueueRequest(BaseModel):
    contact_id: Optional[str] = None
    phone: Optional[str] = None
    message: Optional[str] = None
    delay_ms: Optional[int] = Field(default=None, ge=0)


class ContactIngestRequest(BaseModel):
    contact_id: str
    phone: str
    name: Optional[str] = None
    tags: List[str] = []
    custom_fields: dict = {}


class MessageIngestRequest(BaseModel):
    contact_id: str
    direction: MessageDirection
    content: str = ""
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Webhooks send offset timestamps; the kernel works in naive UTC."""
        return to_naive_utc(value) if value is not None else None


# --- Application Factory ---

def create_app(service: Optional[AutopilotService] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    setup_logging()
    svc = service or build_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc.queue.open()
        stop_event = asyncio.Event()
        worker_task = None
        if svc.config.worker_poll_seconds > 0:
            worker_task = asyncio.create_task(svc.worker.run_async(stop_event))
        try:
            yield
        finally:
            stop_event.set()
            if worker_task is not None:
                await worker_task
            svc.queue.close()

    app = FastAPI(
        title="Autopilot Kernel API",
        description="Autonomous outreach decision engine",
        version="0.1.0-alpha",
        lifespan=lifespan,
    )

    # Store the service on app state for access in endpoints
    app.state.service = svc

    @app.exception_handler(BillingSuspendedError)
    async def billing_suspended_handler(request: Request, exc: BillingSuspendedError):
        return JSONResponse(
            status_code=403,
            content={"detail": str(exc), "reason": "billing_suspended"},
        )

    @app.exception_handler(ContactNotFoundError)
    async def contact_not_found_handler(request: Request, exc: ContactNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    # === AUTOPILOT SETTINGS ===

    @app.post("/autopilot/{workspace_id}/toggle")
    def toggle_autopilot(workspace_id: str, req: ToggleRequest):
        """Enable or disable autopilot for a workspace."""
        return svc.toggle_autopilot(workspace_id, req.enabled)

    @app.get("/autopilot/{workspace_id}/status")
    def get_status(workspace_id: str):
        return svc.get_status(workspace_id)

    @app.get("/autopilot/{workspace_id}/config")
    def get_config(workspace_id: str):
        return svc.get_config(workspace_id)

    @app.put("/autopilot/{workspace_id}/config")
    def update_config(workspace_id: str, req: ConfigUpdateRequest):
        """Partial update; only fields present in the body change."""
        return svc.update_config(workspace_id, **req.model_dump(exclude_unset=True))

    @app.get("/autopilot/runtime-config")
    def get_runtime_config():
        """Environment-sourced tunables."""
        return svc.get_runtime_config()

    # === OPERATIONS ===

    @app.post("/autopilot/{workspace_id}/run")
    def run_cycle(workspace_id: str):
        """Run one autopilot cycle now."""
        return svc.run_cycle(workspace_id).model_dump(mode="json")

    @app.post("/autopilot/{workspace_id}/contacts/{contact_id}/retry")
    def retry_contact(workspace_id: str, contact_id: str):
        return svc.retry_contact(workspace_id, contact_id).model_dump(mode="json")

    @app.post("/autopilot/{workspace_id}/conversions")
    def mark_conversion(workspace_id: str, req: ConversionWebhookRequest):
        """Conversion webhook. Repeat deliveries of an order are deduplicated."""
        result = svc.mark_conversion(
            ConversionRequest(
                workspace_id=workspace_id,
                contact_id=req.contact_id,
                phone=req.phone,
                reason=req.reason,
                meta=ConversionMeta.from_payload(req.meta),
            )
        )
        return result.model_dump(mode="json")

    @app.get("/autopilot/{workspace_id}/contacts/{contact_id}/next-best-action")
    def next_best_action(workspace_id: str, contact_id: str):
        return svc.next_best_action(workspace_id, contact_id).model_dump(mode="json")

    @app.post("/autopilot/{workspace_id}/contacts/{contact_id}/send")
    def send_direct_message(workspace_id: str, contact_id: str, req: DirectSendRequest):
        try:
            return svc.send_direct_message(workspace_id, contact_id, req.message)
        except ValueError as e:
            raise HTTPException(400, str(e))

    @app.post("/autopilot/{workspace_id}/enqueue")
    def enqueue_processing(workspace_id: str, req: EnqueueRequest):
        try:
            return svc.enqueue_processing(
                workspace_id,
                contact_id=req.contact_id,
                phone=req.phone,
                message=req.message,
                delay_ms=req.delay_ms,
            )
        except ValueError as e:
            raise HTTPException(400, str(e))

    @app.get("/autopilot/{workspace_id}/best-time")
    def get_best_time(workspace_id: str):
        return svc.get_best_time(workspace_id).model_dump(mode="json")

    # === LEDGER & QUEUE ===

    @app.get("/autopilot/{workspace_id}/events")
    def recent_events(workspace_id: str, limit: int = 50, status: Optional[EventStatus] = None):
        """Recent ledger entries, newest first."""
        events = svc.recent_events(workspace_id, limit=limit, status=status)
        return [e.model_dump(mode="json") for e in events]

    @app.get("/autopilot/queue/stats")
    def queue_stats():
        return svc.get_queue_stats()

    @app.post("/autopilot/queue/process")
    def process_jobs():
        """Consume due jobs now instead of waiting for the background worker."""
        return svc.process_jobs().model_dump()

    # === CRM INGESTION ===

    @app.post("/crm/{workspace_id}/contacts")
    def ingest_contact(workspace_id: str, req: ContactIngestRequest):
        """Manual contact upsert (for testing)."""
        contact = svc.crm.upsert_contact(
            Contact(
                id=req.contact_id,
                workspace_id=workspace_id,
                phone=req.phone,
                name=req.name,
                tags=req.tags,
                custom_fields=req.custom_fields,
            )
        )
        return contact.model_dump(mode="json")

    @app.post("/crm/{workspace_id}/messages")
    def ingest_message(workspace_id: str, req: MessageIngestRequest):
        """Record an inbound or outbound message (for testing)."""
        svc.crm.require_contact(workspace_id, req.contact_id)
        msg = svc.crm.record_message(
            workspace_id,
            req.contact_id,
            req.direction,
            req.content,
            req.created_at or svc.clock.now(),
        )
        return msg.model_dump(mode="json")

    return app


# Default application instance
app = create_app()
