"""
Autopilot Event — the ledger entry written for every autopilot decision.

Each entry is simultaneously an audit record, a rate-limit signal and an
idempotency anchor. Entries are created once and never updated.

The `meta` payload is a tagged union keyed by `kind`; every variant carries
an explicit field schema and is validated when the event is constructed.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class EventStatus(str, Enum):
    EXECUTED = "executed"
    SKIPPED = "skipped"
    SCHEDULED = "scheduled"
    ERROR = "error"


# Ledger-level action names that are not DecisionEngine actions
CONVERSION_ACTION = "CONVERSION"
SCHEDULED_ACTION = "SCHEDULED"
SUSPENDED_ACTION = "SUSPENDED"
MANUAL_SEND_ACTION = "MANUAL_SEND"


class DispatchMeta(BaseModel):
    """An outbound send was handed to the queue."""
    model_config = ConfigDict(extra="forbid")

    kind: Literal["dispatch"] = "dispatch"
    channel: str = "whatsapp"
    conversation_id: Optional[str] = None
    job_id: Optional[str] = None
    message: Optional[str] = None
    generated: bool = False


class ComplianceMeta(BaseModel):
    """A send was blocked by a guardrail (compliance or daily limit)."""
    model_config = ConfigDict(extra="forbid")

    kind: Literal["compliance"] = "compliance"
    conversation_id: Optional[str] = None
    guard: str = "compliance"               # "compliance" | "daily_limit" | "delivery"


class RetryMeta(BaseModel):
    """A retry was deferred; the contact's next_retry_at was set."""
    model_config = ConfigDict(extra="forbid")

    kind: Literal["retry"] = "retry"
    next_retry_at: datetime
    delay_ms: int = Field(ge=0)
    job_id: Optional[str] = None


def _text(value: Any) -> Optional[str]:
    """Webhook ids may arrive as numbers; 0 is a valid id, empty text is not."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class ConversionMeta(BaseModel):
    """Revenue attribution payload. `order_id` is the idempotency key."""
    model_config = ConfigDict(extra="forbid")

    kind: Literal["conversion"] = "conversion"
    order_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    provider: Optional[str] = None
    extra: Dict[str, Any] = {}

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> "ConversionMeta":
        """Build from a loose webhook payload (camelCase or snake_case keys)."""
        data = dict(payload or {})
        order_id = data.pop("orderId", None)
        snake_order_id = data.pop("order_id", None)
        if snake_order_id is not None:
            order_id = snake_order_id
        amount = data.pop("amount", None)
        currency = data.pop("currency", None)
        provider = data.pop("provider", None)
        try:
            amount = float(amount) if amount is not None else None
        except (TypeError, ValueError):
            data["raw_amount"] = amount
            amount = None
        return cls(
            order_id=_text(order_id),
            amount=amount,
            currency=_text(currency),
            provider=_text(provider),
            extra=data,
        )


class BillingMeta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["billing"] = "billing"
    source: str


class HandoverMeta(BaseModel):
    """The engine stepped back and left the conversation to a human."""
    model_config = ConfigDict(extra="forbid")

    kind: Literal["handover"] = "handover"
    conversation_id: Optional[str] = None


class ErrorMeta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["error"] = "error"
    error: str
    conversation_id: Optional[str] = None


EventMeta = Annotated[
    Union[
        DispatchMeta,
        ComplianceMeta,
        RetryMeta,
        ConversionMeta,
        BillingMeta,
        HandoverMeta,
        ErrorMeta,
    ],
    Field(discriminator="kind"),
]


class AutopilotEvent(BaseModel):
    """One immutable ledger entry."""

    model_config = ConfigDict(frozen=True)

    id: str
    workspace_id: str
    contact_id: Optional[str] = None
    intent: str = "UNKNOWN"
    action: str
    status: EventStatus
    reason: Optional[str] = None
    meta: EventMeta
    created_at: datetime

    @property
    def order_id(self) -> Optional[str]:
        if isinstance(self.meta, ConversionMeta):
            return self.meta.order_id
        return None
