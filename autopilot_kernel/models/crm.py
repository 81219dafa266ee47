"""CRM records — workspaces, contacts, conversations and messages the engine reads."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from autopilot_kernel.clock import to_naive_utc


OPT_IN_TAG = "optin_whatsapp"
OPT_IN_FIELDS = ("optin", "optin_whatsapp")


class MessageDirection(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class ConversationStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class WorkspaceSettings(BaseModel):
    """Per-workspace autopilot settings (stored on the workspace, not in env)."""

    autopilot_enabled: bool = False
    billing_suspended: bool = False
    require_opt_in: bool = False
    conversion_flow_id: Optional[str] = None
    currency_default: str = "BRL"
    recovery_template_name: Optional[str] = None


class Workspace(BaseModel):
    id: str
    name: str = ""
    settings: WorkspaceSettings = Field(default_factory=WorkspaceSettings)


class Contact(BaseModel):
    """A person reachable over WhatsApp inside one workspace."""

    id: str
    workspace_id: str
    phone: str
    name: Optional[str] = None
    tags: List[str] = []
    custom_fields: dict = {}
    next_retry_at: Optional[datetime] = None   # Only mutable scheduling state
    purchase_probability: Optional[str] = None  # "LOW" | "MEDIUM" | "HIGH"
    sentiment: Optional[str] = None             # "NEGATIVE" | "NEUTRAL" | "POSITIVE"

    def has_opt_in(self) -> bool:
        """True when the contact carries an opt-in tag or custom-field flag."""
        if OPT_IN_TAG in (t.lower() for t in self.tags):
            return True
        return any(self.custom_fields.get(f) is True for f in OPT_IN_FIELDS)

    @property
    def display_name(self) -> str:
        return self.name or self.phone or self.id


class Message(BaseModel):
    id: str
    workspace_id: str
    contact_id: str
    conversation_id: str
    direction: MessageDirection
    content: str = ""
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class Conversation(BaseModel):
    """
    Per-contact channel session.

    `messages` is kept in chronological order (oldest first).
    """

    id: str
    workspace_id: str
    contact_id: str
    status: ConversationStatus = ConversationStatus.OPEN
    unread_count: int = Field(ge=0, default=0)
    last_message_at: Optional[datetime] = None
    messages: List[Message] = []

    @field_validator("last_message_at")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    @property
    def last_inbound(self) -> Optional[Message]:
        for msg in reversed(self.messages):
            if msg.direction == MessageDirection.INBOUND:
                return msg
        return None

    def recent_messages(self, limit: int = 5) -> List[Message]:
        """Most recent messages, newest first."""
        return list(reversed(self.messages[-limit:])) if limit > 0 else []
