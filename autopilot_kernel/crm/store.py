"""
CRM Store — workspaces, contacts, conversations and messages.

Read by: Cycle Orchestrator, ComplianceGuard callers, SmartTimeOptimizer
Written by: RetryScheduler (next_retry_at), ConversionLedger (lead scoring),
            message ingestion
"""

import re
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from autopilot_kernel.models.crm import (
    Contact,
    Conversation,
    ConversationStatus,
    Message,
    MessageDirection,
    Workspace,
)


class ContactNotFoundError(Exception):
    def __init__(self, workspace_id: str, contact_id: str):
        self.workspace_id = workspace_id
        self.contact_id = contact_id
        super().__init__(f"Contact {contact_id} not found in workspace {workspace_id}")


def normalize_phone(phone: str) -> str:
    """Digits only, the form phones are stored and looked up in."""
    return re.sub(r"\D", "", phone or "")


class CrmStore:
    """
    In-memory CRM store for the prototype.
    Production would sit on the CRM's relational database.
    """

    def __init__(self):
        self._workspaces: Dict[str, Workspace] = {}
        self._contacts: Dict[str, Contact] = {}
        self._conversations: Dict[str, Conversation] = {}

    # --- Workspaces ---

    def upsert_workspace(self, workspace: Workspace) -> Workspace:
        self._workspaces[workspace.id] = workspace
        return workspace

    def get_workspace(self, workspace_id: str) -> Workspace:
        """Get a workspace, creating an empty one on first reference."""
        ws = self._workspaces.get(workspace_id)
        if ws is None:
            ws = Workspace(id=workspace_id)
            self._workspaces[workspace_id] = ws
        return ws

    def update_workspace_settings(self, workspace_id: str, **updates) -> Workspace:
        ws = self.get_workspace(workspace_id)
        ws.settings = ws.settings.model_copy(update=updates)
        return ws

    def list_workspaces(self) -> List[Workspace]:
        return list(self._workspaces.values())

    # --- Contacts ---

    def upsert_contact(self, contact: Contact) -> Contact:
        contact.phone = normalize_phone(contact.phone)
        self._contacts[contact.id] = contact
        return contact

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        return self._contacts.get(contact_id)

    def require_contact(self, workspace_id: str, contact_id: str) -> Contact:
        """Get a contact of this workspace or raise ContactNotFoundError."""
        contact = self._contacts.get(contact_id)
        if contact is None or contact.workspace_id != workspace_id:
            raise ContactNotFoundError(workspace_id, contact_id)
        return contact

    def find_contact(
        self,
        workspace_id: str,
        contact_id: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Optional[Contact]:
        """Look a contact up by id, falling back to phone."""
        if contact_id:
            contact = self._contacts.get(contact_id)
            if contact is not None and contact.workspace_id == workspace_id:
                return contact
        if phone:
            return self.find_contact_by_phone(workspace_id, phone)
        return None

    def find_contact_by_phone(self, workspace_id: str, phone: str) -> Optional[Contact]:
        normalized = normalize_phone(phone)
        if not normalized:
            return None
        return next(
            (
                c for c in self._contacts.values()
                if c.workspace_id == workspace_id and c.phone == normalized
            ),
            None,
        )

    def update_contact(self, contact_id: str, **updates) -> Optional[Contact]:
        """Apply field updates to a contact. Returns None if it doesn't exist."""
        contact = self._contacts.get(contact_id)
        if contact is None:
            return None
        for field, value in updates.items():
            setattr(contact, field, value)
        return contact

    def set_next_retry_at(self, contact_id: str, value: Optional[datetime]) -> None:
        self.update_contact(contact_id, next_retry_at=value)

    # --- Conversations & messages ---

    def upsert_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def conversation_for_contact(
        self, workspace_id: str, contact_id: str
    ) -> Optional[Conversation]:
        """The contact's most recently active conversation."""
        convs = [
            c for c in self._conversations.values()
            if c.workspace_id == workspace_id and c.contact_id == contact_id
        ]
        if not convs:
            return None
        return max(convs, key=lambda c: c.last_message_at or datetime.min)

    def record_message(
        self,
        workspace_id: str,
        contact_id: str,
        direction: MessageDirection,
        content: str,
        created_at: datetime,
    ) -> Message:
        """
        Append a message to the contact's open conversation (opening one if
        needed) and maintain last_message_at / unread_count.
        """
        conv = self.conversation_for_contact(workspace_id, contact_id)
        if conv is None or conv.status != ConversationStatus.OPEN:
            conv = self.upsert_conversation(
                Conversation(
                    id=f"conv_{uuid4().hex[:12]}",
                    workspace_id=workspace_id,
                    contact_id=contact_id,
                )
            )

        msg = Message(
            id=f"msg_{uuid4().hex[:12]}",
            workspace_id=workspace_id,
            contact_id=contact_id,
            conversation_id=conv.id,
            direction=direction,
            content=content,
            created_at=created_at,
        )
        conv.messages.append(msg)
        conv.messages.sort(key=lambda m: m.created_at)
        conv.last_message_at = conv.messages[-1].created_at
        if direction == MessageDirection.INBOUND:
            conv.unread_count += 1
        else:
            conv.unread_count = 0
        return msg

    def list_unread_open(self, workspace_id: str, limit: int) -> List[Conversation]:
        """OPEN conversations with unread inbound messages (reactive candidates)."""
        convs = [
            c for c in self._conversations.values()
            if c.workspace_id == workspace_id
            and c.status == ConversationStatus.OPEN
            and c.unread_count > 0
        ]
        convs.sort(key=lambda c: c.last_message_at or datetime.min, reverse=True)
        return convs[:limit]

    def list_stalled(
        self, workspace_id: str, silent_before: datetime, limit: int
    ) -> List[Conversation]:
        """
        OPEN conversations silent since before `silent_before` where the
        business spoke last (proactive candidates).
        """
        convs = []
        for c in self._conversations.values():
            if c.workspace_id != workspace_id or c.status != ConversationStatus.OPEN:
                continue
            if c.unread_count != 0 or c.last_message_at is None:
                continue
            if c.last_message_at >= silent_before:
                continue
            last = c.last_message
            if last is None or last.direction != MessageDirection.OUTBOUND:
                continue
            convs.append(c)
        convs.sort(key=lambda c: c.last_message_at)
        return convs[:limit]

    def inbound_timestamps(
        self, workspace_id: str, since: datetime, limit: int
    ) -> List[datetime]:
        """Timestamps of INBOUND messages at or after `since`, newest first, bounded."""
        stamps = [
            m.created_at
            for c in self._conversations.values()
            if c.workspace_id == workspace_id
            for m in c.messages
            if m.direction == MessageDirection.INBOUND and m.created_at >= since
        ]
        stamps.sort(reverse=True)
        return stamps[:limit]
