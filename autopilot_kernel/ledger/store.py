"""
Event Ledger — append-only store of every autopilot decision.

Behavioral Contract:
- Append-only. No entry is ever modified or deleted.
- Serves windowed range reads keyed by (workspace_id, contact_id, created_at)
  for rate limiting, cooldown and daily-limit checks.
- Per contact, entries are returned in creation order.
- At most one executed CONVERSION entry exists per (workspace_id, order_id);
  this is enforced by a partial unique index, not by the caller's lookup.
"""

import sqlite3
import threading
from datetime import datetime
from typing import List, Optional

from autopilot_kernel.models.ledger import (
    CONVERSION_ACTION,
    AutopilotEvent,
    EventStatus,
)


class DuplicateEventError(Exception):
    """Raised when an append violates a ledger uniqueness constraint."""

    def __init__(self, event: AutopilotEvent):
        self.event = event
        super().__init__(
            f"Duplicate ledger entry for workspace {event.workspace_id}: "
            f"action={event.action} order_id={event.order_id}"
        )


def _ts(value: datetime) -> str:
    """Fixed-width timestamp so lexical order equals chronological order."""
    return value.isoformat(timespec="microseconds")


class EventLedger:
    """
    Append-only autopilot event store.
    Prototype: SQLite. Production: PostgreSQL with the same indexes.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the events table and its indexes if they don't exist."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS autopilot_events (
                    id TEXT PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    contact_id TEXT,
                    intent TEXT NOT NULL,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL,
                    reason TEXT,
                    meta_kind TEXT NOT NULL,
                    order_id TEXT,
                    created_at TEXT NOT NULL,
                    event_json TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_contact_time
                ON autopilot_events(workspace_id, contact_id, created_at)
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_workspace_time
                ON autopilot_events(workspace_id, created_at)
            """)
            self._conn.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_events_conversion_order
                ON autopilot_events(workspace_id, order_id)
                WHERE action = '{CONVERSION_ACTION}'
                  AND status = '{EventStatus.EXECUTED.value}'
                  AND order_id IS NOT NULL
            """)
            self._conn.commit()

    def append(self, event: AutopilotEvent) -> AutopilotEvent:
        """
        Append one entry.

        Raises DuplicateEventError if the entry would create a second executed
        conversion for the same order id.
        """
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO autopilot_events (
                        id, workspace_id, contact_id, intent, action, status,
                        reason, meta_kind, order_id, created_at, event_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.id,
                        event.workspace_id,
                        event.contact_id,
                        event.intent,
                        event.action,
                        event.status.value,
                        event.reason,
                        event.meta.kind,
                        event.order_id,
                        _ts(event.created_at),
                        event.model_dump_json(),
                    ),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise DuplicateEventError(event) from e
        return event

    def _fetchone(self, sql: str, params) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _deserialize(self, row: sqlite3.Row) -> AutopilotEvent:
        return AutopilotEvent.model_validate_json(row["event_json"])

    def _where(
        self,
        workspace_id: str,
        contact_id: Optional[str] = None,
        status: Optional[EventStatus] = None,
        action: Optional[str] = None,
        meta_kind: Optional[str] = None,
        since: Optional[datetime] = None,
    ):
        clauses = ["workspace_id = ?"]
        params: list = [workspace_id]
        if contact_id is not None:
            clauses.append("contact_id = ?")
            params.append(contact_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(EventStatus(status).value)
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        if meta_kind is not None:
            clauses.append("meta_kind = ?")
            params.append(meta_kind)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(since))
        return " AND ".join(clauses), params

    def count(
        self,
        workspace_id: str,
        contact_id: Optional[str] = None,
        status: Optional[EventStatus] = None,
        action: Optional[str] = None,
        meta_kind: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> int:
        """Windowed count of entries matching every given filter."""
        where, params = self._where(
            workspace_id, contact_id, status, action, meta_kind, since
        )
        row = self._fetchone(
            f"SELECT COUNT(*) AS cnt FROM autopilot_events WHERE {where}", params
        )
        return row["cnt"]

    def latest_for_contact(
        self, workspace_id: str, contact_id: str
    ) -> Optional[AutopilotEvent]:
        """The single most recent entry for a contact, any status."""
        row = self._fetchone(
            "SELECT event_json FROM autopilot_events "
            "WHERE workspace_id = ? AND contact_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (workspace_id, contact_id),
        )
        return self._deserialize(row) if row else None

    def find_conversion(
        self, workspace_id: str, order_id: str
    ) -> Optional[AutopilotEvent]:
        """The executed CONVERSION entry for an order id, if one exists."""
        row = self._fetchone(
            "SELECT event_json FROM autopilot_events "
            "WHERE workspace_id = ? AND order_id = ? AND action = ? AND status = ? "
            "ORDER BY rowid LIMIT 1",
            (workspace_id, order_id, CONVERSION_ACTION, EventStatus.EXECUTED.value),
        )
        return self._deserialize(row) if row else None

    def query_by_contact(
        self, workspace_id: str, contact_id: str
    ) -> List[AutopilotEvent]:
        """All entries for a contact, oldest first."""
        rows = self._fetchall(
            "SELECT event_json FROM autopilot_events "
            "WHERE workspace_id = ? AND contact_id = ? "
            "ORDER BY created_at, rowid",
            (workspace_id, contact_id),
        )
        return [self._deserialize(r) for r in rows]

    def query_recent(
        self,
        workspace_id: str,
        limit: int = 50,
        status: Optional[EventStatus] = None,
    ) -> List[AutopilotEvent]:
        """Most recent entries for a workspace, newest first."""
        where, params = self._where(workspace_id, status=status)
        rows = self._fetchall(
            f"SELECT event_json FROM autopilot_events WHERE {where} "
            "ORDER BY created_at DESC, rowid DESC LIMIT ?",
            params + [limit],
        )
        return [self._deserialize(r) for r in rows]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
