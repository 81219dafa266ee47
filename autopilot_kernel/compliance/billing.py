"""
Billing suspension check — the one hard abort in the kernel.

A suspended workspace gets no automated activity at all. The check leaves a
trace in the ledger and then raises, so the calling operation stops with no
partial progress.
"""

import logging
from uuid import uuid4

from autopilot_kernel.clock import Clock
from autopilot_kernel.crm.store import CrmStore
from autopilot_kernel.ledger.store import EventLedger
from autopilot_kernel.models.ledger import (
    SUSPENDED_ACTION,
    AutopilotEvent,
    BillingMeta,
    EventStatus,
)

logger = logging.getLogger(__name__)


class BillingSuspendedError(Exception):
    """Raised when an operation is attempted on a billing-suspended workspace."""

    def __init__(self, workspace_id: str, source: str = "autopilot"):
        self.workspace_id = workspace_id
        self.source = source
        super().__init__(
            f"Workspace {workspace_id} is suspended for billing; {source} blocked"
        )


class BillingGuard:
    """Raises for suspended workspaces after recording the refusal."""

    def __init__(self, crm: CrmStore, ledger: EventLedger, clock: Clock):
        self.crm = crm
        self.ledger = ledger
        self.clock = clock

    def is_suspended(self, workspace_id: str) -> bool:
        return self.crm.get_workspace(workspace_id).settings.billing_suspended

    def ensure_not_suspended(self, workspace_id: str, source: str = "autopilot") -> None:
        if not self.is_suspended(workspace_id):
            return

        try:
            self.ledger.append(
                AutopilotEvent(
                    id=f"evt_{uuid4().hex[:12]}",
                    workspace_id=workspace_id,
                    intent="BILLING",
                    action=SUSPENDED_ACTION,
                    status=EventStatus.SKIPPED,
                    reason="billing_suspended",
                    meta=BillingMeta(source=source),
                    created_at=self.clock.now(),
                )
            )
        except Exception:
            logger.exception(
                "Failed to record billing suspension",
                extra={"workspace_id": workspace_id},
            )

        logger.warning(
            "Billing suspended, %s aborted",
            source,
            extra={"workspace_id": workspace_id, "reason": "billing_suspended"},
        )
        raise BillingSuspendedError(workspace_id, source)
