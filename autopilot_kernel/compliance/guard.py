"""
Compliance Guard — may we contact this person right now?

Behavioral Contract:
- Pure and read-only. Same inputs, same verdict.
- Opt-in: when required, the contact must carry an opt-in tag or flag.
- 24-hour window: when enforced, the most recent INBOUND message must be
  younger than the session window.
- Called at decision time AND again immediately before a send, because the
  send happens later and the window may close in between. Never cached.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from autopilot_kernel.config import RuntimeConfig
from autopilot_kernel.models.compliance import (
    ComplianceReason,
    CompliancePolicy,
    ComplianceResult,
)
from autopilot_kernel.models.crm import Contact, Message, MessageDirection, WorkspaceSettings


def policy_for_workspace(
    settings: WorkspaceSettings, runtime: RuntimeConfig
) -> CompliancePolicy:
    """Opt-in is required if either the environment or the workspace asks for it."""
    return CompliancePolicy(
        require_opt_in=runtime.enforce_opt_in or settings.require_opt_in,
        enforce_24h=runtime.enforce_24h,
    )


def _last_inbound_at(messages: Iterable[Message]) -> Optional[datetime]:
    stamps = [m.created_at for m in messages if m.direction == MessageDirection.INBOUND]
    return max(stamps) if stamps else None


class ComplianceGuard:
    """Evaluates the outreach guardrails for one contact."""

    def check(
        self,
        policy: CompliancePolicy,
        contact: Contact,
        recent_messages: Iterable[Message],
        current_time: datetime,
    ) -> ComplianceResult:
        if policy.require_opt_in and not contact.has_opt_in():
            return ComplianceResult(
                allowed=False, reason=ComplianceReason.OPTIN_REQUIRED
            )

        if policy.enforce_24h:
            last_inbound = _last_inbound_at(recent_messages)
            cutoff = current_time - timedelta(hours=policy.session_window_hours)
            if last_inbound is None or last_inbound < cutoff:
                return ComplianceResult(
                    allowed=False, reason=ComplianceReason.SESSION_EXPIRED_24H
                )

        return ComplianceResult(allowed=True)
