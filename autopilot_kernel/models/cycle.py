"""Dispatch outcomes, cycle reports and next-best-action recommendations."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from autopilot_kernel.models.ledger import EventStatus


class DispatchOutcome(BaseModel):
    """What executing one action actually did."""

    action: str
    status: EventStatus
    reason: Optional[str] = None
    job_id: Optional[str] = None
    message: Optional[str] = None
    handover: bool = False


class PhaseReport(BaseModel):
    candidates: int = 0
    executed: int = 0
    skipped: int = 0
    errors: int = 0
    handovers: int = 0
    skipped_reason: Optional[str] = None

    def record(self, outcome: DispatchOutcome) -> None:
        if outcome.handover:
            self.handovers += 1
        elif outcome.status == EventStatus.EXECUTED:
            self.executed += 1
        elif outcome.status == EventStatus.ERROR:
            self.errors += 1
        else:
            self.skipped += 1


class CycleReport(BaseModel):
    workspace_id: str
    status: str                           # completed | disabled | backpressure
    started_at: datetime
    hour: int
    best_hour: Optional[int] = None
    is_optimal_time: bool = False
    reactive: PhaseReport = Field(default_factory=PhaseReport)
    proactive: PhaseReport = Field(default_factory=PhaseReport)


class NextBestAction(BaseModel):
    workspace_id: str
    contact_id: str
    contact: str
    action: str          # GHOST_CLOSER | REACTIVATE | INTRO | FOLLOW_UP_SOFT
    reason: str
    recommended_message: str
    last_message_at: Optional[datetime] = None
