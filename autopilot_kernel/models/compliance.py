"""Compliance policy and the guard's verdict."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ComplianceReason(str, Enum):
    OPTIN_REQUIRED = "optin_required"
    SESSION_EXPIRED_24H = "session_expired_24h"


class CompliancePolicy(BaseModel):
    """Which guardrails apply to a workspace at check time."""

    require_opt_in: bool = False
    enforce_24h: bool = True
    session_window_hours: int = Field(ge=1, default=24)


class ComplianceResult(BaseModel):
    allowed: bool
    reason: Optional[ComplianceReason] = None
