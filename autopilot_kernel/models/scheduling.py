"""Retry scheduling and smart-time results."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class RetryReason(str, Enum):
    ALREADY_SCHEDULED = "retry_already_scheduled"
    RATE_LIMITED_ERROR_1H = "rate_limited_error_1h"
    COOLDOWN_5M = "cooldown_5m"


class RetryResult(BaseModel):
    """Outcome of a retry request for one contact."""

    queued: bool
    scheduled: bool = False
    delay_ms: Optional[int] = None
    reason: Optional[RetryReason] = None
    next_retry_at: Optional[datetime] = None


class Confidence(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class TimeDistribution(BaseModel):
    hours: List[int]    # 24 buckets, index = hour of day
    days: List[int]     # 7 buckets, index = weekday (Sunday = 0)


class BestTime(BaseModel):
    best_hour: int
    best_day: int
    confidence: Confidence
    total_analyzed: int = 0
    distribution: Optional[TimeDistribution] = None
