"""
Smart Time Optimizer — the historically most responsive hour and weekday.

Derived from INBOUND message timestamps over a bounded lookback window.
Hours and weekdays are computed in the clock's frame (naive UTC); weekdays
are indexed Sunday = 0 ... Saturday = 6.
"""

from datetime import timedelta
from typing import Optional

from autopilot_kernel.clock import Clock
from autopilot_kernel.crm.store import CrmStore
from autopilot_kernel.models.scheduling import BestTime, Confidence, TimeDistribution


DEFAULT_BEST_HOUR = 10
DEFAULT_BEST_DAY = 1        # Monday
LOOKBACK_DAYS = 30
SAMPLE_LIMIT = 5000
HIGH_CONFIDENCE_FACTOR = 2  # Peak hour must exceed this multiple of the mean

OPTIMAL_TOLERANCE_HOURS = 1
PROACTIVE_TOLERANCE_HOURS = 3

HOUR_MS = 3_600_000


def _argmax(buckets) -> int:
    """Index of the first maximum."""
    return buckets.index(max(buckets))


class SmartTimeOptimizer:
    """Finds the best time to act for a workspace."""

    def __init__(
        self,
        crm: CrmStore,
        clock: Clock,
        lookback_days: int = LOOKBACK_DAYS,
        sample_limit: int = SAMPLE_LIMIT,
    ):
        self.crm = crm
        self.clock = clock
        self.lookback_days = lookback_days
        self.sample_limit = sample_limit

    def get_best_time(self, workspace_id: str) -> BestTime:
        since = self.clock.now() - timedelta(days=self.lookback_days)
        stamps = self.crm.inbound_timestamps(workspace_id, since, self.sample_limit)

        if not stamps:
            return BestTime(
                best_hour=DEFAULT_BEST_HOUR,
                best_day=DEFAULT_BEST_DAY,
                confidence=Confidence.LOW,
            )

        hours = [0] * 24
        days = [0] * 7
        for ts in stamps:
            hours[ts.hour] += 1
            days[(ts.weekday() + 1) % 7] += 1

        best_hour = _argmax(hours)
        total = len(stamps)
        mean_per_hour = total / 24
        confidence = (
            Confidence.HIGH
            if hours[best_hour] > mean_per_hour * HIGH_CONFIDENCE_FACTOR
            else Confidence.MEDIUM
        )

        return BestTime(
            best_hour=best_hour,
            best_day=_argmax(days),
            confidence=confidence,
            total_analyzed=total,
            distribution=TimeDistribution(hours=hours, days=days),
        )

    def compute_delay(self, target_hour: int, current_hour: Optional[int] = None) -> int:
        """Milliseconds until the next occurrence of `target_hour` (whole hours)."""
        if current_hour is None:
            current_hour = self.clock.hour()
        delta = target_hour - current_hour
        if delta <= 0:
            delta += 24
        return delta * HOUR_MS

    def is_optimal_hour(self, best_hour: int, current_hour: Optional[int] = None) -> bool:
        if current_hour is None:
            current_hour = self.clock.hour()
        return abs(current_hour - best_hour) <= OPTIMAL_TOLERANCE_HOURS

    def is_near_best_hour(self, best_hour: int, current_hour: Optional[int] = None) -> bool:
        """Loose match used to gate the proactive phase."""
        if current_hour is None:
            current_hour = self.clock.hour()
        return abs(current_hour - best_hour) <= PROACTIVE_TOLERANCE_HOURS
