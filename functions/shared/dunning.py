"""
Dunning timeline evaluator.

Maps the number of days since the first failed payment of a dunning cycle
to the user status and the reminder tier to send:

    day 0       past_due      silent (Stripe smart retries cover it)
    days 1-2    past_due      gentle
    days 3-6    past_due      urgent
    day 7+      grace_period  final, grace_period_end = now + GRACE_PERIOD_DAYS
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from shared.access_policy import parse_timestamp
from shared.constants import (
    DUNNING_FINAL_DAY,
    DUNNING_GENTLE_DAY,
    DUNNING_URGENT_DAY,
    GRACE_PERIOD_DAYS,
    STATUS_GRACE_PERIOD,
    STATUS_PAST_DUE,
)

TIER_GENTLE = "gentle"
TIER_URGENT = "urgent"
TIER_FINAL = "final"

TIER_TEMPLATES = {
    TIER_GENTLE: "payment_failed_gentle",
    TIER_URGENT: "payment_failed_urgent",
    TIER_FINAL: "payment_failed_final",
}


@dataclass(frozen=True)
class DunningDecision:
    status: str
    notification_tier: Optional[str]
    grace_period_end: Optional[datetime] = None

    @property
    def template(self) -> Optional[str]:
        return TIER_TEMPLATES.get(self.notification_tier)


def days_since(first_failure_at, now: Optional[datetime] = None) -> int:
    """Whole days elapsed since the first failure (floored, never negative)."""
    start = parse_timestamp(first_failure_at)
    if start is None:
        return 0
    now = now or datetime.now(timezone.utc)
    return max(0, (now - start).days)


def evaluate(days_since_first_failure: int, now: Optional[datetime] = None) -> DunningDecision:
    """Decide status and reminder tier for a dunning cycle."""
    days = max(0, int(days_since_first_failure))

    if days >= DUNNING_FINAL_DAY:
        now = now or datetime.now(timezone.utc)
        return DunningDecision(
            status=STATUS_GRACE_PERIOD,
            notification_tier=TIER_FINAL,
            grace_period_end=now + timedelta(days=GRACE_PERIOD_DAYS),
        )
    if days >= DUNNING_URGENT_DAY:
        return DunningDecision(STATUS_PAST_DUE, TIER_URGENT)
    if days >= DUNNING_GENTLE_DAY:
        return DunningDecision(STATUS_PAST_DUE, TIER_GENTLE)
    return DunningDecision(STATUS_PAST_DUE, None)
