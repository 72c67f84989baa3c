"""
Status to capability mapping.

Pure functions shared by the webhook, the chat quota endpoint and the
grace period sweeper. Nothing here touches AWS.
"""

import math
from datetime import datetime, timezone
from typing import Optional, TypedDict

from shared.constants import (
    ACCESS_LEVELS,
    APPROVAL_PENDING,
    APPROVAL_STRIPE,
    STATUS_FREE,
    STATUS_GRACE_PERIOD,
    STATUS_PREMIUM,
)


class AccessLevel(TypedDict):
    chat: bool
    premium_content: bool
    assessment: bool
    chat_limit: int


def get_access(status: Optional[str]) -> AccessLevel:
    """Return the capability set for a user status (unknown -> free)."""
    level = ACCESS_LEVELS.get(status or STATUS_FREE, ACCESS_LEVELS[STATUS_FREE])
    return AccessLevel(**level)


def can_access_chat(status: Optional[str]) -> bool:
    return get_access(status)["chat"]


def can_access_premium_content(status: Optional[str]) -> bool:
    return get_access(status)["premium_content"]


def get_daily_chat_limit(status: Optional[str]) -> int:
    return get_access(status)["chat_limit"]


def is_in_good_standing(record: dict) -> bool:
    """True for approved free or premium users."""
    return record.get("status") in (STATUS_FREE, STATUS_PREMIUM) and bool(
        record.get("is_approved")
    )


def is_auto_approved(record: dict) -> bool:
    """Premium access granted by a Stripe subscription rather than an admin."""
    return (
        record.get("approval_type") == APPROVAL_STRIPE
        and record.get("status") == STATUS_PREMIUM
    )


def needs_manual_approval(record: dict) -> bool:
    """Free accounts still waiting on an admin decision."""
    return (
        record.get("approval_type") == APPROVAL_PENDING
        and record.get("status", STATUS_FREE) == STATUS_FREE
    )


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a stored ISO-8601 timestamp (tolerates a trailing Z)."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def grace_days_remaining(grace_period_end, now: Optional[datetime] = None) -> int:
    """
    Whole days left in the grace window, rounded up.

    Returns 0 when the window is missing or already over.
    """
    end = parse_timestamp(grace_period_end)
    if end is None:
        return 0
    now = now or datetime.now(timezone.utc)
    seconds = (end - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def should_suspend(record: dict, now: Optional[datetime] = None) -> bool:
    """A grace_period record whose window has elapsed and is not a subscription pause."""
    if record.get("status") != STATUS_GRACE_PERIOD or record.get("paused_until"):
        return False
    end = parse_timestamp(record.get("grace_period_end"))
    if end is None:
        return False
    return end <= (now or datetime.now(timezone.utc))
