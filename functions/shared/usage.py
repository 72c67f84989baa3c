"""
Daily chat usage counter and abuse heuristics.

One item per (user, local calendar day): pk = user id, sk = YYYY-MM-DD in the
user's timezone. The quota comes from the access policy for the user's
current status, and the increment is a single conditional update_item, so
concurrent requests for the same user-day cannot overshoot the limit.
"""

import logging
import os
from datetime import date as date_cls
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from shared.access_policy import get_daily_chat_limit
from shared.aws_clients import get_dynamodb
from shared.constants import (
    ABUSE_DAILY_LIMIT_MULTIPLIER,
    ABUSE_MAX_MESSAGES_PER_WINDOW,
    ABUSE_WARNINGS_BEFORE_BLOCK,
    ABUSE_WINDOW_SECONDS,
    STATUS_FREE,
    USER_STATUSES,
)

logger = logging.getLogger(__name__)

USAGE_TABLE = os.environ.get("USAGE_TABLE", "steadycoach-usage")


def get_usage_table():
    return get_dynamodb().Table(USAGE_TABLE)


def _zone(tz_name: Optional[str]):
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r}, falling back to UTC")
        return timezone.utc


def local_date(tz_name: Optional[str] = "UTC", now: Optional[datetime] = None) -> str:
    """Today's date (YYYY-MM-DD) in the user's timezone."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(_zone(tz_name)).date().isoformat()


def next_midnight(tz_name: Optional[str] = "UTC", now: Optional[datetime] = None) -> str:
    """Next local midnight, as a UTC ISO timestamp."""
    zone = _zone(tz_name)
    now = now or datetime.now(timezone.utc)
    tomorrow = now.astimezone(zone).date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=zone).astimezone(timezone.utc).isoformat()


def _usage_result(item: dict, limit: int, allowed: bool, reason: Optional[str], reset_at: str) -> dict:
    current = int(item.get("chat_messages", 0))
    return {
        "allowed": allowed,
        "remaining": max(0, limit - current),
        "current_usage": current,
        "daily_limit": limit,
        "reset_at": item.get("reset_at", reset_at),
        "is_blocked": bool(item.get("blocked", False)),
        "reason": reason,
    }


def check_and_increment(
    table,
    user_id: str,
    status: Optional[str],
    tz_name: Optional[str] = "UTC",
    now: Optional[datetime] = None,
) -> dict:
    """
    Count one chat message if the user still has quota.

    Returns:
        {allowed, remaining, current_usage, daily_limit, reset_at, is_blocked, reason}
    """
    now = now or datetime.now(timezone.utc)
    today = local_date(tz_name, now)
    reset_at = next_midnight(tz_name, now)
    limit = get_daily_chat_limit(status)

    if limit <= 0:
        return _usage_result({}, 0, False, "chat_not_available", reset_at)

    try:
        response = table.update_item(
            Key={"pk": user_id, "sk": today},
            UpdateExpression=(
                "SET chat_messages = if_not_exists(chat_messages, :zero) + :one, "
                "last_message_at = :now, "
                "reset_at = if_not_exists(reset_at, :reset_at), "
                "warnings = if_not_exists(warnings, :zero), "
                "blocked = if_not_exists(blocked, :false), "
                "recent_messages = list_append(if_not_exists(recent_messages, :empty), :stamp), "
                "#date = :date"
            ),
            ConditionExpression=(
                "(attribute_not_exists(chat_messages) OR chat_messages < :limit) "
                "AND (attribute_not_exists(blocked) OR blocked = :false)"
            ),
            ExpressionAttributeNames={"#date": "date"},
            ExpressionAttributeValues={
                ":zero": 0,
                ":one": 1,
                ":now": now.isoformat(),
                ":reset_at": reset_at,
                ":false": False,
                ":empty": [],
                ":stamp": [int(now.timestamp())],
                ":date": today,
                ":limit": limit,
            },
            ReturnValues="ALL_NEW",
        )
    except ClientError as e:
        if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
            raise
        item = table.get_item(Key={"pk": user_id, "sk": today}).get("Item", {})
        reason = "blocked" if item.get("blocked") else "daily_limit_reached"
        logger.info(f"Chat message rejected for {user_id}: {reason}")
        return _usage_result(item, limit, False, reason, reset_at)

    return _usage_result(response["Attributes"], limit, True, None, reset_at)


def check_chat_limit(
    table,
    user_id: str,
    status: Optional[str],
    tz_name: Optional[str] = "UTC",
    now: Optional[datetime] = None,
) -> dict:
    """Read-only version of check_and_increment()."""
    now = now or datetime.now(timezone.utc)
    reset_at = next_midnight(tz_name, now)
    limit = get_daily_chat_limit(status)
    if limit <= 0:
        return _usage_result({}, 0, False, "chat_not_available", reset_at)

    item = table.get_item(Key={"pk": user_id, "sk": local_date(tz_name, now)}).get("Item", {})
    if item.get("blocked"):
        return _usage_result(item, limit, False, "blocked", reset_at)
    if int(item.get("chat_messages", 0)) >= limit:
        return _usage_result(item, limit, False, "daily_limit_reached", reset_at)
    return _usage_result(item, limit, True, None, reset_at)


def get_usage_status(
    table,
    user_id: str,
    status: Optional[str],
    tz_name: Optional[str] = "UTC",
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    today = local_date(tz_name, now)
    item = table.get_item(Key={"pk": user_id, "sk": today}).get("Item", {})
    limit = get_daily_chat_limit(status)
    current = int(item.get("chat_messages", 0))
    return {
        "date": today,
        "user_status": status or STATUS_FREE,
        "current_usage": current,
        "daily_limit": limit,
        "remaining": max(0, limit - current),
        "reset_at": item.get("reset_at") or next_midnight(tz_name, now),
        "warnings": int(item.get("warnings", 0)),
        "is_blocked": bool(item.get("blocked", False)),
    }


def detect_abuse(
    table,
    user_id: str,
    status: Optional[str],
    tz_name: Optional[str] = "UTC",
    now: Optional[datetime] = None,
) -> dict:
    """
    Flag rapid-fire or far-over-quota usage.

    More than ABUSE_MAX_MESSAGES_PER_WINDOW messages in the rolling window, or
    more than ABUSE_DAILY_LIMIT_MULTIPLIER x the daily quota, adds one warning.
    ABUSE_WARNINGS_BEFORE_BLOCK warnings block the user until the daily reset.
    """
    now = now or datetime.now(timezone.utc)
    today = local_date(tz_name, now)
    key = {"pk": user_id, "sk": today}
    item = table.get_item(Key=key).get("Item")
    if not item:
        return {"is_abusive": False, "warnings_added": 0, "warnings": 0, "blocked": False, "reasons": []}

    seen = [int(ts) for ts in item.get("recent_messages", [])]
    cutoff = int(now.timestamp()) - ABUSE_WINDOW_SECONDS
    recent = [ts for ts in seen if ts > cutoff]
    limit = get_daily_chat_limit(status)
    messages = int(item.get("chat_messages", 0))

    reasons = []
    if len(recent) > ABUSE_MAX_MESSAGES_PER_WINDOW:
        reasons.append("rapid_messages")
    if limit > 0 and messages > limit * ABUSE_DAILY_LIMIT_MULTIPLIER:
        reasons.append("excessive_daily_usage")

    if len(recent) < len(seen):
        _trim_recent_messages(table, key, recent, len(seen))

    warnings = int(item.get("warnings", 0))
    blocked = bool(item.get("blocked", False))
    if reasons:
        response = table.update_item(
            Key=key,
            UpdateExpression="ADD warnings :one",
            ExpressionAttributeValues={":one": 1},
            ReturnValues="ALL_NEW",
        )
        warnings = int(response["Attributes"]["warnings"])
        blocked = bool(response["Attributes"].get("blocked", False))
        if not blocked and warnings >= ABUSE_WARNINGS_BEFORE_BLOCK:
            blocked = _block(table, key)
        logger.warning(
            f"Abuse detected for {user_id}: {', '.join(reasons)} "
            f"(warnings={warnings}, blocked={blocked})"
        )

    return {
        "is_abusive": bool(reasons),
        "warnings_added": 1 if reasons else 0,
        "warnings": warnings,
        "blocked": blocked,
        "reasons": reasons,
    }


def _trim_recent_messages(table, key: dict, recent: list, seen_count: int) -> None:
    # Skipped if a message was appended since the read; the next check trims
    try:
        table.update_item(
            Key=key,
            UpdateExpression="SET recent_messages = :recent",
            ConditionExpression="size(recent_messages) = :seen",
            ExpressionAttributeValues={":recent": recent, ":seen": seen_count},
        )
    except ClientError as e:
        if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
            raise
        logger.debug(f"recent_messages for {key['pk']} changed during trim, leaving as is")


def _block(table, key: dict) -> bool:
    """Set the block flag once the stored warning count reaches the threshold."""
    try:
        table.update_item(
            Key=key,
            UpdateExpression="SET blocked = :true",
            ConditionExpression="warnings >= :threshold",
            ExpressionAttributeValues={":true": True, ":threshold": ABUSE_WARNINGS_BEFORE_BLOCK},
        )
    except ClientError as e:
        if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
            raise
        return False
    return True


def reset_daily_usage(
    table,
    target_date: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Zero the counters for one date (default: yesterday, UTC).

    Only records whose local day has ended (reset_at <= now) are touched, so
    users west of UTC keep their count until their own midnight. Warnings are
    kept so repeat offenders are blocked sooner; the block itself is lifted.
    """
    now = now or datetime.now(timezone.utc)
    target_date = target_date or (now.date() - timedelta(days=1)).isoformat()
    reset_count = 0
    error_count = 0

    kwargs = {
        "IndexName": "date-index",
        "KeyConditionExpression": Key("date").eq(target_date),
        "FilterExpression": Attr("reset_at").not_exists() | Attr("reset_at").lte(now.isoformat()),
    }
    while True:
        response = table.query(**kwargs)
        for item in response.get("Items", []):
            try:
                table.update_item(
                    Key={"pk": item["pk"], "sk": item["sk"]},
                    UpdateExpression=(
                        "SET chat_messages = :zero, blocked = :false "
                        "REMOVE last_message_at, recent_messages"
                    ),
                    ExpressionAttributeValues={":zero": 0, ":false": False},
                )
                reset_count += 1
            except ClientError as e:
                error_count += 1
                logger.error(f"Failed to reset usage for {item['pk']} on {target_date}: {e}")

        if "LastEvaluatedKey" not in response:
            break
        kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

    logger.info(f"Reset daily usage for {target_date}: {reset_count} records, {error_count} errors")
    return {"date": target_date, "reset": reset_count, "errors": error_count}


def get_usage_analytics(usage_table, users_table, start_date: str, end_date: str) -> dict:
    """Message totals per day and per user status for an inclusive date range."""
    start = date_cls.fromisoformat(start_date)
    end = date_cls.fromisoformat(end_date)
    if end < start:
        raise ValueError("end_date must not be before start_date")
    if (end - start).days > 92:
        raise ValueError("Date range too large (max 92 days)")

    items = []
    day = start
    while day <= end:
        kwargs = {
            "IndexName": "date-index",
            "KeyConditionExpression": Key("date").eq(day.isoformat()),
        }
        while True:
            response = usage_table.query(**kwargs)
            items.extend(response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                break
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        day += timedelta(days=1)

    statuses = {}
    for user_id in {item["pk"] for item in items}:
        user = users_table.get_item(Key={"pk": user_id}).get("Item") or {}
        statuses[user_id] = user.get("status", STATUS_FREE)

    by_status = {status: {"users": 0, "messages": 0} for status in USER_STATUSES}
    daily = {}
    for item in items:
        messages = int(item.get("chat_messages", 0))
        status = statuses.get(item["pk"], STATUS_FREE)
        bucket = by_status.setdefault(status, {"users": 0, "messages": 0})
        bucket["users"] += 1
        bucket["messages"] += messages
        day_entry = daily.setdefault(item["date"], {"users": set(), "messages": 0})
        day_entry["users"].add(item["pk"])
        day_entry["messages"] += messages

    total_users = len(statuses)
    total_messages = sum(int(item.get("chat_messages", 0)) for item in items)
    return {
        "start_date": start_date,
        "end_date": end_date,
        "total_users": total_users,
        "total_messages": total_messages,
        "average_messages_per_user": round(total_messages / total_users, 2) if total_users else 0,
        "usage_by_status": by_status,
        "daily_breakdown": [
            {"date": d, "users": len(v["users"]), "messages": v["messages"]}
            for d, v in sorted(daily.items())
        ],
    }
