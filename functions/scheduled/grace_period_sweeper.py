"""
Grace Period Sweeper - Scheduled Lambda

Triggered daily by EventBridge. Suspends every user whose grace period has
ended. Users are processed independently; one failure is logged and does not
stop the rest of the batch. Re-running is harmless: suspended users no longer
match the query.
"""

import logging
from datetime import datetime, timezone

from boto3.dynamodb.conditions import Attr, Key

from shared.access_policy import should_suspend
from shared.constants import PAYMENT_CANCELED, STATUS_GRACE_PERIOD, STATUS_SUSPENDED
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.metrics import emit_batch_metrics
from shared.services import get_synchronizer
from shared.status_sync import StatusSynchronizer, SyncContext

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def find_expired_grace_periods(users_table, now: datetime) -> list[dict]:
    """
    Users in grace_period whose grace_period_end is at or before now.

    Paused subscriptions also sit in grace_period until their resume date;
    those carry paused_until and are left for Stripe to resume.
    """
    items = []
    kwargs = {
        "IndexName": "status-index",
        "KeyConditionExpression": Key("status").eq(STATUS_GRACE_PERIOD),
        "FilterExpression": (
            Attr("grace_period_end").lte(now.isoformat()) & Attr("paused_until").not_exists()
        ),
    }
    while True:
        response = users_table.query(**kwargs)
        items.extend(response.get("Items", []))
        if "LastEvaluatedKey" not in response:
            break
        kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
    return items


def run_sweep(
    synchronizer: StatusSynchronizer,
    users_table=None,
    now: datetime | None = None,
    actor: dict | None = None,
) -> dict:
    """
    Suspend all users with an expired grace period.

    Args:
        synchronizer: Status synchronizer used for each transition
        users_table: Users table (defaults to the synchronizer's)
        now: Sweep time (defaults to the current UTC time)
        actor: Optional {"id", "email"} of the admin who triggered the sweep

    Returns:
        Counts plus the list of suspended user ids
    """
    users_table = users_table or synchronizer.users_table
    now = now or datetime.now(timezone.utc)
    expired = find_expired_grace_periods(users_table, now)
    logger.info(f"Found {len(expired)} expired grace periods")

    suspended = []
    skipped = 0
    errors = []

    for user in expired:
        user_id = user["pk"]
        if not should_suspend(user, now):
            skipped += 1
            continue
        try:
            context = SyncContext(
                payment_status=PAYMENT_CANCELED,
                expected_status=STATUS_GRACE_PERIOD,
                notification_template="account_suspended",
                action="suspend_user",
                notes="Grace period expired - account suspended",
                metadata={
                    "grace_period_end": user.get("grace_period_end"),
                    "suspended_at": now.isoformat(),
                },
            )
            if actor:
                context.actor = actor["id"]
                context.actor_email = actor.get("email", "")
            result = synchronizer.apply_status(user_id, STATUS_SUSPENDED, context)
            if result.applied:
                suspended.append(user_id)
            else:
                skipped += 1
        except Exception as e:
            logger.error(f"Error suspending user {user_id}: {e}", exc_info=True)
            errors.append({"user_id": user_id, "error": str(e)})

    emit_batch_metrics([
        {"metric_name": "GraceSweepSuspended", "value": len(suspended)},
        {"metric_name": "GraceSweepErrors", "value": len(errors)},
    ])
    logger.info(
        f"Grace period sweep complete: {len(suspended)} suspended, "
        f"{skipped} skipped, {len(errors)} errors"
    )

    return {
        "processed": len(expired),
        "suspended": len(suspended),
        "skipped": skipped,
        "errors": len(errors),
        "suspended_users": suspended,
        "failures": errors,
        "swept_at": now.isoformat(),
    }


def handler(event, context):
    """Daily EventBridge entry point."""
    configure_structured_logging()
    set_request_id(event)
    return run_sweep(get_synchronizer())
