"""
Billing Admin Endpoint - POST /admin/billing

Action dispatch for payment operations. Body: {"action": "<name>", ...}

Actions:
- test_email: Send a template to an address
- process_user_status: Re-derive one user's status from Stripe
- sync_stripe_status: Re-derive status for a batch of 50 billing users
- grace_period_report: Users in grace, expiring within 24h, and expired
- payment_health_check: 24h webhook/email stats, status distribution, score
- retry_failed_webhooks: Replay stored payloads of failed events (max 10)
- suspend_user / reactivate_user / extend_grace_period: Manual status changes
- run_grace_sweep: Run the grace period sweeper now
- retry_failed_notifications: Run the notification retry queue now
- usage_analytics: Chat usage totals for a date range

Requires a bearer token for a user with is_admin set. Every status change
goes through the synchronizer with the admin recorded as actor.
"""

import json
import logging
import time
from datetime import datetime, timedelta, timezone

import stripe
from boto3.dynamodb.conditions import Key

from api.stripe_webhook import process_event
from scheduled.grace_period_sweeper import run_sweep
from shared.access_policy import parse_timestamp
from shared.auth import require_admin
from shared.billing_api import check_method, configure_stripe, parse_body
from shared.constants import (
    GRACE_EXTENSION_DAYS,
    STATUS_FREE,
    STATUS_GRACE_PERIOD,
    STATUS_SUSPENDED,
    USER_STATUSES,
    WEBHOOK_RETRY_BATCH_SIZE,
)
from shared.errors import APIError, InvalidRequestError, NotFoundError
from shared.logging_utils import configure_structured_logging, log_api_request, mask_email, set_request_id
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.services import get_dispatcher, get_ledger, get_synchronizer, get_usage_table, get_users_table
from shared.status_sync import SyncContext
from shared.stripe_sync import scan_billing_users, sync_user_from_stripe
from shared.usage import get_usage_analytics
from shared.users import get_user

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

SYNC_BATCH_SIZE = 50
MAX_GRACE_EXTENSION_DAYS = 30


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    if event.get("httpMethod") == "OPTIONS":
        return preflight_response(origin)

    start = time.time()
    admin_id = None
    action = None
    try:
        check_method(event, "POST")
        admin = require_admin(event, get_users_table())
        admin_id = admin["pk"]
        body = parse_body(event)
        action = body.get("action")

        action_handler = ACTIONS.get(action)
        if not action_handler:
            raise InvalidRequestError("Invalid action", details={"valid_actions": sorted(ACTIONS)})

        logger.info(f"Admin {admin_id} running {action}")
        response = success_response({"success": True, **action_handler(body, admin)}, origin=origin)

    except APIError as e:
        response = e.to_response(origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error in admin action {action}: {e}")
        response = error_response(502, "stripe_error", "Stripe request failed", origin=origin)
    except Exception as e:
        logger.error(f"Admin action {action} failed: {e}", exc_info=True)
        response = error_response(500, "internal_error", "Internal server error", origin=origin)

    log_api_request(logger, "POST", f"/admin/billing/{action or ''}", response["statusCode"],
                    round((time.time() - start) * 1000, 1), admin_id)
    return response


def _require_user(body: dict) -> dict:
    user_id = body.get("user_id")
    if not user_id:
        raise InvalidRequestError("user_id is required")
    user = get_user(get_users_table(), user_id)
    if not user:
        raise NotFoundError("User not found", code="user_not_found")
    return user


def _applied_or_conflict(result) -> dict:
    if not result.applied:
        raise APIError(result.reason or "conflict", "Status was not changed", status_code=409)
    return {"result": result.to_dict()}


def _test_email(body: dict, admin: dict) -> dict:
    email = body.get("email")
    template = body.get("template")
    if not email or not template:
        raise InvalidRequestError("email and template are required")

    if not get_dispatcher().send(email, template, body.get("template_data") or {}):
        raise APIError("email_failed", f"Failed to send test email to {mask_email(email)}", status_code=502)
    return {"message": f"Test email sent to {email}"}


def _process_user_status(body: dict, admin: dict) -> dict:
    user = _require_user(body)
    customer_id = user.get("stripe_customer_id")
    if not customer_id:
        raise InvalidRequestError("User has no Stripe customer ID")

    configure_stripe()
    summary = sync_user_from_stripe(
        get_synchronizer(),
        user,
        customer_id,
        actor=admin["pk"],
        actor_email=admin.get("email", ""),
        action="process_user_status",
    )
    return {"user": summary}


def _sync_stripe_status(body: dict, admin: dict) -> dict:
    configure_stripe()
    sync = get_synchronizer()
    users, cursor = scan_billing_users(sync.users_table, limit=SYNC_BATCH_SIZE, start_after=body.get("cursor"))

    results = []
    errors = []
    for user in users:
        try:
            results.append(
                sync_user_from_stripe(
                    sync,
                    user,
                    user["stripe_customer_id"],
                    actor=admin["pk"],
                    actor_email=admin.get("email", ""),
                    action="sync_stripe_status",
                    only_if_changed=True,
                )
            )
        except Exception as e:
            logger.error(f"Stripe sync failed for {user['pk']}: {e}")
            errors.append({"user_id": user["pk"], "error": str(e)})

    return {
        "processed": len(users),
        "updated": sum(1 for r in results if r["changed"]),
        "errors": errors,
        "results": results,
        "cursor": cursor,
    }


def _users_with_status(status: str) -> list[dict]:
    table = get_users_table()
    items = []
    kwargs = {"IndexName": "status-index", "KeyConditionExpression": Key("status").eq(status)}
    while True:
        response = table.query(**kwargs)
        items.extend(response.get("Items", []))
        if "LastEvaluatedKey" not in response:
            return items
        kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]


def _grace_period_report(body: dict, admin: dict) -> dict:
    now = datetime.now(timezone.utc)
    tomorrow = now + timedelta(hours=24)
    in_grace, expiring_soon, expired = [], [], []

    for user in _users_with_status(STATUS_GRACE_PERIOD):
        end = parse_timestamp(user.get("grace_period_end"))
        entry = {
            "user_id": user["pk"],
            "email": user.get("email"),
            "grace_period_end": end.isoformat() if end else None,
            "payment_failed_at": user.get("payment_failed_at"),
        }
        in_grace.append(entry)
        if not end:
            continue
        if end <= now:
            expired.append({**entry, "hours_overdue": round((now - end).total_seconds() / 3600)})
        elif end <= tomorrow:
            expiring_soon.append({**entry, "hours_until_expiry": round((end - now).total_seconds() / 3600)})

    return {
        "generated_at": now.isoformat(),
        "report": {
            "total_in_grace_period": len(in_grace),
            "expiring_soon": len(expiring_soon),
            "expired": len(expired),
            "users": {"in_grace_period": in_grace, "expiring_soon": expiring_soon, "expired": expired},
        },
    }


def _count_status(status: str) -> int:
    table = get_users_table()
    total = 0
    kwargs = {
        "IndexName": "status-index",
        "KeyConditionExpression": Key("status").eq(status),
        "Select": "COUNT",
    }
    while True:
        response = table.query(**kwargs)
        total += response.get("Count", 0)
        if "LastEvaluatedKey" not in response:
            return total
        kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]


def health_recommendations(webhooks: dict, emails: dict, users: dict) -> list[str]:
    """Operator hints for the payment health check."""
    recommendations = []
    if webhooks["failed"] > webhooks["completed"] * 0.1:
        recommendations.append(
            "High webhook failure rate detected. Check Stripe webhook configuration and endpoint health."
        )
    if webhooks["processing"] > 5:
        recommendations.append(
            "Multiple webhooks are stuck in processing. Investigate timeouts or crashed invocations."
        )
    if emails["success_rate"] < 90:
        recommendations.append(
            "Email delivery success rate is below 90%. Check SES configuration and sending limits."
        )
    if emails["failed"] > 10:
        recommendations.append("High number of failed emails. Check the notification retry queue.")
    if users["past_due"] > users["premium"] * 0.1:
        recommendations.append(
            "High number of past due users. Consider reviewing payment retry settings or reaching out to affected users."
        )
    if users["grace_period"] > users["premium"] * 0.05:
        recommendations.append(
            "Significant number of users in grace period. Monitor payment recovery rates."
        )
    if users["suspended"] > 0:
        recommendations.append(
            f"{users['suspended']} suspended users detected. Consider manual outreach for account recovery."
        )
    if not recommendations:
        recommendations.append("Payment system is operating normally. Continue monitoring key metrics.")
    return recommendations


def _payment_health_check(body: dict, admin: dict) -> dict:
    since = (datetime.now(timezone.utc) - timedelta(hours=24)).isoformat()

    webhooks = get_ledger().count_since(since)
    # No traffic counts as healthy
    webhook_score = webhooks["completed"] / webhooks["total"] * 100 if webhooks["total"] else 100.0

    emails = get_dispatcher().delivery_stats(since)
    emails["success_rate"] = emails["sent"] / emails["total"] * 100 if emails["total"] else 100.0

    users = {status: _count_status(status) for status in USER_STATUSES}
    users["total"] = sum(users.values())

    overall = (webhook_score + emails["success_rate"]) / 2
    if overall >= 95:
        health_status = "healthy"
    elif overall >= 80:
        health_status = "warning"
    else:
        health_status = "critical"

    return {
        "health_status": health_status,
        "overall_health_score": round(overall),
        "last_24_hours": {
            "webhook_processing": {**webhooks, "health_score": round(webhook_score)},
            "email_delivery": {**emails, "success_rate": round(emails["success_rate"])},
            "user_distribution": users,
        },
        "recommendations": health_recommendations(webhooks, emails, users),
    }


def _retry_failed_webhooks(body: dict, admin: dict) -> dict:
    ledger = get_ledger()
    sync = get_synchronizer()
    results = []

    for record in ledger.list_failed(WEBHOOK_RETRY_BATCH_SIZE):
        event_id = record["pk"]
        if not ledger.mark_retrying(event_id):
            results.append({"event_id": event_id, "status": "skipped"})
            continue

        payload = ledger.get_payload(event_id)
        if not payload:
            ledger.fail(event_id, "No stored payload to replay")
            results.append({"event_id": event_id, "status": "failed", "error": "no_payload"})
            continue

        try:
            result = process_event(json.loads(payload), synchronizer=sync)
        except Exception as e:
            logger.error(f"Replay of {event_id} failed: {e}")
            ledger.fail(event_id, str(e))
            results.append({"event_id": event_id, "status": "failed", "error": str(e)})
            continue

        ledger.complete(event_id, result)
        results.append({"event_id": event_id, "status": "completed", "result": result})

    return {
        "processed": len(results),
        "succeeded": sum(1 for r in results if r["status"] == "completed"),
        "failed": sum(1 for r in results if r["status"] == "failed"),
        "results": results,
    }


def _suspend_user(body: dict, admin: dict) -> dict:
    user = _require_user(body)
    if user.get("status") == STATUS_SUSPENDED:
        raise APIError("already_suspended", "User is already suspended", status_code=409)

    reason = str(body.get("reason") or "Suspended by admin")[:500]
    result = get_synchronizer().apply_status(
        user["pk"],
        STATUS_SUSPENDED,
        SyncContext(
            expected_status=user.get("status"),
            notification_template="account_suspended",
            actor=admin["pk"],
            actor_email=admin.get("email", ""),
            action="suspend_user",
            notes=reason,
        ),
    )
    return _applied_or_conflict(result)


def _reactivate_user(body: dict, admin: dict) -> dict:
    user = _require_user(body)
    if user.get("status") != STATUS_SUSPENDED:
        raise APIError("invalid_status", "Only suspended users can be reactivated", status_code=409)

    result = get_synchronizer().apply_status(
        user["pk"],
        STATUS_FREE,
        SyncContext(
            expected_status=STATUS_SUSPENDED,
            subscription={"tier": "free"},
            actor=admin["pk"],
            actor_email=admin.get("email", ""),
            action="reactivate_user",
            notes=str(body.get("notes") or "Reactivated by admin")[:500],
        ),
    )
    return _applied_or_conflict(result)


def _extend_grace_period(body: dict, admin: dict) -> dict:
    user = _require_user(body)
    if user.get("status") != STATUS_GRACE_PERIOD:
        raise APIError("invalid_status", "User is not in a grace period", status_code=409)

    try:
        days = int(body.get("days", GRACE_EXTENSION_DAYS))
    except (TypeError, ValueError):
        raise InvalidRequestError("days must be an integer")
    if not 1 <= days <= MAX_GRACE_EXTENSION_DAYS:
        raise InvalidRequestError(f"days must be between 1 and {MAX_GRACE_EXTENSION_DAYS}")

    now = datetime.now(timezone.utc)
    current_end = parse_timestamp(user.get("grace_period_end")) or now
    new_end = max(current_end, now) + timedelta(days=days)

    result = get_synchronizer().apply_status(
        user["pk"],
        STATUS_GRACE_PERIOD,
        SyncContext(
            grace_period_end=new_end,
            expected_status=STATUS_GRACE_PERIOD,
            notification_template="grace_period_started",
            notification_data={"grace_period_end_date": new_end.strftime("%B %d, %Y")},
            actor=admin["pk"],
            actor_email=admin.get("email", ""),
            action="extend_grace_period",
            notes=f"Grace period extended by {days} days",
            metadata={"previous_grace_period_end": current_end.isoformat(), "grace_period_end": new_end.isoformat()},
        ),
    )
    return {**_applied_or_conflict(result), "grace_period_end": new_end.isoformat()}


def _run_grace_sweep(body: dict, admin: dict) -> dict:
    return run_sweep(get_synchronizer(), actor={"id": admin["pk"], "email": admin.get("email", "")})


def _retry_failed_notifications(body: dict, admin: dict) -> dict:
    return get_dispatcher().retry_failed()


def _usage_analytics(body: dict, admin: dict) -> dict:
    start_date = body.get("start_date")
    end_date = body.get("end_date")
    if not start_date or not end_date:
        raise InvalidRequestError("start_date and end_date are required")
    try:
        return get_usage_analytics(get_usage_table(), get_users_table(), start_date, end_date)
    except ValueError as e:
        raise InvalidRequestError(str(e))


ACTIONS = {
    "test_email": _test_email,
    "process_user_status": _process_user_status,
    "sync_stripe_status": _sync_stripe_status,
    "grace_period_report": _grace_period_report,
    "payment_health_check": _payment_health_check,
    "retry_failed_webhooks": _retry_failed_webhooks,
    "suspend_user": _suspend_user,
    "reactivate_user": _reactivate_user,
    "extend_grace_period": _extend_grace_period,
    "run_grace_sweep": _run_grace_sweep,
    "retry_failed_notifications": _retry_failed_notifications,
    "usage_analytics": _usage_analytics,
}
