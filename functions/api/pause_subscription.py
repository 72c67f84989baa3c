"""
Pause Subscription Endpoint - POST /billing/pause

Pauses payment collection for PAUSE_DURATION_DAYS (invoices kept as drafts).
The user moves to grace_period until the resume date, through the status
synchronizer so Cognito claims and the audit log follow.
"""

import logging
import time
from datetime import datetime, timedelta, timezone

import stripe

from shared.billing_api import authorize, require_subscription
from shared.constants import PAUSE_DURATION_DAYS, STATUS_GRACE_PERIOD
from shared.errors import APIError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.services import get_synchronizer
from shared.status_sync import SyncContext

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    if event.get("httpMethod") == "OPTIONS":
        return preflight_response(origin)

    start = time.time()
    user_id = None
    try:
        synchronizer = get_synchronizer()
        user = authorize(event, "POST", synchronizer.users_table)
        user_id = user["pk"]
        _, subscription_id = require_subscription(user)

        resumes_at = datetime.now(timezone.utc) + timedelta(days=PAUSE_DURATION_DAYS)
        subscription = stripe.Subscription.modify(
            subscription_id,
            pause_collection={
                "behavior": "keep_as_draft",
                "resumes_at": int(resumes_at.timestamp()),
            },
        )

        synchronizer.apply_status(
            user_id,
            STATUS_GRACE_PERIOD,
            SyncContext(
                grace_period_end=resumes_at,
                paused_until=resumes_at,
                actor=user_id,
                actor_email=user.get("email", ""),
                action="pause_subscription",
                notes=f"Subscription paused for {PAUSE_DURATION_DAYS} days",
                metadata={"subscription_id": subscription_id, "resumes_at": resumes_at.isoformat()},
            ),
        )
        logger.info(f"Paused subscription {subscription_id} for {user_id} until {resumes_at.date()}")

        pause = subscription.get("pause_collection") or {}
        response = success_response(
            {
                "subscription_id": subscription_id,
                "status": STATUS_GRACE_PERIOD,
                "pause_collection": {
                    "behavior": pause.get("behavior", "keep_as_draft"),
                    "resumes_at": resumes_at.isoformat(),
                },
            },
            origin=origin,
        )

    except APIError as e:
        response = e.to_response(origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error pausing subscription for {user_id}: {e}")
        response = error_response(502, "stripe_error", "Failed to pause subscription", origin=origin)

    log_api_request(logger, "POST", "/billing/pause", response["statusCode"],
                    round((time.time() - start) * 1000, 1), user_id)
    return response
