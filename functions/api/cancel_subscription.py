"""
Cancel Subscription Endpoint - POST /billing/cancel

Body: {"reason": "optional free text"}

Sets cancel_at_period_end; access continues until the period ends, when
Stripe sends customer.subscription.deleted. The request is audited.
"""

import logging
import time
from datetime import datetime, timezone

import stripe

from shared.billing_api import authorize, parse_body, require_subscription
from shared.errors import APIError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.services import get_admin_logs_table
from shared.status_sync import log_admin_action
from shared.users import get_users_table

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

MAX_REASON_LENGTH = 500


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    if event.get("httpMethod") == "OPTIONS":
        return preflight_response(origin)

    start = time.time()
    user_id = None
    try:
        user = authorize(event, "POST", get_users_table())
        user_id = user["pk"]
        _, subscription_id = require_subscription(user)
        reason = str(parse_body(event).get("reason") or "").strip()[:MAX_REASON_LENGTH]

        modify_kwargs = {"cancel_at_period_end": True}
        if reason:
            modify_kwargs["cancellation_details"] = {"comment": reason}
        subscription = stripe.Subscription.modify(subscription_id, **modify_kwargs)

        period_end = subscription.get("current_period_end")
        period_end_iso = (
            datetime.fromtimestamp(period_end, tz=timezone.utc).isoformat() if period_end else None
        )

        log_admin_action(
            get_admin_logs_table(),
            user_id,
            "cancel_subscription",
            actor=user_id,
            actor_email=user.get("email", ""),
            target_email=user.get("email"),
            notes=f"Cancellation requested{': ' + reason if reason else ''}",
            metadata={"subscription_id": subscription_id, "effective_at": period_end_iso},
        )
        logger.info(f"Subscription {subscription_id} for {user_id} set to cancel at period end")

        response = success_response(
            {
                "subscription_id": subscription_id,
                "cancel_at_period_end": True,
                "effective_at": period_end_iso,
            },
            origin=origin,
        )

    except APIError as e:
        response = e.to_response(origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error cancelling subscription for {user_id}: {e}")
        response = error_response(502, "stripe_error", "Failed to cancel subscription", origin=origin)

    log_api_request(logger, "POST", "/billing/cancel", response["statusCode"],
                    round((time.time() - start) * 1000, 1), user_id)
    return response
