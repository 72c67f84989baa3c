"""
Request plumbing shared by the authenticated billing endpoints.
"""

import json
import logging

import stripe

from shared.auth import authenticate
from shared.billing_utils import get_stripe_api_key
from shared.errors import APIError, InvalidRequestError, MethodNotAllowedError, NotFoundError

logger = logging.getLogger(__name__)


def get_method(event: dict) -> str:
    return event.get("httpMethod") or (event.get("requestContext") or {}).get("http", {}).get("method", "")


def check_method(event: dict, allowed: str) -> None:
    method = get_method(event)
    if method != allowed:
        raise MethodNotAllowedError(method or "UNKNOWN", allowed)


def configure_stripe() -> None:
    """Set the Stripe API key for this invocation."""
    api_key = get_stripe_api_key()
    if not api_key:
        logger.error("Stripe API key not configured")
        raise APIError("stripe_not_configured", "Payment system not configured", status_code=500)
    stripe.api_key = api_key


def parse_body(event: dict) -> dict:
    try:
        body = json.loads(event.get("body") or "{}")
    except json.JSONDecodeError:
        raise InvalidRequestError("Invalid JSON in request body")
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


def authorize(event: dict, method: str, users_table) -> dict:
    """Method check, Stripe setup and bearer authentication, in that order."""
    check_method(event, method)
    user = authenticate(event, users_table)
    configure_stripe()
    return user


def require_customer(user: dict) -> str:
    customer_id = user.get("stripe_customer_id")
    if not customer_id:
        raise NotFoundError("No billing account found", code="no_customer")
    return customer_id


def require_subscription(user: dict) -> tuple[str, str]:
    """Return (customer id, subscription id) for a user with a linked subscription."""
    customer_id = require_customer(user)
    subscription_id = (user.get("subscription") or {}).get("stripe_subscription_id")
    if not subscription_id:
        raise NotFoundError("No subscription found", code="no_subscription")
    return customer_id, subscription_id
