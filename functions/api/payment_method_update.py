"""
Payment Method Update Endpoint - POST /billing/payment-method

Returns a Stripe billing portal URL opened on the payment method update flow.
"""

import logging
import os
import time

import stripe

from shared.billing_api import authorize, require_customer
from shared.errors import APIError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.users import get_users_table

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

BASE_URL = os.environ.get("BASE_URL", "https://steadycoach.app")


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
        customer_id = require_customer(user)

        # Include portal_return=1 so the account page knows to refresh billing data
        portal_session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=f"{BASE_URL}/account?portal_return=1",
            flow_data={"type": "payment_method_update"},
        )
        logger.info(f"Created payment method portal session for user {user_id}")
        response = success_response({"url": portal_session.url}, origin=origin)

    except APIError as e:
        response = e.to_response(origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating billing portal session: {e}")
        response = error_response(
            502, "stripe_error", "Failed to create billing portal session", origin=origin
        )

    log_api_request(logger, "POST", "/billing/payment-method", response["statusCode"],
                    round((time.time() - start) * 1000, 1), user_id)
    return response
