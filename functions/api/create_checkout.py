"""
Create Checkout Endpoint - POST /checkout/create

Creates a Stripe Checkout session for the premium subscription. Creates and
links a Stripe customer on first use.

Returns:
{
    "checkout_url": "https://checkout.stripe.com/..."
}
"""

import logging
import os
import time

import stripe

from shared.billing_api import authorize
from shared.billing_utils import STRIPE_PRICE_PREMIUM
from shared.constants import STATUS_PREMIUM
from shared.errors import APIError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.users import get_users_table, set_customer_id

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
        table = get_users_table()
        user = authorize(event, "POST", table)
        user_id = user["pk"]

        if user.get("status") == STATUS_PREMIUM and (user.get("subscription") or {}).get("stripe_subscription_id"):
            response = error_response(
                409, "already_subscribed", "You already have an active subscription", origin=origin
            )
        else:
            customer_id = user.get("stripe_customer_id")
            if not customer_id:
                customer = stripe.Customer.create(
                    email=user.get("email"),
                    name=user.get("display_name") or None,
                    metadata={"user_id": user_id},
                )
                customer_id = customer.id
                set_customer_id(table, user_id, customer_id)
                logger.info(f"Created Stripe customer {customer_id} for user {user_id}")

            session = stripe.checkout.Session.create(
                mode="subscription",
                customer=customer_id,
                line_items=[{"price": STRIPE_PRICE_PREMIUM, "quantity": 1}],
                success_url=f"{BASE_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{BASE_URL}/checkout?cancelled=true",
                client_reference_id=user_id,
                metadata={"user_id": user_id},
                subscription_data={"metadata": {"user_id": user_id}},
                allow_promotion_codes=True,
            )
            logger.info(f"Created checkout session for user {user_id}")
            response = success_response({"checkout_url": session.url}, origin=origin)

    except APIError as e:
        response = e.to_response(origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout session: {e}")
        response = error_response(500, "stripe_error", "Failed to create checkout session", origin=origin)

    log_api_request(logger, "POST", "/checkout/create", response["statusCode"],
                    round((time.time() - start) * 1000, 1), user_id)
    return response
