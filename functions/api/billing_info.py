"""
Billing Info Endpoint - GET /billing/info

Returns the caller's subscription, customer, default card, discount and the
upcoming invoice preview.
"""

import logging
import time
from datetime import datetime, timezone

import stripe

from shared.billing_api import authorize, require_subscription
from shared.errors import APIError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.users import get_users_table

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _iso(epoch: int | None) -> str | None:
    if not epoch:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def _format_discount(discount) -> dict | None:
    if not discount:
        return None
    coupon = discount.get("coupon") or {}
    return {
        "id": discount.get("id"),
        "coupon": {
            "id": coupon.get("id"),
            "name": coupon.get("name"),
            "amount_off": coupon.get("amount_off"),
            "percent_off": coupon.get("percent_off"),
            "currency": coupon.get("currency"),
            "duration": coupon.get("duration"),
            "duration_in_months": coupon.get("duration_in_months"),
        },
        "start": _iso(discount.get("start")),
        "end": _iso(discount.get("end")),
    }


def _format_payment_method(payment_method) -> dict | None:
    # Unexpanded payment methods arrive as plain ids
    if not payment_method or isinstance(payment_method, str):
        return None
    card = payment_method.get("card") or {}
    return {
        "id": payment_method.get("id"),
        "type": payment_method.get("type"),
        "card": {
            "brand": card.get("brand"),
            "last4": card.get("last4"),
            "exp_month": card.get("exp_month"),
            "exp_year": card.get("exp_year"),
        } if card else None,
    }


def _upcoming_invoice(customer_id: str, subscription_id: str) -> dict | None:
    try:
        preview = stripe.Invoice.create_preview(customer=customer_id, subscription=subscription_id)
    except stripe.InvalidRequestError:
        # No upcoming invoice (e.g. cancelled at period end)
        return None
    return {
        "amount_due": preview.get("amount_due", 0),
        "currency": preview.get("currency", "usd"),
        "period_start": _iso(preview.get("period_start")),
        "period_end": _iso(preview.get("period_end")),
        "next_payment_attempt": _iso(preview.get("next_payment_attempt")),
    }


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    if event.get("httpMethod") == "OPTIONS":
        return preflight_response(origin)

    start = time.time()
    user_id = None
    try:
        user = authorize(event, "GET", get_users_table())
        user_id = user["pk"]
        customer_id, subscription_id = require_subscription(user)

        subscription = stripe.Subscription.retrieve(
            subscription_id, expand=["default_payment_method"]
        )
        customer = stripe.Customer.retrieve(customer_id)

        items = (subscription.get("items") or {}).get("data") or []
        pause = subscription.get("pause_collection")
        data = {
            "status": user.get("status"),
            "payment_status": user.get("payment_status"),
            "grace_period_end": user.get("grace_period_end"),
            "subscription": {
                "id": subscription.get("id"),
                "status": subscription.get("status"),
                "current_period_end": _iso(
                    subscription.get("current_period_end")
                    or (items[0].get("current_period_end") if items else None)
                ),
                "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
                "pause_collection": {
                    "behavior": pause.get("behavior"),
                    "resumes_at": _iso(pause.get("resumes_at")),
                } if pause else None,
                "discount": _format_discount(subscription.get("discount")),
                "items": [
                    {
                        "id": item.get("id"),
                        "price": {
                            "id": (item.get("price") or {}).get("id"),
                            "unit_amount": (item.get("price") or {}).get("unit_amount") or 0,
                            "currency": (item.get("price") or {}).get("currency"),
                            "interval": ((item.get("price") or {}).get("recurring") or {}).get("interval", "month"),
                        },
                    }
                    for item in items
                ],
            },
            "customer": {
                "id": customer.get("id"),
                "email": customer.get("email") or "",
                "default_payment_method": _format_payment_method(
                    subscription.get("default_payment_method")
                ),
            },
            "upcoming_invoice": _upcoming_invoice(customer_id, subscription_id),
        }
        response = success_response(data, origin=origin)

    except APIError as e:
        response = e.to_response(origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error fetching billing info for {user_id}: {e}")
        response = error_response(502, "stripe_error", "Failed to load billing information", origin=origin)

    log_api_request(logger, "GET", "/billing/info", response["statusCode"],
                    round((time.time() - start) * 1000, 1), user_id)
    return response
