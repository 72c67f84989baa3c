"""
Billing History Endpoint - GET /billing/history?limit=12&starting_after=in_...

Paid invoices for the caller's Stripe customer, newest first.
"""

import logging
import time
from datetime import datetime, timezone

import stripe

from shared.billing_api import authorize, require_customer
from shared.errors import APIError, InvalidRequestError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.users import get_users_table

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFAULT_LIMIT = 12
MAX_LIMIT = 100


def _parse_limit(params: dict) -> int:
    raw = params.get("limit")
    if raw is None or raw == "":
        return DEFAULT_LIMIT
    try:
        limit = int(raw)
    except ValueError:
        raise InvalidRequestError("limit must be an integer")
    return max(1, min(limit, MAX_LIMIT))


def _format_invoice(invoice) -> dict:
    created = invoice.get("created")
    return {
        "id": invoice.get("id"),
        "number": invoice.get("number"),
        "amount_paid": invoice.get("amount_paid", 0),
        "currency": invoice.get("currency"),
        "status": invoice.get("status"),
        "created": datetime.fromtimestamp(created, tz=timezone.utc).isoformat() if created else None,
        "hosted_invoice_url": invoice.get("hosted_invoice_url"),
        "invoice_pdf": invoice.get("invoice_pdf"),
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
        customer_id = require_customer(user)

        params = event.get("queryStringParameters") or {}
        list_kwargs = {"customer": customer_id, "status": "paid", "limit": _parse_limit(params)}
        if params.get("starting_after"):
            list_kwargs["starting_after"] = params["starting_after"]

        invoices = stripe.Invoice.list(**list_kwargs)
        data = [_format_invoice(invoice) for invoice in invoices.get("data", [])]
        response = success_response(
            {"invoices": data, "has_more": bool(invoices.get("has_more"))},
            origin=origin,
        )

    except APIError as e:
        response = e.to_response(origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error listing invoices for {user_id}: {e}")
        response = error_response(502, "stripe_error", "Failed to load billing history", origin=origin)

    log_api_request(logger, "GET", "/billing/history", response["statusCode"],
                    round((time.time() - start) * 1000, 1), user_id)
    return response
