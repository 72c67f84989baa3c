"""
Admin Stripe sync - POST /admin/sync-user, POST /admin/sync-users

handler: find a user by email, find the Stripe customer with that email,
and apply the status their subscriptions imply.

batch_handler: the same for every user with a linked Stripe customer,
only writing users whose status has drifted.
"""

import logging

import stripe

from shared.auth import require_admin
from shared.billing_api import check_method, configure_stripe, parse_body
from shared.errors import APIError, InvalidRequestError, NotFoundError
from shared.logging_utils import configure_structured_logging, mask_email, set_request_id
from shared.response_utils import error_response, get_origin, preflight_response, success_response
from shared.services import get_synchronizer, get_users_table
from shared.stripe_sync import scan_billing_users, sync_user_from_stripe
from shared.users import find_user_by_email

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    """Sync one user, identified by email, from Stripe."""
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    if event.get("httpMethod") == "OPTIONS":
        return preflight_response(origin)

    try:
        check_method(event, "POST")
        admin = require_admin(event, get_users_table())
        email = (parse_body(event).get("email") or "").strip()
        if not email:
            raise InvalidRequestError("Email is required")

        user = find_user_by_email(get_users_table(), email)
        if not user:
            raise NotFoundError("User not found", code="user_not_found")

        configure_stripe()
        customers = stripe.Customer.list(email=email, limit=1).get("data") or []
        if not customers:
            raise NotFoundError("No Stripe customer found with this email", code="no_stripe_customer")
        customer_id = customers[0]["id"]
        logger.info(f"Syncing {mask_email(email)} ({user['pk']}) from Stripe customer {customer_id}")

        summary = sync_user_from_stripe(
            get_synchronizer(),
            user,
            customer_id,
            actor=admin["pk"],
            actor_email=admin.get("email", ""),
        )
        return success_response({"success": True, "user": summary}, origin=origin)

    except APIError as e:
        return e.to_response(origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error syncing user status: {e}")
        return error_response(502, "stripe_error", "Failed to sync user status", origin=origin)


def batch_handler(event, context):
    """Sync every user with a Stripe customer; only drifted users are written."""
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    if event.get("httpMethod") == "OPTIONS":
        return preflight_response(origin)

    try:
        check_method(event, "POST")
        admin = require_admin(event, get_users_table())
        configure_stripe()
    except APIError as e:
        return e.to_response(origin)

    sync = get_synchronizer()
    users, _ = scan_billing_users(sync.users_table)
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
                    action="batch_sync_user_status",
                    only_if_changed=True,
                )
            )
        except Exception as e:
            logger.error(f"Error syncing user {user['pk']}: {e}")
            errors.append({"user_id": user["pk"], "error": str(e)})

    updated = [r for r in results if r["changed"]]
    logger.info(f"Batch sync complete: {len(updated)} of {len(users)} users updated, {len(errors)} errors")
    return success_response(
        {
            "success": True,
            "total_processed": len(users),
            "updated": len(updated),
            "errors": errors,
            "results": updated,
        },
        origin=origin,
    )
