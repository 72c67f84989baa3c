"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Drives the subscription and dunning state machine. Every event is claimed in
the webhook event ledger before any side effect, so Stripe redeliveries are
no-ops. Status changes go through the status synchronizer.
"""

import base64
import json
import logging
from datetime import datetime, timezone

import stripe

from shared.constants import (
    APPROVAL_STRIPE,
    PAYMENT_ACTIVE,
    PAYMENT_CANCELED,
    PAYMENT_PAST_DUE,
    STATUS_FREE,
    STATUS_GRACE_PERIOD,
    STATUS_PAST_DUE,
    STATUS_PREMIUM,
    STATUS_SUSPENDED,
    WEBHOOK_TOLERANCE_SECONDS,
)
from shared.billing_utils import get_stripe_secrets
from shared.dunning import days_since, evaluate
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.metrics import emit_webhook_metric
from shared.response_utils import error_response, json_response
from shared.services import get_ledger, get_synchronizer
from shared.status_sync import (
    StatusSynchronizer,
    SyncContext,
    extract_signup_promotion,
    log_admin_action,
    map_subscription_status,
    subscription_fields,
)
from shared.users import find_user_by_customer_id, get_user, link_customer

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - customer.subscription.created: Auto-approve to premium
    - customer.subscription.updated: Mirror the Stripe subscription status
    - customer.subscription.deleted: Revert to free
    - invoice.payment_succeeded / invoice.paid: Restore premium, clear dunning state
    - invoice.payment_failed: Advance the dunning timeline
    - customer.created / checkout.session.completed: Link the Stripe customer
    """
    configure_structured_logging()
    set_request_id(event)

    method = event.get("httpMethod") or (event.get("requestContext") or {}).get("http", {}).get("method")
    if method and method != "POST":
        return error_response(405, "method_not_allowed", f"Method {method} not allowed", headers={"Allow": "POST"})

    stripe_api_key, webhook_secret = get_stripe_secrets()

    if not stripe_api_key or not webhook_secret:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    stripe.api_key = stripe_api_key

    payload = event.get("body") or ""
    if event.get("isBase64Encoded"):
        payload = base64.b64decode(payload).decode("utf-8")
    headers = event.get("headers") or {}
    sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Missing Stripe signature")
        emit_webhook_metric("unknown", "invalid_signature")
        return error_response(400, "missing_signature", "Missing Stripe signature")

    try:
        stripe.WebhookSignature.verify_header(
            payload, sig_header, webhook_secret, tolerance=WEBHOOK_TOLERANCE_SECONDS
        )
        stripe_event = json.loads(payload)
        event_id = stripe_event["id"]
        event_type = stripe_event["type"]
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid Stripe signature: {e}")
        emit_webhook_metric("unknown", "invalid_signature")
        return error_response(400, "invalid_signature", "Invalid signature")
    except (ValueError, KeyError, TypeError) as e:
        logger.error(f"Webhook error: {e}")
        return error_response(400, "invalid_webhook_payload", "Invalid webhook payload")

    logger.info(f"Processing Stripe event: {event_type} (id={event_id})")

    ledger = get_ledger()
    if ledger.begin_processing(event_id, event_type, payload)["already_processed"]:
        logger.info(f"Skipping duplicate event {event_id}")
        emit_webhook_metric(event_type, "duplicate")
        return json_response(200, {"received": True, "status": "already_processed"})

    try:
        result = process_event(stripe_event)
    except Exception as e:
        ledger.fail(event_id, str(e))
        emit_webhook_metric(event_type, "failed")
        logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
        return error_response(500, "processing_failed", "Processing failed")

    ledger.complete(event_id, result)
    emit_webhook_metric(event_type, "completed")
    return json_response(200, {"received": True, "status": result.get("status", "success"), "result": result})


def process_event(stripe_event: dict, synchronizer: StatusSynchronizer | None = None) -> dict:
    """
    Route a verified Stripe event to its handler.

    Also used by the admin replay of failed events. Raises on any handler
    failure so the caller can mark the event failed.
    """
    sync = synchronizer or get_synchronizer()
    event_type = stripe_event["type"]
    data = stripe_event["data"]["object"]
    created = stripe_event.get("created")

    if event_type == "customer.subscription.created":
        return _handle_subscription_created(sync, data, created)
    if event_type == "customer.subscription.updated":
        return _handle_subscription_updated(sync, data, created)
    if event_type == "customer.subscription.deleted":
        return _handle_subscription_deleted(sync, data, created)
    if event_type in ("invoice.payment_succeeded", "invoice.paid"):
        return _handle_payment_succeeded(sync, data, created)
    if event_type == "invoice.payment_failed":
        return _handle_payment_failed(sync, data, created)
    if event_type == "customer.created":
        return _handle_customer_created(sync, data)
    if event_type == "checkout.session.completed":
        return _handle_checkout_completed(sync, data)

    logger.info(f"Unhandled event type: {event_type}")
    return {"status": "unhandled", "event_type": event_type}


def _find_user(sync: StatusSynchronizer, customer_id: str | None, metadata: dict | None = None) -> dict | None:
    user = find_user_by_customer_id(sync.users_table, customer_id)
    if not user and metadata and metadata.get("user_id"):
        user = get_user(sync.users_table, metadata["user_id"])
    if not user:
        logger.error(f"User not found for Stripe customer: {customer_id}")
    return user


def _outcome(result, **extra) -> dict:
    if not result.applied:
        return {"status": result.reason, "user_id": result.user_id}
    return {"status": "success", "user_id": result.user_id, "new_status": result.new_status, **extra}


def _invoice_subscription_id(invoice: dict) -> str | None:
    # Newer API versions nest the subscription under parent.subscription_details
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _invoice_notification_data(invoice: dict) -> dict:
    amount = invoice.get("amount_due") or invoice.get("amount_paid") or 0
    return {
        "invoice_id": invoice.get("id", ""),
        "amount": f"{amount / 100:.2f}",
        "currency": (invoice.get("currency") or "usd").upper(),
    }


def _skip_suspended(user: dict, event_kind: str) -> dict | None:
    """Suspended users leave suspension only through an admin reactivation."""
    if user.get("status") != STATUS_SUSPENDED:
        return None
    logger.info(f"User {user['pk']} already suspended, ignoring {event_kind}")
    return {"status": "skipped", "reason": "already_suspended", "user_id": user["pk"]}


def _handle_subscription_created(sync: StatusSynchronizer, subscription: dict, created: int | None) -> dict:
    """Auto-approve the user to premium on a new Stripe subscription."""
    customer_id = subscription.get("customer")
    logger.info(f"Processing subscription created: {subscription.get('id')} for customer: {customer_id}")

    user = _find_user(sync, customer_id, subscription.get("metadata"))
    if not user:
        return {"status": "user_not_found", "customer_id": customer_id}
    skipped = _skip_suspended(user, "subscription created")
    if skipped:
        return skipped

    promotion = extract_signup_promotion(subscription)
    fields = subscription_fields(subscription, "premium")
    if promotion:
        fields["signup_promotion"] = promotion

    result = sync.apply_status(
        user["pk"],
        STATUS_PREMIUM,
        SyncContext(
            payment_status=PAYMENT_ACTIVE,
            approval_type=APPROVAL_STRIPE,
            subscription=fields,
            stripe_customer_id=customer_id,
            event_created=created,
            notification_template="subscription_created",
            notification_data={"subscription_id": subscription.get("id")},
            action="approve_user",
            notes="Auto-approved via Stripe subscription creation",
            metadata={
                "subscription_id": subscription.get("id"),
                "customer_id": customer_id,
                "price_id": fields.get("price_id"),
            },
        ),
    )

    if result.applied and promotion:
        log_admin_action(
            sync.logs_table,
            user["pk"],
            "promotional_signup",
            target_email=user.get("email"),
            notes=f"User signed up with promotional code: {promotion['coupon_code']}",
            metadata={"subscription_id": subscription.get("id"), **promotion},
        )

    return _outcome(result, subscription_id=subscription.get("id"), promotion=bool(promotion))


def _handle_subscription_updated(sync: StatusSynchronizer, subscription: dict, created: int | None) -> dict:
    """Mirror the Stripe subscription status onto the user."""
    customer_id = subscription.get("customer")
    stripe_status = subscription.get("status")
    logger.info(f"Processing subscription updated: {subscription.get('id')} ({stripe_status})")

    user = _find_user(sync, customer_id, subscription.get("metadata"))
    if not user:
        return {"status": "user_not_found", "customer_id": customer_id}
    skipped = _skip_suspended(user, f"subscription update ({stripe_status})")
    if skipped:
        return skipped

    new_status, payment_status = map_subscription_status(stripe_status)

    # A paused subscription stays "active" in Stripe; the pause endpoint owns the user state
    if new_status == STATUS_PREMIUM and subscription.get("pause_collection"):
        logger.info(f"Subscription {subscription.get('id')} is paused, keeping {user['pk']} in {user.get('status')}")
        return {"status": "skipped", "reason": "subscription_paused", "user_id": user["pk"]}

    # The dunning timeline owns past_due -> grace_period; Stripe still reports past_due
    if new_status == STATUS_PAST_DUE and user.get("status") == STATUS_GRACE_PERIOD:
        logger.info(f"Keeping {user['pk']} in {user.get('status')} for past_due subscription update")
        return {"status": "skipped", "reason": "dunning_in_progress", "user_id": user["pk"]}

    fields = subscription_fields(subscription, "premium" if new_status == STATUS_PREMIUM else "free")
    existing_promotion = (user.get("subscription") or {}).get("signup_promotion")
    if existing_promotion:
        fields["signup_promotion"] = existing_promotion

    result = sync.apply_status(
        user["pk"],
        new_status,
        SyncContext(
            payment_status=payment_status,
            subscription=fields,
            stripe_customer_id=customer_id,
            event_created=created,
            action="subscription_updated",
            notes=f"Subscription status updated to {stripe_status}",
            metadata={
                "subscription_id": subscription.get("id"),
                "stripe_status": stripe_status,
                "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            },
        ),
    )
    return _outcome(result, stripe_status=stripe_status)


def _handle_subscription_deleted(sync: StatusSynchronizer, subscription: dict, created: int | None) -> dict:
    """Revert to free when the subscription ends."""
    customer_id = subscription.get("customer")
    logger.info(f"Processing subscription deleted: {subscription.get('id')} for customer: {customer_id}")

    user = _find_user(sync, customer_id, subscription.get("metadata"))
    if not user:
        return {"status": "user_not_found", "customer_id": customer_id}
    skipped = _skip_suspended(user, "subscription deletion")
    if skipped:
        return skipped

    result = sync.apply_status(
        user["pk"],
        STATUS_FREE,
        SyncContext(
            payment_status=PAYMENT_CANCELED,
            subscription={"tier": "free"},
            stripe_customer_id=customer_id,
            event_created=created,
            notification_template="subscription_cancelled",
            notification_data={"subscription_id": subscription.get("id")},
            action="subscription_cancelled",
            notes="Subscription cancelled via Stripe",
            metadata={
                "subscription_id": subscription.get("id"),
                "cancelled_at": datetime.now(timezone.utc).isoformat(),
            },
        ),
    )
    return _outcome(result, action="cancelled")


def _handle_payment_succeeded(sync: StatusSynchronizer, invoice: dict, created: int | None) -> dict:
    """Restore premium and clear any dunning state."""
    customer_id = invoice.get("customer")
    subscription_id = _invoice_subscription_id(invoice)
    logger.info(f"Processing payment succeeded for customer: {customer_id}, subscription: {subscription_id}")

    user = _find_user(sync, customer_id)
    if not user:
        return {"status": "user_not_found", "customer_id": customer_id}
    skipped = _skip_suspended(user, "successful payment")
    if skipped:
        return skipped

    was_recovering = user.get("status") in (STATUS_PAST_DUE, STATUS_GRACE_PERIOD)

    fields = dict(user.get("subscription") or {})
    fields["tier"] = "premium"
    if subscription_id:
        fields["stripe_subscription_id"] = subscription_id

    result = sync.apply_status(
        user["pk"],
        STATUS_PREMIUM,
        SyncContext(
            payment_status=PAYMENT_ACTIVE,
            subscription=fields,
            stripe_customer_id=customer_id,
            event_created=created,
            notification_template="payment_succeeded" if was_recovering else None,
            notification_data=_invoice_notification_data(invoice),
            action="payment_recovered" if was_recovering else "payment_succeeded",
            notes="Payment succeeded" + (" - access restored" if was_recovering else ""),
            metadata={"invoice_id": invoice.get("id"), "subscription_id": subscription_id},
        ),
    )
    return _outcome(result, recovered=was_recovering, invoice_id=invoice.get("id"))


def _handle_payment_failed(sync: StatusSynchronizer, invoice: dict, created: int | None) -> dict:
    """Advance the dunning timeline from the first failure of the cycle."""
    customer_id = invoice.get("customer")
    subscription_id = _invoice_subscription_id(invoice)
    logger.warning(
        f"Payment failed for customer {customer_id} (attempt {invoice.get('attempt_count', 1)})"
    )

    user = _find_user(sync, customer_id)
    if not user:
        return {"status": "user_not_found", "customer_id": customer_id}

    skipped = _skip_suspended(user, "payment failure")
    if skipped:
        return skipped
    current = user.get("status")

    now = datetime.now(timezone.utc)
    first_failure = user.get("payment_failed_at") or now.isoformat()
    days = days_since(first_failure, now)
    decision = evaluate(days, now)

    new_status = decision.status
    grace_period_end = decision.grace_period_end
    template = decision.template
    if current == STATUS_GRACE_PERIOD and user.get("grace_period_end"):
        # Later retries must not extend the window or repeat the final notice
        new_status = STATUS_GRACE_PERIOD
        grace_period_end = user["grace_period_end"]
        template = None

    notification_data = _invoice_notification_data(invoice)
    notification_data["days_since_failure"] = days
    if grace_period_end:
        notification_data["grace_period_end_date"] = str(
            grace_period_end.date() if isinstance(grace_period_end, datetime) else grace_period_end[:10]
        )

    result = sync.apply_status(
        user["pk"],
        new_status,
        SyncContext(
            payment_status=PAYMENT_PAST_DUE,
            payment_failed_at=first_failure,
            grace_period_end=grace_period_end,
            event_created=created,
            notification_template=template,
            notification_data=notification_data,
            action="payment_failed",
            notes=f"Payment failed - Day {days} of dunning process",
            metadata={
                "invoice_id": invoice.get("id"),
                "subscription_id": subscription_id,
                "days_since_failure": days,
                "notification_tier": decision.notification_tier,
                "grace_period_end": grace_period_end,
            },
        ),
    )
    return _outcome(
        result,
        days_since_failure=days,
        notification_tier=decision.notification_tier if template else None,
        invoice_id=invoice.get("id"),
    )


def _handle_customer_created(sync: StatusSynchronizer, customer: dict) -> dict:
    """Link a new Stripe customer to its user (by metadata user id or email)."""
    customer_id = customer.get("id")
    metadata = customer.get("metadata") or {}
    logger.info(f"Processing customer created: {customer_id}")

    user_id = link_customer(sync.users_table, customer_id, customer.get("email"), metadata.get("user_id"))
    return {"status": "success", "customer_id": customer_id, "user_id": user_id}


def _handle_checkout_completed(sync: StatusSynchronizer, session: dict) -> dict:
    """Link the checkout customer; the subscription events carry the status change."""
    customer_id = session.get("customer")
    if not customer_id:
        logger.warning(f"Checkout session {session.get('id')} has no customer")
        return {"status": "skipped", "reason": "no_customer"}

    email = session.get("customer_email") or (session.get("customer_details") or {}).get("email")
    user_id = link_customer(sync.users_table, customer_id, email, session.get("client_reference_id"))
    return {"status": "success", "customer_id": customer_id, "user_id": user_id}
