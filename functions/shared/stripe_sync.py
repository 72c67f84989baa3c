"""
Re-derive a user's status from their Stripe subscriptions.

Used by the admin endpoints when the user record has drifted from Stripe
(missed webhooks, changes made in the Stripe dashboard). The result is
applied through the status synchronizer like any other change.
"""

import logging
from typing import Optional

import stripe
from boto3.dynamodb.conditions import Attr

from shared.constants import (
    APPROVAL_PENDING,
    APPROVAL_STRIPE,
    PAYMENT_CANCELED,
    STATUS_FREE,
    STATUS_GRACE_PERIOD,
    STATUS_PAST_DUE,
    STATUS_PREMIUM,
    STATUS_SUSPENDED,
    SYSTEM_ACTOR,
    SYSTEM_ACTOR_EMAIL,
)
from shared.status_sync import (
    StatusSynchronizer,
    SyncContext,
    map_subscription_status,
    subscription_fields,
)

logger = logging.getLogger(__name__)

# Order of preference when a customer has several subscriptions
_PREFERRED_STATUSES = (("active", "trialing"), ("past_due",))


def pick_subscription(subscriptions: list[dict]) -> Optional[dict]:
    """The subscription that decides the user's status, or None."""
    for wanted in _PREFERRED_STATUSES:
        for subscription in subscriptions:
            if subscription.get("status") in wanted:
                return subscription
    return None


def derive_status(subscriptions: list[dict]) -> tuple[str, str, Optional[dict]]:
    """Return (user status, payment status, deciding subscription)."""
    subscription = pick_subscription(subscriptions)
    if not subscription:
        return STATUS_FREE, PAYMENT_CANCELED, None
    status, payment_status = map_subscription_status(subscription["status"])
    return status, payment_status, subscription


def list_customer_subscriptions(customer_id: str, limit: int = 10) -> list[dict]:
    response = stripe.Subscription.list(customer=customer_id, status="all", limit=limit)
    return list(response.get("data") or [])


def scan_billing_users(users_table, limit: Optional[int] = None, start_after: Optional[str] = None):
    """
    Users with a linked Stripe customer.

    Returns (items, cursor). The cursor is the pk to pass as start_after for
    the next page, or None once the table is exhausted.
    """
    items = []
    kwargs = {"FilterExpression": Attr("stripe_customer_id").exists()}
    if start_after:
        kwargs["ExclusiveStartKey"] = {"pk": start_after}

    while True:
        response = users_table.scan(**kwargs)
        for item in response.get("Items", []):
            items.append(item)
            if limit and len(items) >= limit:
                return items, item["pk"]
        if "LastEvaluatedKey" not in response:
            return items, None
        kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]


def sync_user_from_stripe(
    synchronizer: StatusSynchronizer,
    user: dict,
    customer_id: str,
    actor: str = SYSTEM_ACTOR,
    actor_email: str = SYSTEM_ACTOR_EMAIL,
    action: str = "sync_user_status",
    only_if_changed: bool = False,
) -> dict:
    """
    Apply the status Stripe implies for this customer to the user.

    A past_due subscription does not pull a user out of grace_period or
    suspended; the dunning timeline owns those states. A paused user stays
    in grace_period while Stripe still reports the pause.
    """
    subscriptions = list_customer_subscriptions(customer_id)
    new_status, payment_status, subscription = derive_status(subscriptions)
    old_status = user.get("status")
    current = user.get("subscription") or {}

    summary = {
        "user_id": user["pk"],
        "email": user.get("email"),
        "old_status": old_status,
        "new_status": new_status,
        "payment_status": payment_status,
        "changed": False,
        "stripe": {
            "customer_id": customer_id,
            "subscription_id": subscription.get("id") if subscription else None,
            "subscription_status": subscription.get("status") if subscription else None,
            "total_subscriptions": len(subscriptions),
        },
    }

    if new_status == STATUS_PAST_DUE and old_status in (STATUS_GRACE_PERIOD, STATUS_SUSPENDED):
        summary.update(new_status=old_status, reason="dunning_in_progress")
        return summary

    if user.get("paused_until") and subscription and subscription.get("pause_collection"):
        summary.update(new_status=old_status, reason="subscription_paused")
        return summary

    subscription_id = subscription.get("id") if subscription else current.get("stripe_subscription_id")
    if (
        only_if_changed
        and new_status == old_status
        and user.get("payment_status") == payment_status
        and subscription_id == current.get("stripe_subscription_id")
    ):
        summary["reason"] = "in_sync"
        return summary

    if subscription:
        fields = subscription_fields(subscription, "premium" if new_status == STATUS_PREMIUM else "free")
    else:
        fields = {"tier": "free"}
    if current.get("signup_promotion"):
        fields["signup_promotion"] = current["signup_promotion"]

    result = synchronizer.apply_status(
        user["pk"],
        new_status,
        SyncContext(
            payment_status=payment_status,
            approval_type=APPROVAL_STRIPE if subscription else APPROVAL_PENDING,
            subscription=fields,
            stripe_customer_id=customer_id,
            actor=actor,
            actor_email=actor_email,
            action=action,
            notes=f"Synced user status from Stripe: {old_status} -> {new_status}",
            metadata=summary["stripe"],
        ),
    )
    summary["changed"] = result.applied
    if not result.applied:
        summary["reason"] = result.reason
    logger.info(f"Stripe sync for {user['pk']}: {old_status} -> {new_status} (applied={result.applied})")
    return summary
