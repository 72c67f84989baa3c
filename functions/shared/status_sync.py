"""
User status synchronizer.

Every status change (webhook, sweeper, billing endpoint, admin action) goes
through StatusSynchronizer.apply_status(), which runs these steps in order:

1. One conditional update_item on the user record. It is the source of
   truth, and it sets claims_pending so the claims push below is tracked
   as an outbox entry.
2. Push the claims (custom:status, custom:subscription_id,
   custom:stripe_customer_id) to the Cognito user pool, then clear
   claims_pending. A failure here propagates, but the flag stays set and
   scheduled.reconcile_claims pushes the claims later.
3. Send the notification (never raises).
4. Append an admin log entry.

Stripe events carry a monotonic "created" timestamp. When one is supplied,
step 1 only applies if it is not older than the last applied event for the
user, so out-of-order deliveries cannot roll the status back.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from botocore.exceptions import ClientError

from shared.constants import (
    PAYMENT_ACTIVE,
    PAYMENT_CANCELED,
    PAYMENT_INCOMPLETE,
    PAYMENT_PAST_DUE,
    STATUS_FREE,
    STATUS_GRACE_PERIOD,
    STATUS_PAST_DUE,
    STATUS_PREMIUM,
    SYSTEM_ACTOR,
    SYSTEM_ACTOR_EMAIL,
)
from shared.logging_utils import mask_email
from shared.metrics import emit_status_transition

logger = logging.getLogger(__name__)

# Stripe subscription.status -> (user status, payment status)
SUBSCRIPTION_STATUS_MAP = {
    "active": (STATUS_PREMIUM, PAYMENT_ACTIVE),
    "trialing": (STATUS_PREMIUM, PAYMENT_ACTIVE),
    "past_due": (STATUS_PAST_DUE, PAYMENT_PAST_DUE),
    "canceled": (STATUS_FREE, PAYMENT_CANCELED),
    "incomplete_expired": (STATUS_FREE, PAYMENT_CANCELED),
    "unpaid": (STATUS_FREE, PAYMENT_CANCELED),
}


def map_subscription_status(stripe_status: Optional[str]) -> tuple[str, str]:
    """Map a Stripe subscription status to (user status, payment status)."""
    return SUBSCRIPTION_STATUS_MAP.get(stripe_status, (STATUS_FREE, PAYMENT_INCOMPLETE))


def _first_price(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return {}
    return items[0].get("price") or {}


def extract_signup_promotion(subscription: dict) -> Optional[dict]:
    """Summarize the coupon a subscription was created with, if any."""
    discount = subscription.get("discount")
    if not discount:
        return None
    coupon = discount.get("coupon") or {}
    original_price = _first_price(subscription).get("unit_amount") or 0

    if coupon.get("amount_off"):
        discount_type = "amount_off"
        discount_amount = coupon["amount_off"]
        discounted_price = max(0, original_price - discount_amount)
    elif coupon.get("percent_off"):
        discount_type = "percent_off"
        discount_amount = Decimal(str(coupon["percent_off"]))
        discounted_price = int(
            (Decimal(original_price) * (100 - discount_amount) / 100).to_integral_value()
        )
    else:
        discount_type = "none"
        discount_amount = 0
        discounted_price = original_price

    return {
        "coupon_code": coupon.get("id", ""),
        "coupon_name": coupon.get("name") or "",
        "discount_type": discount_type,
        "discount_amount": discount_amount,
        "original_price": original_price,
        "discounted_price": discounted_price,
        "applied_at": datetime.now(timezone.utc).isoformat(),
    }


def subscription_fields(subscription: dict, tier: str) -> dict:
    """Subscription map stored on the user record."""
    fields = {
        "tier": tier,
        "stripe_subscription_id": subscription.get("id", ""),
    }
    price_id = _first_price(subscription).get("id")
    if price_id:
        fields["price_id"] = price_id
    return fields


def _to_dynamo(value):
    """Round-trip through JSON so floats become Decimals and datetimes strings."""
    return json.loads(json.dumps(value, default=str), parse_float=Decimal)


def log_admin_action(
    logs_table,
    user_id: str,
    action: str,
    *,
    actor: str = SYSTEM_ACTOR,
    actor_email: str = SYSTEM_ACTOR_EMAIL,
    target_email: Optional[str] = None,
    notes: str = "",
    metadata: Optional[dict] = None,
) -> dict:
    """Append an audit entry (pk = target user, sk = timestamp#id)."""
    now = datetime.now(timezone.utc).isoformat()
    item = {
        "pk": user_id,
        "sk": f"{now}#{uuid.uuid4().hex[:8]}",
        "actor": actor,
        "actor_email": actor_email,
        "action": action,
        "target_email": target_email or "",
        "notes": notes,
        "metadata": _to_dynamo(metadata or {}),
        "timestamp": now,
    }
    logs_table.put_item(Item=item)
    return item


@dataclass
class SyncContext:
    """Everything apply_status() needs besides the target status."""

    payment_status: Optional[str] = None
    approval_type: Optional[str] = None
    subscription: Optional[dict] = None
    stripe_customer_id: Optional[str] = None
    grace_period_end: Optional[datetime] = None
    clear_grace_period: bool = False
    paused_until: Optional[datetime] = None
    payment_failed_at: Optional[datetime] = None
    clear_payment_failed: bool = False
    event_created: Optional[int] = None
    expected_status: Optional[str] = None
    notification_template: Optional[str] = None
    notification_data: dict = field(default_factory=dict)
    actor: str = SYSTEM_ACTOR
    actor_email: str = SYSTEM_ACTOR_EMAIL
    action: str = "status_change"
    notes: str = ""
    metadata: dict = field(default_factory=dict)


@dataclass
class SyncResult:
    applied: bool
    user_id: str
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    claims_pushed: bool = False
    notified: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "applied": self.applied,
            "user_id": self.user_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "claims_pushed": self.claims_pushed,
            "notified": self.notified,
            "reason": self.reason,
        }


def _iso(value) -> str:
    return value.isoformat() if isinstance(value, datetime) else str(value)


class StatusSynchronizer:
    def __init__(self, users_table, logs_table, cognito, dispatcher, user_pool_id: str):
        self.users_table = users_table
        self.logs_table = logs_table
        self.cognito = cognito
        self.dispatcher = dispatcher
        self.user_pool_id = user_pool_id

    def apply_status(self, user_id: str, new_status: str, context: SyncContext) -> SyncResult:
        record = self._write_record(user_id, new_status, context)
        if record is None:
            existing = self.users_table.get_item(Key={"pk": user_id}).get("Item")
            if not existing:
                reason = "user_not_found"
            elif context.expected_status and existing.get("status") != context.expected_status:
                reason = "status_changed"
            else:
                reason = "stale_event"
            logger.info(f"Status {new_status} not applied to {user_id}: {reason}")
            return SyncResult(applied=False, user_id=user_id, new_status=new_status, reason=reason)

        old_status = record.get("previous_status")
        if old_status != new_status:
            emit_status_transition(old_status, new_status)
        logger.info(f"User {user_id} status {old_status} -> {new_status} ({context.action})")

        self.push_claims(record)

        notified = False
        if context.notification_template:
            data = {
                "user_name": record.get("display_name") or record.get("email"),
                **context.notification_data,
            }
            notified = self.dispatcher.send(record.get("email"), context.notification_template, data)

        log_admin_action(
            self.logs_table,
            user_id,
            context.action,
            actor=context.actor,
            actor_email=context.actor_email,
            target_email=record.get("email"),
            notes=context.notes,
            metadata={
                "old_status": old_status,
                "new_status": new_status,
                "payment_status": record.get("payment_status"),
                **context.metadata,
            },
        )

        return SyncResult(
            applied=True,
            user_id=user_id,
            old_status=old_status,
            new_status=new_status,
            claims_pushed=True,
            notified=notified,
        )

    def _write_record(self, user_id: str, new_status: str, context: SyncContext) -> Optional[dict]:
        """Step 1. Returns the updated record, or None if the condition failed."""
        now = datetime.now(timezone.utc).isoformat()
        set_parts = [
            "previous_status = if_not_exists(#status, :free)",
            "#status = :status",
            "is_approved = :approved",
            "claims_pending = :true",
            "updated_at = :now",
        ]
        remove_parts = []
        values = {
            ":status": new_status,
            ":free": STATUS_FREE,
            ":approved": new_status != STATUS_FREE,
            ":true": True,
            ":now": now,
        }

        if context.payment_status:
            set_parts.append("payment_status = :payment_status")
            values[":payment_status"] = context.payment_status
        if context.approval_type:
            set_parts.append("approval_type = :approval_type")
            values[":approval_type"] = context.approval_type
        if context.subscription is not None:
            set_parts.append("subscription = :subscription")
            values[":subscription"] = _to_dynamo(context.subscription)
        if context.stripe_customer_id:
            set_parts.append("stripe_customer_id = :customer_id")
            values[":customer_id"] = context.stripe_customer_id

        # Premium and free records carry no dunning state
        clears_dunning = new_status in (STATUS_PREMIUM, STATUS_FREE)
        if clears_dunning or context.clear_grace_period:
            remove_parts.append("grace_period_end")
        elif context.grace_period_end is not None:
            set_parts.append("grace_period_end = :grace_end")
            values[":grace_end"] = _iso(context.grace_period_end)
        if new_status != STATUS_GRACE_PERIOD or context.clear_grace_period:
            remove_parts.append("paused_until")
        elif context.paused_until is not None:
            set_parts.append("paused_until = :paused_until")
            values[":paused_until"] = _iso(context.paused_until)
        if clears_dunning or context.clear_payment_failed:
            remove_parts.append("payment_failed_at")
        elif context.payment_failed_at is not None:
            set_parts.append("payment_failed_at = :failed_at")
            values[":failed_at"] = _iso(context.payment_failed_at)

        condition = "attribute_exists(pk)"
        if context.expected_status:
            condition += " AND #status = :expected_status"
            values[":expected_status"] = context.expected_status
        if context.event_created is not None:
            set_parts.append("last_event_created = :created")
            values[":created"] = int(context.event_created)
            condition += (
                " AND (attribute_not_exists(last_event_created)"
                " OR last_event_created <= :created)"
            )

        expression = "SET " + ", ".join(set_parts)
        if remove_parts:
            expression += " REMOVE " + ", ".join(remove_parts)

        try:
            response = self.users_table.update_item(
                Key={"pk": user_id},
                UpdateExpression=expression,
                ConditionExpression=condition,
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return None
            raise
        return response["Attributes"]

    def push_claims(self, record: dict) -> None:
        """Step 2. Mirror the record into Cognito and clear the outbox flag."""
        user_id = record["pk"]
        subscription = record.get("subscription") or {}
        try:
            self.cognito.admin_update_user_attributes(
                UserPoolId=self.user_pool_id,
                Username=user_id,
                UserAttributes=[
                    {"Name": "custom:status", "Value": record.get("status", STATUS_FREE)},
                    {"Name": "custom:subscription_id", "Value": subscription.get("stripe_subscription_id", "")},
                    {"Name": "custom:stripe_customer_id", "Value": record.get("stripe_customer_id", "")},
                ],
            )
        except ClientError as e:
            logger.error(
                f"Claims push failed for {user_id} ({mask_email(record.get('email'))}), "
                f"left pending for reconcile: {e}"
            )
            raise

        try:
            # Only clear if no newer write has landed since this record was read
            self.users_table.update_item(
                Key={"pk": user_id},
                UpdateExpression="SET claims_pending = :false, claims_synced_at = :now",
                ConditionExpression="updated_at = :updated_at",
                ExpressionAttributeValues={
                    ":false": False,
                    ":now": datetime.now(timezone.utc).isoformat(),
                    ":updated_at": record.get("updated_at", ""),
                },
            )
        except ClientError as e:
            if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
                raise
            logger.info(f"Record for {user_id} changed during claims push, leaving flag set")
