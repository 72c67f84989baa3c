"""User record lookups (users table, pk = user id)."""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb

logger = logging.getLogger(__name__)

USERS_TABLE = os.environ.get("USERS_TABLE", "steadycoach-users")

# Stripe customers seen before their user record was linked
CUSTOMER_LINK_PREFIX = "CUSTOMER#"


def get_users_table():
    return get_dynamodb().Table(USERS_TABLE)


def get_user(table, user_id: str) -> Optional[dict]:
    if not user_id:
        return None
    return table.get_item(Key={"pk": user_id}).get("Item")


def find_user_by_email(table, email: str) -> Optional[dict]:
    """Look up a user by email using the email GSI."""
    if not email:
        return None
    response = table.query(
        IndexName="email-index",
        KeyConditionExpression=Key("email").eq(email.lower()),
        Limit=1,
    )
    items = response.get("Items", [])
    return items[0] if items else None


def find_user_by_customer_id(table, customer_id: str) -> Optional[dict]:
    """
    Look up a user by Stripe customer id.

    Tries the stripe-customer GSI first, then a customer link record written
    by customer.created before the user had a customer id on file.
    """
    if not customer_id:
        return None

    response = table.query(
        IndexName="stripe-customer-index",
        KeyConditionExpression=Key("stripe_customer_id").eq(customer_id),
        Limit=1,
    )
    items = response.get("Items", [])
    if items:
        return items[0]

    link = table.get_item(Key={"pk": f"{CUSTOMER_LINK_PREFIX}{customer_id}"}).get("Item")
    if not link:
        return None

    user = get_user(table, link.get("linked_user_id")) or find_user_by_email(
        table, link.get("customer_email")
    )
    if user:
        # Backfill so the GSI finds the user next time
        set_customer_id(table, user["pk"], customer_id)
        user["stripe_customer_id"] = customer_id
    return user


def set_customer_id(table, user_id: str, customer_id: str) -> None:
    try:
        table.update_item(
            Key={"pk": user_id},
            UpdateExpression="SET stripe_customer_id = :cust, updated_at = :now",
            ConditionExpression="attribute_exists(pk)",
            ExpressionAttributeValues={
                ":cust": customer_id,
                ":now": datetime.now(timezone.utc).isoformat(),
            },
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            logger.warning(f"Cannot link customer {customer_id}: user {user_id} not found")
            return
        raise


def link_customer(
    table, customer_id: str, email: Optional[str], user_id: Optional[str] = None
) -> Optional[str]:
    """
    Associate a Stripe customer with a user.

    Links directly when the user can be resolved (explicit id or email),
    otherwise stores a link record for find_user_by_customer_id().

    Returns:
        The linked user id, or None if only a link record was written.
    """
    user = get_user(table, user_id) if user_id else None
    if not user and email:
        user = find_user_by_email(table, email)

    if user:
        set_customer_id(table, user["pk"], customer_id)
        logger.info(f"Linked Stripe customer {customer_id} to user {user['pk']}")
        return user["pk"]

    table.put_item(
        Item={
            "pk": f"{CUSTOMER_LINK_PREFIX}{customer_id}",
            "record_type": "customer_link",
            "customer_email": (email or "").lower(),
            "linked_user_id": user_id or "",
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
    )
    logger.info(f"Stored customer link for {customer_id} (no matching user yet)")
    return None
