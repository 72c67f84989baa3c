"""
Shared pytest fixtures for Steady Coach billing tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time
from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_API_KEY = "sk_test_123"
SESSION_SECRET = "test-session-secret"
SENDER = "billing@steadycoach.app"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    from shared.aws_clients import reset_clients

    reset_clients()


@pytest.fixture(autouse=True)
def reset_secret_caches():
    """Reset cached Stripe and session secrets between tests."""
    yield
    from shared.auth import clear_session_secret_cache
    from shared.billing_utils import clear_stripe_cache

    clear_session_secret_cache()
    clear_stripe_cache()


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    # Users table (pk = user id, plus CUSTOMER#<id> link records)
    dynamodb.create_table(
        TableName="steadycoach-users",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "email", "AttributeType": "S"},
            {"AttributeName": "stripe_customer_id", "AttributeType": "S"},
            {"AttributeName": "status", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "email-index",
                "KeySchema": [{"AttributeName": "email", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "stripe-customer-index",
                "KeySchema": [{"AttributeName": "stripe_customer_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "status-index",
                "KeySchema": [{"AttributeName": "status", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Webhook event ledger
    dynamodb.create_table(
        TableName="steadycoach-webhook-events",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "status", "AttributeType": "S"},
            {"AttributeName": "processed_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "status-index",
                "KeySchema": [
                    {"AttributeName": "status", "KeyType": "HASH"},
                    {"AttributeName": "processed_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Daily usage counters (sk = local date)
    dynamodb.create_table(
        TableName="steadycoach-usage",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "date", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "date-index",
                "KeySchema": [{"AttributeName": "date", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Audit log
    dynamodb.create_table(
        TableName="steadycoach-admin-logs",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Notification ledger / retry queue
    dynamodb.create_table(
        TableName="steadycoach-notifications",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "status", "AttributeType": "S"},
            {"AttributeName": "created_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "status-index",
                "KeySchema": [
                    {"AttributeName": "status", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def billing_env(mock_dynamodb, monkeypatch):
    """Tables plus a verified SES sender, a Cognito pool and the session secret.

    Returns a dict with the dynamodb resource, the cognito client and the pool id.
    """
    ses = boto3.client("ses", region_name="us-east-1")
    ses.verify_email_identity(EmailAddress=SENDER)

    cognito = boto3.client("cognito-idp", region_name="us-east-1")
    pool = cognito.create_user_pool(
        PoolName="steadycoach-users",
        Schema=[
            {"Name": "status", "AttributeDataType": "String", "Mutable": True},
            {"Name": "subscription_id", "AttributeDataType": "String", "Mutable": True},
            {"Name": "stripe_customer_id", "AttributeDataType": "String", "Mutable": True},
        ],
    )
    pool_id = pool["UserPool"]["Id"]
    monkeypatch.setenv("USER_POOL_ID", pool_id)

    secrets = boto3.client("secretsmanager", region_name="us-east-1")
    secret = secrets.create_secret(
        Name="steadycoach/session-secret",
        SecretString=json.dumps({"secret": SESSION_SECRET}),
    )
    monkeypatch.setenv("SESSION_SECRET_ARN", secret["ARN"])

    return {"dynamodb": mock_dynamodb, "cognito": cognito, "pool_id": pool_id}


@pytest.fixture
def stripe_configured():
    """Prime the Stripe secrets cache so handlers skip Secrets Manager."""
    import shared.billing_utils as billing_utils

    billing_utils._stripe_secrets_cache = (STRIPE_API_KEY, WEBHOOK_SECRET)
    billing_utils._stripe_secrets_cache_time = time.time()
    yield
    billing_utils.clear_stripe_cache()


def seed_user(env, user_id, email, status="free", **extra):
    """Put a user record and create the matching Cognito user."""
    item = {
        "pk": user_id,
        "email": email.lower(),
        "display_name": email.split("@")[0].title(),
        "status": status,
        "is_approved": status != "free",
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
    }
    item.update(extra)
    env["dynamodb"].Table("steadycoach-users").put_item(Item=item)
    env["cognito"].admin_create_user(
        UserPoolId=env["pool_id"],
        Username=user_id,
        UserAttributes=[{"Name": "email", "Value": email.lower()}],
    )
    return item


def get_claims(env, user_id):
    """Custom claims currently on the Cognito user."""
    user = env["cognito"].admin_get_user(UserPoolId=env["pool_id"], Username=user_id)
    return {
        attr["Name"]: attr["Value"]
        for attr in user["UserAttributes"]
        if attr["Name"].startswith("custom:")
    }


def auth_headers(user_id, email="user@example.com"):
    """Authorization header carrying a valid session token."""
    from shared.auth import create_session_token

    token = create_session_token(
        {
            "user_id": user_id,
            "email": email,
            "exp": int(datetime.now(timezone.utc).timestamp()) + 3600,
        },
        SESSION_SECRET,
    )
    return {"Authorization": f"Bearer {token}"}


def stripe_event(event_type, obj, event_id="evt_test_1", created=None):
    """A Stripe event envelope."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "data": {"object": obj},
    }


def signed_webhook_request(event, secret=WEBHOOK_SECRET, timestamp=None):
    """API Gateway event with a real Stripe-Signature header for the payload."""
    payload = json.dumps(event)
    timestamp = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(
        secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    return {
        "httpMethod": "POST",
        "headers": {"Stripe-Signature": f"t={timestamp},v1={signature}"},
        "body": payload,
        "isBase64Encoded": False,
        "requestContext": {"requestId": "test-request-id"},
    }


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "GET",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {"requestId": "test-request-id"},
    }
