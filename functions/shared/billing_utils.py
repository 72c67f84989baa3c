"""Shared billing utilities for Stripe-related operations."""

import json
import logging
import os
import time

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager

logger = logging.getLogger(__name__)

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")

# Premium price configured per environment
# Use `or` to handle empty string env vars (CDK fallback sets "" when not configured)
STRIPE_PRICE_PREMIUM = os.environ.get("STRIPE_PRICE_PREMIUM") or "price_premium"

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0
STRIPE_CACHE_TTL = 300  # 5 minutes


def _read_secret(arn: str, json_key: str) -> str | None:
    response = get_secretsmanager().get_secret_value(SecretId=arn)
    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
        return secret_json.get(json_key) or secret_value
    except json.JSONDecodeError:
        return secret_value


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Retrieve Stripe API key and webhook secret from Secrets Manager (cached with TTL)."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = None
    webhook_secret = None

    if STRIPE_SECRET_ARN:
        try:
            api_key = _read_secret(STRIPE_SECRET_ARN, "key")
        except ClientError as e:
            logger.error(f"Failed to retrieve Stripe API key: {e}")

    if STRIPE_WEBHOOK_SECRET_ARN:
        try:
            webhook_secret = _read_secret(STRIPE_WEBHOOK_SECRET_ARN, "secret")
        except ClientError as e:
            logger.error(f"Failed to retrieve Stripe webhook secret: {e}")

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def get_stripe_api_key() -> str | None:
    return get_stripe_secrets()[0]


def clear_stripe_cache() -> None:
    global _stripe_secrets_cache, _stripe_secrets_cache_time
    _stripe_secrets_cache = (None, None)
    _stripe_secrets_cache_time = 0.0
