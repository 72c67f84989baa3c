"""
Bearer-token authentication for the billing and admin endpoints.

Tokens are HMAC-SHA256 signed session tokens, "<base64 json>.<hex signature>",
carrying user_id, email and exp. The signing secret lives in Secrets Manager.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.errors import ForbiddenError, UnauthorizedError
from shared.users import get_user

logger = logging.getLogger(__name__)

# Cached session secret with TTL
_session_secret_cache = None
_session_secret_cache_time = 0.0
SESSION_SECRET_CACHE_TTL = 300  # 5 minutes - allows secret rotation to take effect


def _get_session_secret() -> str:
    """Retrieve session secret from Secrets Manager (cached with TTL)."""
    global _session_secret_cache, _session_secret_cache_time

    if _session_secret_cache and (time.time() - _session_secret_cache_time) < SESSION_SECRET_CACHE_TTL:
        return _session_secret_cache

    # Read at runtime to allow tests to set this env var
    session_secret_arn = os.environ.get("SESSION_SECRET_ARN")
    if not session_secret_arn:
        logger.error("SESSION_SECRET_ARN not configured")
        return ""

    try:
        response = get_secretsmanager().get_secret_value(SecretId=session_secret_arn)
        secret_string = response["SecretString"]
        try:
            secret_data = json.loads(secret_string)
            _session_secret_cache = secret_data.get("secret", secret_string)
        except json.JSONDecodeError:
            _session_secret_cache = secret_string

        _session_secret_cache_time = time.time()
        return _session_secret_cache
    except ClientError as e:
        logger.error(f"Failed to retrieve session secret: {e}")
        return ""


def clear_session_secret_cache() -> None:
    global _session_secret_cache, _session_secret_cache_time
    _session_secret_cache = None
    _session_secret_cache_time = 0.0


def create_session_token(data: dict, secret: str) -> str:
    """Create a signed session token."""
    payload = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
    signature = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"{payload}.{signature}"


def verify_session_token(token: str) -> Optional[dict]:
    """Verify a session token and return the data if valid."""
    session_secret = _get_session_secret()
    if not session_secret or not token or "." not in token:
        return None

    try:
        payload, signature = token.rsplit(".", 1)
        expected_sig = hmac.new(
            session_secret.encode(), payload.encode(), hashlib.sha256
        ).hexdigest()

        if not hmac.compare_digest(signature, expected_sig):
            return None

        data = json.loads(base64.urlsafe_b64decode(payload.encode()))

        if data.get("exp", 0) < datetime.now(timezone.utc).timestamp():
            return None

        return data

    except (ValueError, TypeError) as e:
        logger.debug(f"Malformed session token: {e}")
        return None


def get_bearer_token(event: dict) -> Optional[str]:
    headers = event.get("headers") or {}
    auth_header = headers.get("Authorization") or headers.get("authorization") or ""
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[len("Bearer "):].strip() or None


def authenticate(event: dict, users_table) -> dict:
    """
    Resolve the caller's user record from the bearer token.

    Raises:
        UnauthorizedError: token missing, invalid, expired or for an unknown user
    """
    token = get_bearer_token(event)
    if not token:
        raise UnauthorizedError("Missing bearer token")

    session = verify_session_token(token)
    if not session or not session.get("user_id"):
        raise UnauthorizedError("Invalid or expired token")

    user = get_user(users_table, session["user_id"])
    if not user:
        raise UnauthorizedError("User not found")
    return user


def require_admin(event: dict, users_table) -> dict:
    """Like authenticate(), but the caller must have is_admin set on their record."""
    user = authenticate(event, users_table)
    if not user.get("is_admin"):
        logger.warning(f"Non-admin user {user['pk']} attempted an admin action")
        raise ForbiddenError()
    return user
