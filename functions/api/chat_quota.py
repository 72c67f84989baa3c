"""
Chat Quota Endpoint - POST /chat/quota

Called by the chat backend before each coach message. Counts the message if
the caller's status allows chat and quota remains, then runs the abuse check.
Returns 429 when the message is not allowed.
"""

import logging
from datetime import datetime, timezone

from shared.access_policy import parse_timestamp
from shared.auth import authenticate
from shared.billing_api import check_method
from shared.errors import APIError, QuotaExceededError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import error_response, get_origin, rate_limit_headers, success_response
from shared.usage import check_and_increment, detect_abuse, get_usage_table
from shared.users import get_users_table

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

_REJECTION_MESSAGES = {
    "chat_not_available": "Chat is not available on your current plan",
    "blocked": "Account temporarily blocked for abuse. Please contact support.",
    "daily_limit_reached": "Daily message limit reached",
}


def _seconds_until(reset_at: str, now: datetime) -> int:
    return max(0, int((parse_timestamp(reset_at) - now).total_seconds()))


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    try:
        check_method(event, "POST")
        user = authenticate(event, get_users_table())
        user_id = user["pk"]
        status = user.get("status")
        timezone_name = user.get("timezone") or "UTC"
        table = get_usage_table()

        now = datetime.now(timezone.utc)
        result = check_and_increment(table, user_id, status, timezone_name, now)
        if not result["allowed"]:
            upgrade_required = result["reason"] == "chat_not_available"
            raise QuotaExceededError(
                _REJECTION_MESSAGES.get(result["reason"], "Message not allowed"),
                usage=result,
                upgrade_required=upgrade_required,
                retry_after=None if upgrade_required else _seconds_until(result["reset_at"], now),
            )

        abuse = detect_abuse(table, user_id, status, timezone_name, now)
        return success_response(
            {**result, "abuse_warning": abuse["is_abusive"], "warnings": abuse["warnings"]},
            headers=rate_limit_headers(result["daily_limit"], result["remaining"]),
            origin=origin,
        )
    except APIError as e:
        return e.to_response(origin)
    except Exception as e:
        logger.error(f"Error in chat_quota handler: {e}", exc_info=True)
        return error_response(500, "internal_error", "An error occurred processing your request", origin=origin)
