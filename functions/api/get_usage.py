"""
Usage Endpoint - GET /usage

Returns today's chat usage, the daily limit for the caller's status and the
access level that goes with it.
"""

import logging

from shared.access_policy import (
    get_access,
    grace_days_remaining,
    is_auto_approved,
    is_in_good_standing,
    needs_manual_approval,
)
from shared.auth import authenticate
from shared.billing_api import check_method
from shared.errors import APIError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import error_response, get_origin, rate_limit_headers, success_response
from shared.usage import get_usage_status, get_usage_table
from shared.users import get_users_table

logger = logging.getLogger(__name__)


def handler(event, context):
    """
    Lambda handler for GET /usage.

    Returns current usage statistics and limits.
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    try:
        check_method(event, "GET")
        user = authenticate(event, get_users_table())
        status = user.get("status")
        usage = get_usage_status(get_usage_table(), user["pk"], status, user.get("timezone") or "UTC")

        return success_response(
            {
                "status": status,
                "access": get_access(status),
                "usage": usage,
                "grace_days_remaining": grace_days_remaining(user.get("grace_period_end")),
                "paused_until": user.get("paused_until"),
                "account": {
                    "good_standing": is_in_good_standing(user),
                    "auto_approved": is_auto_approved(user),
                    "awaiting_approval": needs_manual_approval(user),
                },
            },
            headers={
                "Cache-Control": "no-store, no-cache, must-revalidate",
                **rate_limit_headers(usage["daily_limit"], usage["remaining"]),
            },
            origin=origin,
        )
    except APIError as e:
        return e.to_response(origin)
    except Exception as e:
        logger.error(f"Error in get_usage handler: {e}")
        return error_response(500, "internal_error", "An error occurred processing your request", origin=origin)
