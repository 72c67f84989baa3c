"""
Daily Usage Reset - Scheduled Lambda

Triggered by EventBridge every day at 00:00 UTC. Zeroes the chat counters of
the previous day's usage records and lifts abuse blocks. Records whose local
day has not ended yet (users west of UTC) are left alone. Warnings are kept.

An explicit {"date": "YYYY-MM-DD"} in the event resets that date instead.
"""

import logging

from shared.logging_utils import configure_structured_logging, set_request_id
from shared.usage import get_usage_table, reset_daily_usage

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)

    target_date = (event or {}).get("date")
    result = reset_daily_usage(get_usage_table(), target_date)

    return {
        "statusCode": 200,
        "items_processed": result["reset"],
        "errors": result["errors"],
        "reset_date": result["date"],
    }
