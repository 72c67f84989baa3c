"""
Notification Retry - Scheduled Lambda

Triggered hourly by EventBridge. Resends failed billing emails that have
retries left (NOTIFICATION_MAX_RETRIES), NOTIFICATION_RETRY_BATCH_SIZE per run.
"""

import logging

from shared.logging_utils import configure_structured_logging, set_request_id
from shared.services import get_dispatcher

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)

    summary = get_dispatcher().retry_failed()
    return {"statusCode": 200, **summary}
