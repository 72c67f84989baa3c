"""
Claims Reconciliation - Scheduled Lambda

Triggered hourly by EventBridge. The user record is the source of truth for
Cognito claims; a record left with claims_pending = true had its claims push
fail (or the invocation died before it ran). This job re-pushes the claims
from the current record and clears the flag.
"""

import logging

from boto3.dynamodb.conditions import Attr

from shared.logging_utils import configure_structured_logging, set_request_id
from shared.services import get_synchronizer
from shared.status_sync import StatusSynchronizer

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def reconcile_pending_claims(synchronizer: StatusSynchronizer) -> dict:
    table = synchronizer.users_table
    reconciled = 0
    errors = 0

    scan_kwargs = {"FilterExpression": Attr("claims_pending").eq(True)}
    while True:
        response = table.scan(**scan_kwargs)
        for record in response.get("Items", []):
            try:
                synchronizer.push_claims(record)
                reconciled += 1
            except Exception as e:
                errors += 1
                logger.error(f"Error reconciling claims for {record['pk']}: {e}")

        if "LastEvaluatedKey" not in response:
            break
        scan_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

    logger.info(f"Claims reconciliation complete: {reconciled} pushed, {errors} errors")
    return {"reconciled": reconciled, "errors": errors}


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    return {"statusCode": 200, **reconcile_pending_claims(get_synchronizer())}
