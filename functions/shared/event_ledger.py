"""
Idempotent ledger of processed Stripe webhook events.

One item per Stripe event id. The first invocation to claim an id wins via a
conditional put; redeliveries see the existing item and skip every side
effect. An invocation that dies between begin_processing() and a terminal
transition leaves the item in "processing" for good. Only "failed" items are
picked up by the admin replay.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from shared.constants import EVENT_TTL_DAYS, WEBHOOK_RETRY_BATCH_SIZE

logger = logging.getLogger(__name__)

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

# Keep the stored error short enough for the admin report
MAX_ERROR_LENGTH = 1000


class EventLedger:
    """Webhook event ledger backed by a DynamoDB table (pk = event id)."""

    def __init__(self, table):
        self.table = table

    def begin_processing(
        self, event_id: str, event_type: str, payload: Optional[str] = None
    ) -> dict:
        """
        Atomically claim an event id.

        Returns:
            {"already_processed": True} if any record for the id exists,
            otherwise {"already_processed": False} after writing a
            "processing" record.
        """
        now = datetime.now(timezone.utc)
        item = {
            "pk": event_id,
            "event_type": event_type,
            "status": STATUS_PROCESSING,
            "processed_at": now.isoformat(),
            "retry_count": 0,
            "ttl": int((now + timedelta(days=EVENT_TTL_DAYS)).timestamp()),
        }
        if payload is not None:
            item["payload"] = payload

        try:
            self.table.put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.info(f"Event {event_id} already recorded, skipping")
                return {"already_processed": True}
            raise
        return {"already_processed": False}

    def complete(self, event_id: str, result: Optional[dict] = None) -> None:
        self.table.update_item(
            Key={"pk": event_id},
            UpdateExpression="SET #status = :status, #result = :result, completed_at = :now REMOVE #error",
            ExpressionAttributeNames={
                "#status": "status",
                "#result": "result",
                "#error": "error",
            },
            ExpressionAttributeValues={
                ":status": STATUS_COMPLETED,
                ":result": json.dumps(result or {}, default=str),
                ":now": datetime.now(timezone.utc).isoformat(),
            },
        )

    def fail(self, event_id: str, error: str) -> None:
        """Mark an event failed. Best-effort: a ledger outage must not mask the original error."""
        try:
            self.table.update_item(
                Key={"pk": event_id},
                UpdateExpression="SET #status = :status, #error = :error, failed_at = :now",
                ExpressionAttributeNames={"#status": "status", "#error": "error"},
                ExpressionAttributeValues={
                    ":status": STATUS_FAILED,
                    ":error": str(error)[:MAX_ERROR_LENGTH],
                    ":now": datetime.now(timezone.utc).isoformat(),
                },
            )
        except ClientError as e:
            logger.error(f"Failed to mark event {event_id} as failed: {e}")

    def get(self, event_id: str) -> Optional[dict]:
        return self.table.get_item(Key={"pk": event_id}).get("Item")

    def get_payload(self, event_id: str) -> Optional[str]:
        item = self.get(event_id)
        return item.get("payload") if item else None

    def list_failed(self, limit: int = WEBHOOK_RETRY_BATCH_SIZE) -> list[dict]:
        """Oldest failed events first."""
        response = self.table.query(
            IndexName="status-index",
            KeyConditionExpression=Key("status").eq(STATUS_FAILED),
            Limit=limit,
        )
        return response.get("Items", [])

    def mark_retrying(self, event_id: str) -> bool:
        """
        Move a failed event back to processing for a replay.

        Returns False if the event is no longer failed (another replay got it).
        """
        try:
            self.table.update_item(
                Key={"pk": event_id},
                UpdateExpression="SET #status = :processing, retried_at = :now ADD retry_count :one",
                ConditionExpression="#status = :failed",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":processing": STATUS_PROCESSING,
                    ":failed": STATUS_FAILED,
                    ":now": datetime.now(timezone.utc).isoformat(),
                    ":one": 1,
                },
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise
        return True

    def count_since(self, since_iso: str) -> dict:
        """Count events per status received at or after since_iso."""
        counts = {}
        for status in (STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED):
            total = 0
            kwargs = {
                "IndexName": "status-index",
                "KeyConditionExpression": Key("status").eq(status)
                & Key("processed_at").gte(since_iso),
                "Select": "COUNT",
            }
            while True:
                response = self.table.query(**kwargs)
                total += response.get("Count", 0)
                if "LastEvaluatedKey" not in response:
                    break
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
            counts[status] = total
        counts["total"] = sum(counts.values())
        return counts
