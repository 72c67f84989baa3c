"""
Notification dispatcher.

Sends billing emails through SES and records every attempt in the
notifications table. Delivery failures are written as retryable "failed"
items and never raised to the caller, so a broken mail path cannot block
the status change that triggered it. The hourly retry job resends them.
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Attr, Key

from shared.constants import NOTIFICATION_MAX_RETRIES, NOTIFICATION_RETRY_BATCH_SIZE
from shared.email_templates import render
from shared.logging_utils import log_external_call, mask_email
from shared.metrics import emit_notification_metric

logger = logging.getLogger(__name__)

STATUS_SENT = "sent"
STATUS_FAILED = "failed"


class NotificationDispatcher:
    def __init__(self, ses, table, sender: str):
        self.ses = ses
        self.table = table
        self.sender = sender

    def _deliver(self, recipient: str, content: dict) -> None:
        start = time.time()
        try:
            self.ses.send_email(
                Source=self.sender,
                Destination={"ToAddresses": [recipient]},
                Message={
                    "Subject": {"Data": content["subject"], "Charset": "UTF-8"},
                    "Body": {
                        "Html": {"Data": content["html"], "Charset": "UTF-8"},
                        "Text": {"Data": content["text"], "Charset": "UTF-8"},
                    },
                },
            )
        except Exception as e:
            log_external_call(logger, "ses", "send_email", False, (time.time() - start) * 1000, str(e))
            raise
        log_external_call(logger, "ses", "send_email", True, (time.time() - start) * 1000)

    def send(self, recipient: Optional[str], template: str, data: Optional[dict] = None) -> bool:
        """
        Render and send a notification.

        Returns:
            True if SES accepted the message, False otherwise. Never raises.
        """
        data = data or {}
        now = datetime.now(timezone.utc).isoformat()
        item = {
            "pk": str(uuid.uuid4()),
            "recipient": recipient or "",
            "template": template,
            "template_data": json.dumps(data, default=str),
            "retry_count": 0,
            "created_at": now,
        }

        try:
            if not recipient:
                raise ValueError("No recipient address")
            content = render(template, data)
            item["subject"] = content["subject"]
            self._deliver(recipient, content)
        except Exception as e:
            logger.error(f"Failed to send {template} to {mask_email(recipient)}: {e}")
            item.update({"status": STATUS_FAILED, "failed_at": now, "last_error": str(e)[:500]})
            self._record(item)
            emit_notification_metric(template, delivered=False)
            return False

        item.update({"status": STATUS_SENT, "sent_at": now})
        self._record(item)
        emit_notification_metric(template, delivered=True)
        logger.info(f"Sent {template} notification to {mask_email(recipient)}")
        return True

    def _record(self, item: dict) -> None:
        try:
            self.table.put_item(Item=item)
        except Exception as e:
            logger.error(f"Failed to record notification {item['pk']}: {e}")

    def _pending_retries(self, max_retries: int, batch_size: int) -> list[dict]:
        items = []
        kwargs = {
            "IndexName": "status-index",
            "KeyConditionExpression": Key("status").eq(STATUS_FAILED),
            "FilterExpression": Attr("retry_count").lt(max_retries),
        }
        while len(items) < batch_size:
            response = self.table.query(**kwargs)
            items.extend(response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                break
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        return items[:batch_size]

    def retry_failed(
        self,
        max_retries: int = NOTIFICATION_MAX_RETRIES,
        batch_size: int = NOTIFICATION_RETRY_BATCH_SIZE,
    ) -> dict:
        """
        Resend failed notifications that still have retries left.

        Returns:
            {"processed", "succeeded", "failed"} counts for this run
        """
        summary = {"processed": 0, "succeeded": 0, "failed": 0}

        for item in self._pending_retries(max_retries, batch_size):
            summary["processed"] += 1
            now = datetime.now(timezone.utc).isoformat()
            try:
                data = json.loads(item.get("template_data") or "{}")
                if not item.get("recipient"):
                    raise ValueError("No recipient address")
                self._deliver(item["recipient"], render(item["template"], data))
            except Exception as e:
                summary["failed"] += 1
                logger.warning(f"Retry of notification {item['pk']} failed: {e}")
                self.table.update_item(
                    Key={"pk": item["pk"]},
                    UpdateExpression="SET last_error = :err, failed_at = :now ADD retry_count :one",
                    ExpressionAttributeValues={":err": str(e)[:500], ":now": now, ":one": 1},
                )
                continue

            summary["succeeded"] += 1
            self.table.update_item(
                Key={"pk": item["pk"]},
                UpdateExpression="SET #status = :sent, sent_at = :now REMOVE last_error",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={":sent": STATUS_SENT, ":now": now},
            )
            emit_notification_metric(item["template"], delivered=True)

        logger.info(
            f"Notification retry complete: {summary['succeeded']}/{summary['processed']} delivered"
        )
        return summary

    def delivery_stats(self, since_iso: str) -> dict:
        """Sent/failed counts for notifications created at or after since_iso."""
        stats = {}
        for status in (STATUS_SENT, STATUS_FAILED):
            total = 0
            kwargs = {
                "IndexName": "status-index",
                "KeyConditionExpression": Key("status").eq(status)
                & Key("created_at").gte(since_iso),
                "Select": "COUNT",
            }
            while True:
                response = self.table.query(**kwargs)
                total += response.get("Count", 0)
                if "LastEvaluatedKey" not in response:
                    break
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
            stats[status] = total
        stats["total"] = stats[STATUS_SENT] + stats[STATUS_FAILED]
        return stats
