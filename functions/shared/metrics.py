"""
CloudWatch metrics for the billing Lambdas.

Metric emission never raises: a CloudWatch failure is logged and the
caller carries on.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "SteadyCoach/Billing")

# CloudWatch accepts at most 20 data points per PutMetricData call
_MAX_BATCH = 20


def _datum(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> dict:
    data = {
        "MetricName": metric_name,
        "Value": value,
        "Unit": unit,
        "Timestamp": datetime.now(timezone.utc),
    }
    if dimensions:
        data["Dimensions"] = [{"Name": k, "Value": v} for k, v in dimensions.items()]
    return data


def emit_metric(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> None:
    """
    Emit a single metric.

    Example:
        emit_metric("WebhookProcessed", dimensions={"EventType": "invoice.payment_failed"})
        emit_metric("GraceSweepSuspended", 3)
    """
    try:
        get_cloudwatch().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[_datum(metric_name, value, unit, dimensions)],
        )
        logger.debug(f"Emitted metric: {metric_name}={value} {unit}", extra={"dimensions": dimensions})
    except Exception as e:
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def emit_batch_metrics(metrics: list[Dict[str, Any]]) -> None:
    """
    Emit several metrics, 20 per API call.

    Each entry has metric_name and optionally value, unit and dimensions.
    """
    try:
        metric_data = [
            _datum(
                metric["metric_name"],
                metric.get("value", 1.0),
                metric.get("unit", "Count"),
                metric.get("dimensions"),
            )
            for metric in metrics
        ]
        for i in range(0, len(metric_data), _MAX_BATCH):
            get_cloudwatch().put_metric_data(
                Namespace=NAMESPACE,
                MetricData=metric_data[i : i + _MAX_BATCH],
            )
        logger.debug(f"Emitted {len(metric_data)} metrics in batch")
    except Exception as e:
        logger.warning(f"Failed to emit batch metrics: {e}")


def emit_status_transition(old_status: Optional[str], new_status: str) -> None:
    emit_metric("StatusTransition", dimensions={"From": old_status or "unknown", "To": new_status})


def emit_webhook_metric(event_type: str, outcome: str) -> None:
    """Outcome is one of completed, failed, duplicate, invalid_signature."""
    emit_metric("WebhookProcessed", dimensions={"EventType": event_type[:64], "Outcome": outcome})


def emit_notification_metric(template: str, delivered: bool) -> None:
    emit_metric(
        "NotificationDelivery",
        dimensions={"Template": template, "Delivered": "true" if delivered else "false"},
    )
