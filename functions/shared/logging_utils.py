"""
Structured JSON logging for CloudWatch Logs Insights.

Handlers call configure_structured_logging() and set_request_id(event)
first; every log line then carries the request id and Lambda name, plus
any fields passed through extra=.
"""

import json
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Optional

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    )
)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(""),
            "function_name": os.environ.get("AWS_LAMBDA_FUNCTION_NAME", ""),
        }
        entry.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_structured_logging(level: int = logging.INFO) -> logging.Logger:
    """Replace the root handlers with a single JSON stream handler."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)

    stream = logging.StreamHandler()
    stream.setFormatter(StructuredFormatter())
    root_logger.addHandler(stream)
    return root_logger


def set_request_id(event: Optional[dict]) -> str:
    """
    Pick the correlation id for this invocation and store it in context.

    Order: API Gateway requestContext.requestId, an X-Request-Id header,
    the EventBridge event id for scheduled runs, else a fresh uuid4.
    """
    event = event or {}
    headers = event.get("headers") or {}
    request_id = (
        (event.get("requestContext") or {}).get("requestId")
        or headers.get("x-request-id")
        or headers.get("X-Request-Id")
        or (event.get("id") if event.get("source") == "aws.events" else None)
        or str(uuid.uuid4())
    )
    request_id_var.set(request_id)
    return request_id


def mask_email(email: Optional[str]) -> str:
    """Keep the first 3 characters of an address for log lines."""
    if not email:
        return "unknown"
    return f"{email[:3]}***"


def log_api_request(
    logger: logging.Logger,
    method: str,
    path: str,
    status_code: int,
    latency_ms: float,
    user_id: Optional[str] = None,
) -> None:
    logger.info(
        f"{method} {path} -> {status_code}",
        extra={
            "http_method": method,
            "path": path,
            "status_code": status_code,
            "latency_ms": latency_ms,
            "user_id": user_id or "anonymous",
        },
    )


def log_external_call(
    logger: logging.Logger,
    service: str,
    operation: str,
    success: bool,
    latency_ms: float,
    error: Optional[str] = None,
) -> None:
    """Log a Stripe, SES or Cognito call; failures at WARNING."""
    logger.log(
        logging.INFO if success else logging.WARNING,
        f"External call to {service}: {operation} -> {'success' if success else 'failed'}",
        extra={
            "service": service,
            "operation": operation,
            "success": success,
            "latency_ms": latency_ms,
            "error": error,
        },
    )
