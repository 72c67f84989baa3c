"""
Tests for structured logging utilities module.

Tests cover JSON formatting, request ID correlation for API Gateway and
scheduled events, email masking and the standard log helpers.
"""

import json
import logging
import uuid
from unittest.mock import patch

from shared.logging_utils import (
    StructuredFormatter,
    configure_structured_logging,
    log_api_request,
    log_external_call,
    mask_email,
    request_id_var,
    set_request_id,
)


def _record(msg="Test message", level=logging.INFO, args=(), exc_info=None):
    return logging.LogRecord(
        name="shared.status_sync",
        level=level,
        pathname="status_sync.py",
        lineno=10,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


class TestStructuredFormatter:
    """Tests for StructuredFormatter class."""

    def test_format_includes_required_fields(self):
        request_id_var.set("req-123")
        with patch.dict("os.environ", {"AWS_LAMBDA_FUNCTION_NAME": "steadycoach-stripe-webhook"}):
            parsed = json.loads(StructuredFormatter().format(_record(level=logging.WARNING)))

        assert parsed["level"] == "WARNING"
        assert parsed["logger"] == "shared.status_sync"
        assert parsed["message"] == "Test message"
        assert parsed["request_id"] == "req-123"
        assert parsed["function_name"] == "steadycoach-stripe-webhook"
        assert "timestamp" in parsed

    def test_format_includes_extra_fields_only(self):
        record = _record()
        record.user_id = "user_1"
        record.status_code = 200

        parsed = json.loads(StructuredFormatter().format(record))

        assert parsed["user_id"] == "user_1"
        assert parsed["status_code"] == 200
        assert "pathname" not in parsed
        assert "lineno" not in parsed

    def test_format_includes_exception_info(self):
        try:
            raise ValueError("Cognito throttled")
        except ValueError:
            import sys

            record = _record(msg="Push failed", level=logging.ERROR, exc_info=sys.exc_info())

        parsed = json.loads(StructuredFormatter().format(record))

        assert "ValueError: Cognito throttled" in parsed["exception"]

    def test_format_handles_non_serializable_extra(self):
        record = _record(msg="Status %s -> %s", args=("premium", "past_due"))
        record.user = object()

        parsed = json.loads(StructuredFormatter().format(record))

        assert parsed["message"] == "Status premium -> past_due"
        assert parsed["user"].startswith("<object object")


class TestConfigureStructuredLogging:
    """Tests for configure_structured_logging function."""

    def test_replaces_handlers_with_structured_one(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())
        root.addHandler(logging.StreamHandler())

        result = configure_structured_logging(logging.DEBUG)

        assert result is root
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_default_level_is_info(self):
        assert configure_structured_logging().level == logging.INFO


class TestSetRequestId:
    """Tests for set_request_id function."""

    def test_extracts_api_gateway_request_id(self):
        event = {"requestContext": {"requestId": "api-gw-id"}, "headers": {"x-request-id": "header-id"}}

        assert set_request_id(event) == "api-gw-id"
        assert request_id_var.get() == "api-gw-id"

    def test_extracts_x_request_id_header(self):
        assert set_request_id({"headers": {"X-Request-Id": "header-id"}}) == "header-id"

    def test_scheduled_event_uses_event_id(self):
        event = {"source": "aws.events", "id": "eventbridge-id", "detail-type": "Scheduled Event"}

        assert set_request_id(event) == "eventbridge-id"

    def test_generates_uuid_when_no_id_found(self):
        request_id = set_request_id({"headers": None})

        uuid.UUID(request_id)

    def test_handles_none_event(self):
        assert set_request_id(None)


class TestMaskEmail:
    """Tests for mask_email function."""

    def test_keeps_first_three_characters(self):
        assert mask_email("someone@example.com") == "som***"

    def test_missing_email(self):
        assert mask_email(None) == "unknown"
        assert mask_email("") == "unknown"


class TestLogHelpers:
    """Tests for log_api_request and log_external_call."""

    def test_api_request_fields(self, caplog):
        logger = logging.getLogger("test.api")
        with caplog.at_level(logging.INFO, logger="test.api"):
            log_api_request(logger, "POST", "/billing/pause", 200, 42.5, "user_1")

        record = caplog.records[0]
        assert record.getMessage() == "POST /billing/pause -> 200"
        assert record.latency_ms == 42.5
        assert record.user_id == "user_1"

    def test_api_request_anonymous(self, caplog):
        logger = logging.getLogger("test.api")
        with caplog.at_level(logging.INFO, logger="test.api"):
            log_api_request(logger, "POST", "/webhooks/stripe", 400, 1.0)

        assert caplog.records[0].user_id == "anonymous"

    def test_failed_external_call_is_warning(self, caplog):
        logger = logging.getLogger("test.external")
        with caplog.at_level(logging.INFO, logger="test.external"):
            log_external_call(logger, "ses", "send_email", False, 12.0, "MessageRejected")

        record = caplog.records[0]
        assert record.levelno == logging.WARNING
        assert record.getMessage() == "External call to ses: send_email -> failed"
        assert record.error == "MessageRejected"

    def test_successful_external_call_is_info(self, caplog):
        logger = logging.getLogger("test.external")
        with caplog.at_level(logging.INFO, logger="test.external"):
            log_external_call(logger, "cognito", "admin_update_user_attributes", True, 8.0)

        assert caplog.records[0].levelno == logging.INFO
        assert caplog.records[0].error is None
