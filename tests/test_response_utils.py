"""
Tests for response utilities module.

Tests cover CORS headers, JSON serialization, and response formatting helpers.
"""

import json
from decimal import Decimal

import pytest

from shared.errors import MethodNotAllowedError, NotFoundError, QuotaExceededError
from shared.response_utils import (
    decimal_default,
    error_response,
    get_cors_headers,
    get_origin,
    json_response,
    preflight_response,
    success_response,
)


class TestGetCorsHeaders:
    """Tests for get_cors_headers function."""

    def test_returns_cors_headers_for_allowed_origin(self):
        headers = get_cors_headers("https://steadycoach.app")

        assert headers["Access-Control-Allow-Origin"] == "https://steadycoach.app"
        assert "Authorization" in headers["Access-Control-Allow-Headers"]

    @pytest.mark.parametrize("origin", ["https://evil.example.com", None, "http://localhost:3000"])
    def test_returns_empty_dict_for_disallowed_origin(self, origin):
        assert get_cors_headers(origin) == {}

    def test_get_origin_reads_either_case(self):
        assert get_origin({"headers": {"origin": "https://steadycoach.app"}}) == "https://steadycoach.app"
        assert get_origin({"headers": {"Origin": "https://steadycoach.app"}}) == "https://steadycoach.app"
        assert get_origin({"headers": None}) is None


class TestDecimalDefault:
    """Tests for decimal_default function."""

    def test_converts_decimals(self):
        assert decimal_default(Decimal("20")) == 20
        assert isinstance(decimal_default(Decimal("20")), int)
        assert decimal_default(Decimal("12.5")) == 12.5

    def test_converts_sets(self):
        assert decimal_default({"b", "a"}) == ["a", "b"]

    def test_raises_type_error_for_other_types(self):
        with pytest.raises(TypeError):
            decimal_default(object())


class TestResponses:
    """Tests for json_response, error_response, success_response and preflight_response."""

    def test_json_response_serializes_decimals(self):
        response = json_response(200, {"received": True, "count": Decimal("3")})

        assert response["statusCode"] == 200
        assert json.loads(response["body"]) == {"received": True, "count": 3}

    def test_error_response_shape(self):
        response = error_response(
            429, "quota_exceeded", "Daily message limit reached",
            details={"remaining": 0}, retry_after=3600, origin="https://steadycoach.app",
        )

        assert response["headers"]["Retry-After"] == "3600"
        assert response["headers"]["Access-Control-Allow-Origin"] == "https://steadycoach.app"
        assert json.loads(response["body"]) == {
            "error": {"code": "quota_exceeded", "message": "Daily message limit reached",
                      "details": {"remaining": 0}}
        }

    def test_success_response_custom_status_and_headers(self):
        response = success_response({"ok": True}, status_code=201, headers={"X-RateLimit-Remaining": "5"})

        assert response["statusCode"] == 201
        assert response["headers"]["X-RateLimit-Remaining"] == "5"
        assert "Access-Control-Allow-Origin" not in response["headers"]

    def test_preflight_response(self):
        response = preflight_response("https://premium.steadycoach.app")

        assert response["statusCode"] == 204
        assert response["body"] == ""
        assert response["headers"]["Access-Control-Allow-Methods"] == "GET, POST, OPTIONS"


class TestAPIErrors:
    """Tests for APIError.to_response()."""

    def test_not_found_with_custom_code(self):
        response = NotFoundError("No subscription found", code="no_subscription").to_response()

        assert response["statusCode"] == 404
        assert json.loads(response["body"])["error"]["code"] == "no_subscription"

    def test_method_not_allowed_details(self):
        body = json.loads(MethodNotAllowedError("GET", "POST").to_response()["body"])

        assert body["error"]["details"] == {"allowed": "POST"}

    def test_quota_exceeded_sets_remaining_header(self):
        response = QuotaExceededError("Daily message limit reached", usage={"remaining": 0}).to_response()

        assert response["statusCode"] == 429
        assert response["headers"]["X-RateLimit-Remaining"] == "0"
        assert json.loads(response["body"])["error"]["details"]["upgrade_required"] is False
