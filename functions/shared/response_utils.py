"""
Lambda proxy responses for the billing API.

Every response is JSON with CORS headers for the Steady Coach web origins.
Error bodies have the shape {"error": {"code", "message", "details"?}}.
"""

import json
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional

_PROD_ORIGINS = [
    "https://steadycoach.app",
    "https://premium.steadycoach.app",
]
_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
]
ALLOWED_ORIGINS: List[str] = (
    _PROD_ORIGINS + _DEV_ORIGINS
    if os.environ.get("ALLOW_DEV_CORS") == "true"
    else _PROD_ORIGINS
)


def get_origin(event: dict) -> Optional[str]:
    headers = event.get("headers") or {}
    return headers.get("origin") or headers.get("Origin")


def get_cors_headers(origin: Optional[str]) -> Dict[str, str]:
    """CORS headers for an allowed origin, {} for anything else."""
    if not origin or origin not in ALLOWED_ORIGINS:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Allow-Credentials": "true",
    }


def rate_limit_headers(limit: int, remaining: int) -> Dict[str, str]:
    """X-RateLimit headers for the chat quota endpoints."""
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(max(0, remaining)),
    }


def decimal_default(obj: Any) -> Any:
    """json.dumps default for DynamoDB values (Decimal numbers, string sets)."""
    if isinstance(obj, Decimal):
        return int(obj) if obj % 1 == 0 else float(obj)
    if isinstance(obj, set):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def _response(status_code: int, body: Any, origin: Optional[str], headers: Optional[dict]) -> dict:
    response_headers = {"Content-Type": "application/json"}
    response_headers.update(get_cors_headers(origin))
    if headers:
        response_headers.update(headers)
    return {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body, default=decimal_default),
    }


def json_response(status_code: int, body: dict, headers: Optional[dict] = None) -> dict:
    """Plain JSON response without CORS (server-to-server callers such as Stripe)."""
    return _response(status_code, body, None, headers)


def error_response(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    details: Optional[Dict[str, Any]] = None,
    retry_after: Optional[int] = None,
    origin: Optional[str] = None,
) -> dict:
    """
    Create an error response.

    Args:
        status_code: HTTP status code
        code: Machine-readable error code (snake_case)
        message: Human-readable error message
        headers: Additional response headers
        details: Optional additional error details
        retry_after: Optional Retry-After header value in seconds
        origin: Request Origin header for CORS
    """
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details

    extra = dict(headers or {})
    if retry_after is not None:
        extra["Retry-After"] = str(retry_after)
    return _response(status_code, {"error": error}, origin, extra)


def success_response(
    data: Any,
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
    origin: Optional[str] = None,
) -> dict:
    return _response(status_code, data, origin, headers)


def preflight_response(origin: Optional[str]) -> dict:
    """Empty 204 response for CORS preflight (OPTIONS) requests."""
    return {
        "statusCode": 204,
        "headers": get_cors_headers(origin),
        "body": "",
    }
