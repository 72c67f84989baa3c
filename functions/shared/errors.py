"""
Standardized error responses for the billing API.
"""

from typing import Optional


class APIError(Exception):
    """Base class for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.retry_after: Optional[int] = None
        super().__init__(message)

    def to_response(self, origin: Optional[str] = None) -> dict:
        """Convert to API Gateway response format."""
        # Imported here so errors.py stays dependency-free for callers
        from shared.response_utils import error_response

        return error_response(
            self.status_code,
            self.code,
            self.message,
            details=self.details or None,
            retry_after=self.retry_after,
            origin=origin,
        )


class UnauthorizedError(APIError):
    """Raised when the bearer token is missing, malformed or expired."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(code="unauthorized", message=message, status_code=401)


class ForbiddenError(APIError):
    """Raised when an authenticated caller lacks the admin flag."""

    def __init__(self, message: str = "Admin access required"):
        super().__init__(code="forbidden", message=message, status_code=403)


class NotFoundError(APIError):
    """Raised when a user, customer or subscription cannot be found."""

    def __init__(self, message: str, code: str = "not_found"):
        super().__init__(code=code, message=message, status_code=404)


class MethodNotAllowedError(APIError):
    """Raised when an endpoint is called with the wrong HTTP method."""

    def __init__(self, method: str, allowed: str):
        super().__init__(
            code="method_not_allowed",
            message=f"Method {method} not allowed",
            status_code=405,
            details={"allowed": allowed},
        )


class InvalidRequestError(APIError):
    """Raised for general invalid request errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="invalid_request",
            message=message,
            status_code=400,
            details=details,
        )


class QuotaExceededError(APIError):
    """Raised when the daily chat quota is exhausted or chat is unavailable."""

    def __init__(
        self,
        message: str,
        usage: dict,
        upgrade_required: bool = False,
        retry_after: Optional[int] = None,
    ):
        super().__init__(
            code="quota_exceeded",
            message=message,
            status_code=429,
            details={"usage": usage, "upgrade_required": upgrade_required},
        )
        self.retry_after = retry_after

    def to_response(self, origin: Optional[str] = None) -> dict:
        response = super().to_response(origin)
        response["headers"]["X-RateLimit-Remaining"] = "0"
        return response
