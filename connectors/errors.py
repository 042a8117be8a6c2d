"""
Error taxonomy for the integration framework.

Every error carries a machine-readable ``code``, the HTTP status the API
layer should answer with, and whether the caller may retry.  Errors bubble
up unmodified; ``api.middleware`` maps them to responses.
"""

from __future__ import annotations

from typing import Any, Optional


class IntegrationError(Exception):
    def __init__(
        self,
        message: str,
        code: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code, "retryable": self.retryable}
        if self.details is not None:
            body["details"] = self.details
        return body


class UnknownIntegrationError(IntegrationError):
    def __init__(self, integration_type: str) -> None:
        super().__init__(
            f"Unknown integration type: {integration_type}",
            "UNKNOWN_INTEGRATION",
            400,
        )
        self.integration_type = integration_type


class ValidationError(IntegrationError):
    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message, "VALIDATION_ERROR", 400, details=details)


class NotFoundError(IntegrationError):
    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message, "NOT_FOUND", 404)


class InvalidStateError(IntegrationError):
    """OAuth ``state`` missing, mismatched, or already consumed."""

    def __init__(self, message: str = "Invalid state parameter") -> None:
        super().__init__(message, "INVALID_STATE", 400)


class AuthFailedError(IntegrationError):
    def __init__(self, message: str, code: str = "AUTH_FAILED", status_code: int = 401) -> None:
        super().__init__(message, code, status_code)


class TokenExpiredError(IntegrationError):
    """
    Access token rejected.  ``retryable`` is True only while one
    refresh-and-retry is still available; once that is spent (or no refresh
    token exists) the caller must re-authorize.
    """

    def __init__(self, message: str = "Token expired", retryable: bool = True) -> None:
        super().__init__(message, "TOKEN_EXPIRED", 401, retryable=retryable)


class RateLimitError(IntegrationError):
    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None) -> None:
        super().__init__(message, "RATE_LIMIT", 429, retryable=True)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


class WebhookSignatureError(IntegrationError):
    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message, "WEBHOOK_SIGNATURE_INVALID", 401)


class WebhookInactiveError(IntegrationError):
    def __init__(self, webhook_id: str) -> None:
        super().__init__(f"Webhook {webhook_id} is not active", "WEBHOOK_INACTIVE", 409)


class OperationTimeoutError(IntegrationError):
    """Raised when a caller-supplied deadline expires; never a business failure."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            f"{operation} timed out after {timeout:.1f}s",
            "TIMEOUT",
            504,
            retryable=True,
        )
        self.operation = operation
        self.timeout = timeout
