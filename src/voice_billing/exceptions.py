from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for billing service errors."""

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or "service_error"


class NotFoundError(ServiceError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="not_found")


class ValidationError(ServiceError):
    def __init__(self, message: str = "Validation error"):
        super().__init__(message, code="validation_error")


class InsufficientCreditsError(ServiceError):
    def __init__(self, message: str = "Insufficient credits"):
        super().__init__(message, code="insufficient_credits")


class ConfigurationError(ServiceError):
    def __init__(self, message: str = "Billing is not configured"):
        super().__init__(message, code="configuration_error")


class PayPalError(ServiceError):
    """A PayPal API call failed; carries the HTTP status and response body."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message, code="paypal_error")
        self.status_code = status_code
        self.body = body

    def has_issue(self, issue: str) -> bool:
        """True when PayPal reported `issue` (e.g. ORDER_ALREADY_CAPTURED)."""
        if not isinstance(self.body, dict):
            return False
        details = self.body.get("details") or []
        return any(isinstance(d, dict) and d.get("issue") == issue for d in details)
