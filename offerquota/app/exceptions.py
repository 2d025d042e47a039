"""Custom exceptions for the quota service."""

from datetime import date


class OfferQuotaException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Quota service error"):
        self.message = message
        super().__init__(message)


class QuotaExhaustedError(OfferQuotaException):
    """Raised when a reservation is denied because the monthly allowance is used up.

    Distinct from transient failures so callers can offer an upgrade or a
    retry-next-month message. Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(
        self,
        scope: str = "user",
        limit: int | None = None,
        used: int = 0,
        period_start: date | None = None,
        detail: str | None = None,
    ):
        self.scope = scope
        self.limit = limit
        self.used = used
        self.period_start = period_start
        if detail is None:
            if scope == "device":
                detail = "Monthly offer limit reached on this device."
            else:
                detail = "Monthly offer limit reached for your plan."
        super().__init__(detail)

    def to_response(self) -> dict:
        """Convert to API response format."""
        return {
            "error": "quota_exhausted",
            "scope": self.scope,
            "message": self.message,
            "limit": self.limit,
            "used": self.used,
            "period_start": self.period_start.isoformat() if self.period_start else None,
        }


class AuthenticationError(OfferQuotaException):
    """Raised when the service token is missing or invalid.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401

    def __init__(self, detail: str = "Invalid or missing service token"):
        self.detail = detail
        super().__init__(detail)


class UsageStoreError(OfferQuotaException):
    """Raised at the HTTP boundary when the counter store fails.

    The caller must treat the allocation attempt as failed and must not
    assume a unit was reserved. Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, detail: str = "Usage store unavailable"):
        super().__init__(detail)
