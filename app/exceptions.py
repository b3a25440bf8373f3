"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Services return explicit result values for expected business outcomes
(no credits, unknown payment). Exceptions are reserved for infrastructure
failures and for the HTTP boundary (APIError).
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes returned in every error body."""

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NO_CREDITS = "no_credits"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"
    # Refinements that keep their parent's status code
    ALREADY_PREMIUM = "already_premium"
    EMAIL_TAKEN = "email_taken"
    REGISTRATION_BLOCKED = "registration_blocked"


STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NO_CREDITS: 403,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.INTERNAL: 500,
    ErrorCode.ALREADY_PREMIUM: 400,
    ErrorCode.EMAIL_TAKEN: 409,
    ErrorCode.REGISTRATION_BLOCKED: 403,
}


class EntitlementError(Exception):
    """Base exception for all entitlement service errors."""

    pass


class APIError(EntitlementError):
    """Raised at the HTTP boundary; rendered as {error, message, **extra}."""

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.code = code
        self.message = message or code.value.replace("_", " ")
        self.extra = extra or {}
        self.headers = headers
        super().__init__(f"{code.value}: {self.message}")

    @property
    def status_code(self) -> int:
        """HTTP status for this error code."""
        return STATUS_BY_CODE[self.code]

    def to_body(self) -> dict[str, Any]:
        """JSON body sent to the client."""
        return {"error": self.code.value, "message": self.message, **self.extra}


class EmailAlreadyRegisteredError(EntitlementError):
    """Raised when registration races with another account on the same email."""

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"Email already registered: {email}")


class DataIntegrityError(EntitlementError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class StoreUnavailableError(EntitlementError):
    """Raised when the persistence layer cannot be reached in time."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Store unavailable during {operation}: {message}")
