"""
Error taxonomy for allocation operations.

Every engine operation either returns its result or raises one of these.
The API layer renders them as JSON with the class-level HTTP status:

    {"error": <message>, "error_code": <code>, **details}

- ValidationError     400  malformed input, or an invariant would be violated
- NotFoundError       404  entity id cannot be resolved
- AuthorizationError  403  role or ownership mismatch
- ConflictError       400  resource already allocated / terminal state
- TransportError      500  database or connection failure (always rolled back)
"""

from typing import Any


class AllocationError(Exception):
    """Base class for all errors raised by the allocation engines."""

    status_code: int = 500
    default_code: str = "ALLOCATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Machine-readable body for HTTP responses."""
        body: dict[str, Any] = {"error": self.message, "error_code": self.error_code}
        body.update(self.details)
        return body

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(error_code='{self.error_code}', message='{self.message}')>"


class ValidationError(AllocationError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(AllocationError):
    status_code = 404
    default_code = "NOT_FOUND"


class AuthorizationError(AllocationError):
    status_code = 403
    default_code = "FORBIDDEN"


class ConflictError(AllocationError):
    # Clients of the booking surface expect 400 for "already booked"
    status_code = 400
    default_code = "CONFLICT"


class TransportError(AllocationError):
    status_code = 500
    default_code = "DATABASE_ERROR"
