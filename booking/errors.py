"""
Error taxonomy for the booking engine.

Domain functions raise these; the HTTP layer turns them into JSON responses
using ``status_code`` and ``public_message``.
"""

from typing import Any, Dict, Optional


class BookingError(Exception):
    """Base exception for all booking-engine errors."""

    status_code = 400
    default_message = "Request could not be completed."

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        """Text that is safe to show to the caller."""
        return self.message


class ValidationError(BookingError):
    """Missing or malformed input. Surfaced verbatim."""

    status_code = 400
    default_message = "Missing required booking data."


class AuthorizationError(BookingError):
    """Caller does not own the referenced client or session."""

    status_code = 403
    default_message = "You do not have permission to perform this action."

    @property
    def public_message(self) -> str:
        return self.default_message


class NotFoundError(BookingError):
    """Referenced pack, subscription or session does not exist."""

    status_code = 404
    default_message = "Invalid selection."


class ConflictError(BookingError):
    """Slot taken, entitlement exhausted, or source inactive."""

    status_code = 409
    default_message = "This time slot is no longer available."


class InternalError(BookingError):
    """The store failed. Detail goes to the log, never to the caller."""

    status_code = 500
    default_message = "An unexpected error occurred."

    @property
    def public_message(self) -> str:
        return self.default_message
