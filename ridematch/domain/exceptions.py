"""Domain error taxonomy for ride matching and match lifecycle operations.

Every error carries a ``user_message`` suitable for showing to the rider,
separate from the technical message used in logs.
"""

from typing import List, Optional


class RideMatchError(Exception):
    """Base exception for all lifecycle and matching errors."""

    default_user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None):
        self.message = message
        self.user_message = user_message or self.default_user_message
        super().__init__(message)


class NotFoundError(RideMatchError):
    """Raised when a request or match does not exist, or the caller is not part of it."""

    default_user_message = "The ride or match could not be found."


class InvalidStateError(RideMatchError):
    """Raised when an operation is not allowed in the record's current state.

    This is also what the loser of a race sees when another actor moved the
    record to a different state first.
    """

    default_user_message = "This match is no longer pending."

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        user_message: Optional[str] = None,
    ):
        self.current_state = current_state
        super().__init__(message, user_message)


class ConflictError(RideMatchError):
    """Raised when a request was claimed or a match edited concurrently."""

    default_user_message = (
        "One of the requests was already claimed by another match. "
        "Please rescan for matches."
    )


class ValidationError(RideMatchError):
    """Raised for malformed input (empty or duplicate ids, bad coordinates, ...)."""

    default_user_message = "The request contains invalid data."

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        user_message: Optional[str] = None,
    ):
        self.errors = errors or []
        super().__init__(message, user_message)


class IneligibleGroupError(ValidationError):
    """Raised when at least one pair in a proposed group is not compatible."""

    default_user_message = "These ride requests are no longer compatible."

    def __init__(self, message: str, request_ids=None, reason: Optional[str] = None):
        self.request_ids = tuple(request_ids or ())
        self.reason = reason
        super().__init__(message)
