"""Error taxonomy for circulation operations.

Models raise these; the application error handler turns them into JSON
responses carrying the human-readable reason.
"""
from typing import Any, Dict


class LibraryError(Exception):
    """Base class for expected, typed failures of a circulation operation."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': False,
            'error': type(self).__name__,
            'message': self.message,
        }


class ValidationError(LibraryError):
    """Missing or malformed input."""

    status_code = 400


class ForbiddenError(LibraryError):
    """The acting user may not perform the operation on this entity."""

    status_code = 403


class NotFoundError(LibraryError):
    """Book, user, borrow record or reservation does not exist."""

    status_code = 404


class ConflictError(LibraryError):
    """A business rule blocks the operation (outstanding fine, duplicate, ...)."""

    status_code = 409


class UnavailableError(ConflictError):
    """No copy of the book is left to lend."""


class StateError(ConflictError):
    """The entity is not in a state that allows the transition."""


class TransientError(LibraryError):
    """A side effect (notification, gateway call) failed.

    Never propagated out of the primary write it follows.
    """

    status_code = 503
