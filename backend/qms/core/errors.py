"""Typed errors raised by the queue engine.

Services raise these instead of ``HTTPException`` so that the same code can
be driven from routes, scripts and tests. ``qms.main`` maps them onto HTTP
responses.
"""

from typing import Any, Dict, Optional


class QueueError(Exception):
    """Base class for all queue engine errors."""

    status_code = 500
    kind = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def public_message(self) -> str:
        """Message that is safe to return to a client."""
        return self.message


class NotActiveError(QueueError):
    """The queue for a customer type isn't accepting new tokens."""

    status_code = 409
    kind = "not_active"


class NotFoundError(QueueError):
    """Target doesn't exist or isn't in the state the transition requires."""

    status_code = 404
    kind = "not_found"


class ConflictError(QueueError):
    """A uniqueness or exclusivity constraint would be violated."""

    status_code = 409
    kind = "conflict"


class ValidationError(QueueError):
    """Request is well-formed but semantically invalid."""

    status_code = 400
    kind = "validation"


class StorageError(QueueError):
    """The repository transaction failed for infrastructure reasons."""

    status_code = 500
    kind = "storage"

    @property
    def public_message(self) -> str:
        return "The operation could not be completed. Please try again."
