"""Error taxonomy for the session engine.

Every error carries a stable ``kind`` (sent to websocket clients) and an HTTP
status used by the REST exception handler.
"""

from __future__ import annotations


class QuizSessionError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.kind)
        self.message = message or (self.__class__.__doc__ or self.kind).strip()

    def to_payload(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(QuizSessionError):
    """Malformed request payload."""

    kind = "validation"
    status_code = 400


class NotFoundError(QuizSessionError):
    """Unknown quiz, session or code."""

    kind = "not_found"
    status_code = 404


class AuthorizationError(QuizSessionError):
    """Only the session creator or an admin may do this."""

    kind = "unauthorized"
    status_code = 403


class StateError(QuizSessionError):
    """Operation not valid for the session's current status."""

    kind = "state"
    status_code = 409


class ConflictError(QuizSessionError):
    """Game code collided repeatedly; temporarily unavailable."""

    kind = "conflict"
    status_code = 503


class TransientInfraError(QuizSessionError):
    """Storage did not respond in time; service unavailable."""

    kind = "unavailable"
    status_code = 503


class AllocationUnavailableError(TransientInfraError):
    """No free game code could be allocated."""

    kind = "allocation_unavailable"


__all__ = [
    "QuizSessionError",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "StateError",
    "ConflictError",
    "TransientInfraError",
    "AllocationUnavailableError",
]
