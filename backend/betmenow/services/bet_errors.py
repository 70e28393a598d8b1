"""
backend/betmenow/services/bet_errors.py

Purpose:
    Error taxonomy for bet lifecycle operations. Each class carries the HTTP
    status the API maps it to, so routers can let them propagate.

Dependencies:
    - none
"""

from __future__ import annotations

from typing import Any


class BetError(Exception):
    """Base class for every failure surfaced by the bet engine."""

    status_code = 400
    retryable = False

    def __init__(self, detail: str, **context: Any):
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.detail, "error": type(self).__name__}
        if self.context:
            body["context"] = self.context
        if self.retryable:
            body["retryable"] = True
        return body


class BetValidationError(BetError):
    """Input rejected before any store call."""

    status_code = 422


class BetNotFoundError(BetError):
    status_code = 404


class BetPermissionError(BetError):
    """Actor is not allowed to perform the requested transition."""

    status_code = 403


class BetConflictError(BetError):
    """The expected prior state no longer holds; re-fetch before retrying."""

    status_code = 409


class BetStoreUnavailableError(BetError):
    """Store could not be reached. Safe to retry with a new user action."""

    status_code = 503
    retryable = True
