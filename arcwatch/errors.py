"""Typed failures raised by the observer service.

Each error carries a stable ``code`` and the HTTP status the boundary layer
should answer with. Storage errors are never wrapped in these.
"""
from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Base error for observer operations."""

    status: int = 400

    def __init__(
        self, code: str, message: str, *, status: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.metadata = metadata or {}
        if status is not None:
            self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message}


class NotFoundError(ServiceError):
    """Draft, observer, studio, pull request or digest entry is absent."""

    status = 404


class InvalidInputError(ServiceError):
    """Malformed stake, outcome, flag or paging value."""

    status = 400


class StateConflictError(ServiceError):
    """The target exists but is in the wrong state (PR decided, prediction resolved)."""

    status = 409


class LimitExceededError(ServiceError):
    """Stake ceiling (400) or daily budget (429) exceeded."""

    status = 400
