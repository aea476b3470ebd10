# mayday/core/errors.py
"""
Typed domain errors for the dispatch core.

Each error carries the HTTP status code a transport layer would map it
to, so callers can convert them without embedding business logic.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Missing or malformed input; nothing was created (400)."""

    status_code = 400


class NotFoundError(DispatchError):
    """Dispatch or notification not found (404)."""

    status_code = 404


class ConflictError(DispatchError):
    """Concurrent or conflicting state change (409)."""

    status_code = 409


class InvalidTransitionError(ConflictError):
    """Status change not allowed from the entity's current status (409)."""
