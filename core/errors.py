"""
Engine exceptions.

Channel failures live in channels.base.ChannelError; everything raised by the
stores and the engine itself derives from AllocationError.
"""
from __future__ import annotations


class AllocationError(Exception):
    """Base class for engine errors."""

    def __init__(self, message: str, reason: str = ""):
        super().__init__(message)
        self.reason = reason or self.default_reason

    default_reason = "error"


class ValidationError(AllocationError):
    """Request is missing act, date, or address; rejected before side effects."""
    default_reason = "invalid"


class NotFoundError(AllocationError):
    """Act, lineup, or member does not exist."""
    default_reason = "not_found"


class DuplicateError(AllocationError):
    """Natural-key collision on insert. Callers treat it as a no-op."""
    default_reason = "duplicate"


class ConcurrencyError(AllocationError):
    """Optimistic version check failed; re-fetch and re-apply."""
    default_reason = "conflict"
