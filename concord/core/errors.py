"""
Error taxonomy for the queue & voting engine.

Every error carries an ``error_code`` and the HTTP status the route layer
should answer with, so services can translate them without a lookup table.
"""

from __future__ import annotations

from typing import Optional


class ConcordError(Exception):
    """Base class for all engine errors."""

    error_code = "concord_error"
    http_status = 400

    def __init__(self, message: str, *, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class Unauthorized(ConcordError):
    """User is not eligible (not checked in) for the requested action."""

    error_code = "not_present"
    http_status = 403


class RateLimited(ConcordError):
    """Trash quota exhausted for the trailing window."""

    error_code = "rate_limited"
    http_status = 429

    def __init__(self, message: str, *, resets_in_seconds: Optional[int] = None):
        super().__init__(message)
        self.resets_in_seconds = resets_in_seconds


class NotFound(ConcordError):
    error_code = "not_found"
    http_status = 404


class InvalidTransition(ConcordError):
    """Requested mutation conflicts with an in-flight transition."""

    error_code = "invalid_transition"
    http_status = 409


class QueueFull(ConcordError):
    """Queue is at its limit and holds no played item that can make room."""

    error_code = "queue_full"
    http_status = 409


class RoutingFailure(ConcordError):
    """No compatible target accepted the item.

    Never surfaced as an HTTP error: a held submission is a successful one.
    """

    error_code = "held"
    http_status = 200


__all__ = [
    "ConcordError",
    "Unauthorized",
    "RateLimited",
    "NotFound",
    "InvalidTransition",
    "QueueFull",
    "RoutingFailure",
]
