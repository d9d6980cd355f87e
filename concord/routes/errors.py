"""
🚨 Error Handlers
Centralized HTTP error handling; every error leaves in the API envelope.
"""

from __future__ import annotations

import logging

from flask import Flask

from ..core.errors import ConcordError
from .helpers import api_error

logger = logging.getLogger(__name__)


def register_error_handlers(app: Flask) -> None:
    """Register shared error handlers on the Flask app."""

    @app.errorhandler(ConcordError)
    def concord_error(error: ConcordError):
        return api_error(error.message, status=error.http_status, error_code=error.error_code)

    @app.errorhandler(404)
    def not_found_error(_error):  # type: ignore[unused-argument]
        return api_error("Page not found", status=404, error_code="not_found")

    @app.errorhandler(405)
    def method_not_allowed(_error):  # type: ignore[unused-argument]
        return api_error("Method not allowed", status=405, error_code="method_not_allowed")

    @app.errorhandler(500)
    def internal_error(_error):  # type: ignore[unused-argument]
        return api_error("Internal server error", status=500, error_code="internal_error")
