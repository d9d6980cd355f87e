"""
🛠️ Route Helpers
Shared utilities for all route blueprints.
"""

import datetime
import logging
import uuid
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import Response, jsonify, request

from ..core.errors import ConcordError
from ..services import ServiceResult

logger = logging.getLogger(__name__)

# error_code -> HTTP status for results that do not carry one
ERROR_STATUS = {
    "validation_error": 400,
    "not_present": 403,
    "not_owner": 403,
    "not_found": 404,
    "invalid_transition": 409,
    "queue_full": 409,
    "rate_limited": 429,
}


def _iso_timestamp_now() -> str:
    """Return ISO 8601 timestamp in UTC with a trailing Z."""
    now_utc = datetime.datetime.now(tz=datetime.timezone.utc)
    return now_utc.isoformat(timespec="microseconds").replace("+00:00", "Z")


def api_response(
    success: bool,
    *,
    data: Optional[Any] = None,
    message: str = "",
    status: int = 200,
    error_code: Optional[str] = None
) -> Response:
    """Create a standardized API response with consistent envelope.

    Args:
        success: Whether the operation succeeded
        data: Optional response data
        message: Optional message string
        status: HTTP status code (default 200)
        error_code: Optional error code for failures

    Returns:
        Flask Response object with JSON payload
    """
    req_id = str(uuid.uuid4())
    timestamp = _iso_timestamp_now()
    payload = {
        "success": success,
        "timestamp": timestamp,
        "request_id": req_id
    }
    if message:
        payload["message"] = message
    if data is not None:
        payload["data"] = data
    if error_code:
        payload["error_code"] = error_code
    resp = jsonify(payload)
    resp.status_code = status
    # Correlation headers
    resp.headers['X-Request-ID'] = req_id
    resp.headers['X-Response-Timestamp'] = timestamp
    return resp


def api_error(
    message: str,
    *,
    status: int = 400,
    error_code: Optional[str] = None,
    data: Optional[Any] = None,
) -> Response:
    """Convenience wrapper for standardized error responses."""
    return api_response(
        False,
        data=data,
        message=message,
        status=status,
        error_code=error_code,
    )


def service_response(result: ServiceResult, *, status: int = 200) -> Response:
    """Turn a ``ServiceResult`` into an envelope response.

    Failures use the status attached by the service, falling back to the
    ``ERROR_STATUS`` table and finally 500.
    """
    if result.success:
        return api_response(True, data=result.data, message=result.message or "", status=status)
    error_status = result.http_status or ERROR_STATUS.get(result.error_code or "", 500)
    resp = api_error(
        result.message or "Request failed",
        status=error_status,
        error_code=result.error_code,
        data=result.data,
    )
    if error_status == 429 and isinstance(result.data, dict):
        resp.headers['Retry-After'] = str(max(1, int(result.data.get("resetsInSeconds") or 1)))
    return resp


def json_body() -> Dict[str, Any]:
    """Request JSON body as a dict; missing or malformed bodies become ``{}``."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def api_error_handler(func: Callable) -> Callable:
    """Decorator for consistent API error handling.

    Engine errors keep their status; anything else the service layer did
    not map is logged and returned as a standardized 500 response.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ConcordError as e:
            return api_error(e.message, status=e.http_status, error_code=e.error_code)
        except Exception:
            logger.exception(f"Error in {func.__name__}")
            return api_error(
                "An internal error occurred",
                status=500,
                error_code="unhandled_exception",
            )
    return wrapper
