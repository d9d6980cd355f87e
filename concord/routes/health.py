"""
🩺 Health & Status Routes Blueprint
Handles health checks, presence webhooks, rate limiting and status endpoints.
"""

import datetime
import logging

from flask import Blueprint, jsonify

from ..api.presence import InMemoryPresence
from ..services.service_manager import get_service_manager
from ..utils.rate_limiting import get_rate_limiter, rate_limit
from ..utils.validation import InputValidator
from ..version import VERSION
from .helpers import api_error, api_error_handler, api_response, json_body, service_response

health_bp = Blueprint("health", __name__)
logger = logging.getLogger(__name__)


@health_bp.route("/healthz")
def healthz():
    """Basic health check endpoint."""
    return jsonify({"ok": True, "version": str(VERSION)})


@health_bp.route("/readyz")
def readyz():
    """Readiness check endpoint."""
    try:
        manager = get_service_manager()
        return jsonify({
            "ok": True,
            "features": sorted(manager.engines),
            "scheduler_running": manager.scheduler.is_running(),
        })
    except Exception as e:
        logger.error(f"❌ Readiness check failed: {e}")
        return jsonify({"ok": False, "error": str(e)}), 503


@health_bp.route("/api/status")
@rate_limit("status_check")
@api_error_handler
def api_status():
    """📊 Version, process resources, scheduler and per-feature modes."""
    return service_response(get_service_manager().get_status())


@health_bp.route("/api/services/health")
@rate_limit("status_check")
@api_error_handler
def api_services_health():
    """📊 Get health status of all feature services."""
    return service_response(get_service_manager().health_check_all())


@health_bp.route("/api/presence/changed", methods=["POST"])
@rate_limit("api_general")
@api_error_handler
def presence_changed():
    """👥 Presence webhook.

    Accepts ``{"users": [...]}`` (full present list) or ``{"userId", "status"}``
    with status ``in``/``out``. Both forms only update the local registry;
    with a remote presence service the call just triggers re-evaluation.
    """
    data = json_body()
    manager = get_service_manager()
    presence = manager.presence

    if isinstance(presence, InMemoryPresence) and ("users" in data or "userId" in data):
        if "users" in data:
            users = data.get("users")
            if not isinstance(users, list):
                return api_error("users must be a list", status=400, error_code="validation_error")
            for user in users:
                result = InputValidator.validate_identifier(user, "users")
                if not result.is_valid:
                    return api_error(result.error, status=400, error_code="validation_error")
            presence.replace(users)
        else:
            user_check = InputValidator.validate_identifier(data.get("userId"), "userId")
            if not user_check.is_valid:
                return api_error(user_check.error, status=400, error_code="validation_error")
            status = str(data.get("status", "in")).lower()
            if status in ("in", "checked_in", "present"):
                presence.check_in(user_check.value)
            elif status in ("out", "checked_out", "absent"):
                presence.check_out(user_check.value)
            else:
                return api_error(f"Unknown presence status: {status}", status=400, error_code="validation_error")
    else:
        manager.on_presence_changed()

    return api_response(True, data={
        "presentCount": presence.current_count(),
        "quorum": {fid: engine.current_quorum() for fid, engine in manager.engines.items()},
    })


@health_bp.route("/api/rate-limiting/status")
@rate_limit("status_check")
def get_rate_limiting_status():
    """📊 Get rate limiting status and statistics."""
    try:
        stats = get_rate_limiter().get_stats()
        return api_response(True, data={
            "timestamp": datetime.datetime.now().isoformat(),
            "rate_limiting": stats
        })
    except Exception as e:
        logger.error(f"Error getting rate limiting status: {e}")
        return api_response(False, message=str(e), status=500, error_code="rate_limit_status_error")


@health_bp.route("/api/rate-limiting/reset", methods=["POST"])
@rate_limit("config_changes")
def reset_rate_limiting():
    """🔄 Reset rate limiting statistics and storage."""
    try:
        get_rate_limiter().reset()
        return api_response(True, data={"timestamp": datetime.datetime.now().isoformat()}, message="Rate limiting data reset successfully")
    except Exception as e:
        logger.error(f"Error resetting rate limiting: {e}")
        return api_response(False, message=str(e), status=500, error_code="rate_limit_reset_error")
