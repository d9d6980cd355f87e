"""
🗳️ Queue & Voting Routes Blueprint
Submissions, votes, trash and per-feature settings under ``/api/<feature>/``.
"""

import logging

from flask import Blueprint, request

from ..services.queue_service import QueueService
from ..services.service_manager import get_service_manager
from ..utils.rate_limiting import rate_limit
from .helpers import api_error_handler, json_body, service_response

queue_bp = Blueprint("queue", __name__, url_prefix="/api/<feature_id>")
logger = logging.getLogger(__name__)


def _service(feature_id: str) -> QueueService:
    # NotFound for unknown features is rendered by the ConcordError handler
    return get_service_manager().get_queue_service(feature_id)


@queue_bp.route("/submit", methods=["POST"])
@api_error_handler
@rate_limit("api_general")
def submit(feature_id: str):
    """Submit an item; answers 201 whether it was queued or held."""
    return service_response(_service(feature_id).submit(json_body()), status=201)


@queue_bp.route("/vote", methods=["POST"])
@api_error_handler
@rate_limit("votes")
def vote(feature_id: str):
    return service_response(_service(feature_id).vote(json_body()))


@queue_bp.route("/vote", methods=["DELETE"])
@api_error_handler
@rate_limit("votes")
def remove_vote(feature_id: str):
    return service_response(_service(feature_id).remove_vote(json_body()))


@queue_bp.route("/<subject_id>/trash", methods=["POST"])
@api_error_handler
@rate_limit("votes")
def trash(feature_id: str, subject_id: str):
    """Remove an item immediately, limited per user by the trash quota."""
    return service_response(_service(feature_id).trash(subject_id, json_body()))


@queue_bp.route("/trash-limit/<user_id>", methods=["GET"])
@api_error_handler
@rate_limit("status_check")
def trash_limit(feature_id: str, user_id: str):
    return service_response(_service(feature_id).trash_limit(user_id))


@queue_bp.route("/<subject_id>", methods=["DELETE"])
@api_error_handler
@rate_limit("api_general")
def remove_own(feature_id: str, subject_id: str):
    """Withdraw one of the caller's own submissions."""
    return service_response(_service(feature_id).remove_own(subject_id, json_body()))


@queue_bp.route("/settings", methods=["PUT"])
@api_error_handler
@rate_limit("config_changes")
def update_settings(feature_id: str):
    return service_response(_service(feature_id).update_settings(json_body()))


@queue_bp.route("/redistribute", methods=["POST"])
@api_error_handler
@rate_limit("config_changes")
def redistribute(feature_id: str):
    return service_response(_service(feature_id).redistribute())


@queue_bp.route("/targets/<target_id>/classification", methods=["PUT"])
@api_error_handler
@rate_limit("config_changes")
def set_classification(feature_id: str, target_id: str):
    """Change what a target accepts (e.g. a frame rotated to vertical)."""
    return service_response(_service(feature_id).set_classifications(target_id, json_body()))


@queue_bp.route("/targets/<target_id>/finished", methods=["POST"])
@api_error_handler
@rate_limit("api_general")
def item_finished(feature_id: str, target_id: str):
    """Playback report from a device: the active item ran to completion."""
    return service_response(_service(feature_id).item_finished(target_id, json_body()))


@queue_bp.route("/queue", methods=["GET"])
@api_error_handler
@rate_limit("status_check")
def get_queue(feature_id: str):
    return service_response(_service(feature_id).get_queue(request.args.get("userId")))


@queue_bp.route("/holding", methods=["GET"])
@api_error_handler
@rate_limit("status_check")
def get_holding(feature_id: str):
    return service_response(_service(feature_id).get_holding())


@queue_bp.route("/history", methods=["GET"])
@api_error_handler
@rate_limit("status_check")
def get_history(feature_id: str):
    limit = request.args.get("limit", default=50, type=int)
    return service_response(_service(feature_id).get_history(limit))


@queue_bp.route("/stats", methods=["GET"])
@api_error_handler
@rate_limit("status_check")
def get_stats(feature_id: str):
    return service_response(_service(feature_id).get_stats())
