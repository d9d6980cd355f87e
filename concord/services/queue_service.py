"""
🎛️ Queue Service - request-level operations of one feature
===========================================================

Validates request bodies, calls the feature engine and converts the
outcome into a ``ServiceResult``.
"""

from typing import Any, Callable, Dict, Optional

from ..config_schema import FeatureConfig
from ..core.engine import FeatureEngine
from ..utils.validation import (ValidationError, validate_submit_request,
                                validate_user_request, validate_vote_request)
from . import BaseService, ServiceResult

SettingsListener = Callable[[str, FeatureConfig], None]


class QueueService(BaseService):
    """Service facade over a :class:`FeatureEngine`."""

    def __init__(self, engine: FeatureEngine, settings_listener: Optional[SettingsListener] = None):
        super().__init__(f"queue.{engine.feature_id}")
        self.engine = engine
        self._settings_listener = settings_listener

    @property
    def feature_id(self) -> str:
        return self.engine.feature_id

    def _run(self, operation: str, func: Callable[[], Any], message: Optional[str] = None) -> ServiceResult:
        try:
            return self._success_result(data=func(), message=message)
        except ValidationError as e:
            return self._error_result(e.message, "validation_error", data={"field": e.field_name}, http_status=400)
        except Exception as e:
            return self._handle_error(e, operation)

    # ------------------------------------------------------------------
    # Submissions & votes
    # ------------------------------------------------------------------
    def submit(self, data: Dict[str, Any]) -> ServiceResult:
        def op():
            req = validate_submit_request(data)
            return self.engine.submit(req["user_id"], req["payload"], req["classification"], req["title"]).to_dict()

        return self._run("submit", op)

    def vote(self, data: Dict[str, Any]) -> ServiceResult:
        def op():
            req = validate_vote_request(data)
            return self.engine.vote(req["subject_id"], req["user_id"], req["direction"]).to_dict()

        return self._run("vote", op)

    def remove_vote(self, data: Dict[str, Any]) -> ServiceResult:
        def op():
            req = validate_vote_request(data, with_direction=False)
            return self.engine.remove_vote(req["subject_id"], req["user_id"]).to_dict()

        return self._run("remove_vote", op)

    def trash(self, subject_id: str, data: Dict[str, Any]) -> ServiceResult:
        def op():
            return self.engine.trash(subject_id, validate_user_request(data)).to_dict()

        return self._run("trash", op)

    def trash_limit(self, user_id: str) -> ServiceResult:
        return self._run("trash_limit", lambda: self.engine.trash_limit(user_id))

    def remove_own(self, subject_id: str, data: Dict[str, Any]) -> ServiceResult:
        def op():
            item = self.engine.remove_own(subject_id, validate_user_request(data))
            return {"removed": item.item_id}

        return self._run("remove_own", op, message="Submission removed")

    # ------------------------------------------------------------------
    # Settings & targets
    # ------------------------------------------------------------------
    def update_settings(self, data: Dict[str, Any]) -> ServiceResult:
        def op():
            if not data:
                raise ValueError("No settings provided")
            settings = self.engine.update_settings(data)
            if self._settings_listener is not None:
                self._settings_listener(self.feature_id, settings)
            return settings.model_dump(mode="json", exclude={"targets"})

        return self._run("update_settings", op, message="Settings updated")

    def redistribute(self) -> ServiceResult:
        return self._run("redistribute", lambda: self.engine.redistribute().to_dict())

    def set_classifications(self, target_id: str, data: Dict[str, Any]) -> ServiceResult:
        def op():
            raw = data.get("classifications", data.get("orientation"))
            if isinstance(raw, str):
                raw = [raw]
            if not isinstance(raw, list) or not raw:
                raise ValueError("classifications must be a non-empty list")
            result = self.engine.set_target_classifications(target_id, raw)
            if self._settings_listener is not None:
                self._settings_listener(self.feature_id, self.engine.settings)
            return result.to_dict()

        return self._run("set_classifications", op)

    def item_finished(self, target_id: str, data: Dict[str, Any]) -> ServiceResult:
        def op():
            event = self.engine.item_finished(target_id, data.get("itemId"))
            return {"transition": event.to_dict() if event else None}

        return self._run("item_finished", op)

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------
    def get_queue(self, user_id: Optional[str] = None) -> ServiceResult:
        return self._run("get_queue", lambda: self.engine.snapshot(user_id))

    def get_holding(self) -> ServiceResult:
        return self._run("get_holding", self.engine.holding)

    def get_history(self, limit: int = 50) -> ServiceResult:
        return self._run("get_history", lambda: self.engine.history(max(0, min(limit, 500))))

    def get_stats(self) -> ServiceResult:
        return self._run("get_stats", self.engine.stats)

    def health_check(self) -> ServiceResult:
        base = super().health_check()
        if not base.success:
            return base
        stats = self.engine.stats()
        stuck = [tid for tid, t in stats["targets"].items() if t["state"] == "advancing"]
        return self._success_result(data={
            "status": "healthy" if not stuck else "degraded",
            "service": self.name,
            "mode": self.engine.mode,
            "targets": len(stats["targets"]),
            "held": stats["held"],
            "advancing": stuck,
        })
