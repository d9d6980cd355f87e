"""
Pydantic models for Concord configuration validation

Every feature (music, frames, patterns) is described by a ``FeatureConfig``;
the runtime settings endpoint re-validates partial updates through the same
models so a bad PUT can never leave an engine half-configured.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import (ANY_CLASSIFICATION, DEFAULT_HISTORY_LIMIT,
                        DEFAULT_QUEUE_LIMIT, DEFAULT_QUORUM_RATIO, TRASH_QUOTA,
                        TRASH_WINDOW_SECONDS)


class TargetConfig(BaseModel):
    """A display frame, speaker or table items can be routed to."""

    id: str = Field(min_length=1, max_length=64, description="Target identifier (numeric ids sort numerically)")
    name: str = Field(default="", description="Human readable name")
    classifications: List[str] = Field(default_factory=lambda: [ANY_CLASSIFICATION], description="Accepted item classifications")

    model_config = {"str_strip_whitespace": True}

    @field_validator("classifications")
    @classmethod
    def validate_classifications(cls, v: List[str]) -> List[str]:
        cleaned = sorted({c.strip().lower() for c in v if c and c.strip()})
        return cleaned or [ANY_CLASSIFICATION]


class FeatureConfig(BaseModel):
    """Settings of one voting feature."""

    mode: Literal["queue", "leaderboard"] = Field(default="queue", description="queue: down-votes skip/evict; leaderboard: up-votes pick what plays next")
    queue_limit: int = Field(default=DEFAULT_QUEUE_LIMIT, ge=1, le=500, description="Maximum items per target queue")
    display_time: int = Field(default=30, ge=1, le=3600, description="Seconds an image stays on screen")
    loop_count: int = Field(default=3, ge=1, le=100, description="Times a video loops before advancing")
    quorum_ratio: float = Field(default=DEFAULT_QUORUM_RATIO, gt=0, le=1, description="Fraction of present users needed to trigger a transition")
    retire_played: bool = Field(default=False, description="Remove items from the rotation once played")
    trash_quota: int = Field(default=TRASH_QUOTA, ge=1, le=100, description="Trash actions per user per window")
    trash_window_seconds: float = Field(default=TRASH_WINDOW_SECONDS, gt=0, description="Trash quota window length")
    history_limit: int = Field(default=DEFAULT_HISTORY_LIMIT, ge=0, le=10000, description="Played/evicted items kept for audit")
    targets: List[TargetConfig] = Field(default_factory=list)

    model_config = {"validate_assignment": True}

    @model_validator(mode="after")
    def validate_unique_targets(self) -> "FeatureConfig":
        ids = [t.id for t in self.targets]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate target ids: {ids}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class SchedulerConfig(BaseModel):
    tick_seconds: float = Field(default=5.0, gt=0, le=300, description="Seconds between scheduler evaluations")
    actuation_timeout: float = Field(default=5.0, gt=0, le=120, description="Seconds before an actuation is considered lost")
    max_workers: int = Field(default=4, ge=1, le=32)
    autostart: bool = Field(default=True, description="Start the scheduler thread with the app")


class PresenceConfig(BaseModel):
    url: Optional[str] = Field(default=None, description="Presence service endpoint; in-memory registry when unset")
    cache_seconds: float = Field(default=5.0, ge=0)


class ActuatorConfig(BaseModel):
    url: Optional[str] = Field(default=None, description="Device bridge base URL; no actuation when unset")
    token: Optional[str] = Field(default=None)


class ConcordConfig(BaseModel):
    """Complete Concord configuration schema.

    Example:
        >>> config = ConcordConfig(**json.load(open("config/default_config.json")))
        >>> config.features["frames"].queue_limit
        10
    """

    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$", description="Logging level")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5001, ge=1, le=65535)
    persist_settings: bool = Field(default=False, description="Write settings changed through the API back to <environment>.json")

    features: Dict[str, FeatureConfig] = Field(default_factory=dict)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    actuator: ActuatorConfig = Field(default_factory=ActuatorConfig)

    model_config = {
        "extra": "allow",  # forward compatibility
        "str_strip_whitespace": True,
    }

    @field_validator("features")
    @classmethod
    def validate_feature_ids(cls, v: Dict[str, FeatureConfig]) -> Dict[str, FeatureConfig]:
        for feature_id in v:
            if not feature_id.replace("-", "").replace("_", "").isalnum():
                raise ValueError(f"Invalid feature id: {feature_id!r}")
        return v

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data.pop("_runtime", None)
        return data


def validate_config_dict(config_dict: Dict[str, Any]) -> ConcordConfig:
    """Validate a raw config dictionary; raises ``ValueError`` with details."""
    try:
        return ConcordConfig(**config_dict)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")


SETTINGS_ALIASES = {
    "queueLimit": "queue_limit",
    "displayTime": "display_time",
    "imageDisplayTime": "display_time",
    "loopCount": "loop_count",
    "videoLoopCount": "loop_count",
    "quorumRatio": "quorum_ratio",
    "trashQuota": "trash_quota",
}


def apply_settings(current: FeatureConfig, changes: Dict[str, Any]) -> FeatureConfig:
    """Return a validated copy of ``current`` with camelCase/snake_case ``changes`` applied."""
    updates: Dict[str, Any] = {}
    for key, value in changes.items():
        field = SETTINGS_ALIASES.get(key, key)
        if field in ("targets", "mode", "retire_played") or field not in FeatureConfig.model_fields:
            raise ValueError(f"Unknown or read-only setting: {key}")
        updates[field] = value
    merged = {**current.model_dump(), **updates}
    return FeatureConfig.model_validate(merged)
