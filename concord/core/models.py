"""Data model shared by the queue, ledger and scheduler components."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..constants import ANY_CLASSIFICATION


class ItemStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    PLAYED = "played"
    EVICTED = "evicted"

    @property
    def votable(self) -> bool:
        return self in (ItemStatus.QUEUED, ItemStatus.ACTIVE)


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"

    @classmethod
    def parse(cls, value: Any) -> "Direction":
        """Accept ``up``/``down`` as well as the legacy numeric 1/-1 values."""
        if isinstance(value, Direction):
            return value
        if value in (1, "1", "+1"):
            return cls.UP
        if value in (-1, "-1"):
            return cls.DOWN
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Invalid vote direction: {value!r} (expected 'up' or 'down')")


class TargetState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    ADVANCING = "advancing"


class TransitionKind(str, Enum):
    SKIP = "skip"
    PLAY_CANDIDATE = "play_candidate"
    EVICT = "evict"
    FINISHED = "finished"


@dataclass
class Item:
    """A user submission (track, photo/video, pattern, LED effect)."""

    feature_id: str
    payload: str
    submitted_by: str
    classification: Optional[str] = None
    title: Optional[str] = None
    item_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    submitted_at: float = field(default_factory=time.time)
    status: ItemStatus = ItemStatus.QUEUED
    target_id: Optional[str] = None
    played_at: Optional[float] = None
    removed_at: Optional[float] = None
    removal_reason: Optional[str] = None
    play_count: int = 0

    @property
    def in_rotation(self) -> bool:
        return self.target_id is not None and self.removed_at is None

    @property
    def votable(self) -> bool:
        # Played photos stay in the frame loop and can still be voted out
        return self.status.votable or (self.status is ItemStatus.PLAYED and self.in_rotation)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.item_id,
            "feature": self.feature_id,
            "payload": self.payload,
            "title": self.title,
            "submittedBy": self.submitted_by,
            "submittedAt": self.submitted_at,
            "classification": self.classification,
            "status": self.status.value,
            "targetId": self.target_id,
            "playedAt": self.played_at,
            "removedAt": self.removed_at,
            "removalReason": self.removal_reason,
            "playCount": self.play_count,
        }


@dataclass
class Target:
    """A routable destination: a display frame, a speaker, the sand table."""

    target_id: str
    name: str = ""
    classifications: Set[str] = field(default_factory=lambda: {ANY_CLASSIFICATION})
    items: List[Item] = field(default_factory=list)
    cursor: Optional[int] = None
    transition_in_flight: bool = False
    pending_actuation: Optional[str] = None
    last_external_payload: Optional[str] = None

    def accepts(self, classification: Optional[str]) -> bool:
        if classification is None or ANY_CLASSIFICATION in self.classifications:
            return True
        return classification in self.classifications

    @property
    def state(self) -> TargetState:
        if self.transition_in_flight:
            return TargetState.ADVANCING
        if self.cursor is None:
            return TargetState.IDLE
        return TargetState.PLAYING

    def to_dict(self, *, include_items: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.target_id,
            "name": self.name or self.target_id,
            "classifications": sorted(self.classifications),
            "position": self.cursor,
            "state": self.state.value,
            "pendingActuation": self.pending_actuation,
        }
        if include_items:
            data["queue"] = [item.to_dict() for item in self.items]
        return data


def target_sort_key(target_id: str) -> tuple:
    """Order target ids numerically when they are numbers ("2" < "10")."""
    return (0, int(target_id), "") if target_id.isdigit() else (1, 0, target_id)
