"""Presence-relative quorum and leader evaluation."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import AbstractSet, Mapping, Optional


@dataclass(frozen=True)
class Leader:
    candidate_id: str
    supporters: int


class ThresholdEngine:
    """Stateless quorum math shared by every feature."""

    @staticmethod
    def quorum(present_count: int, ratio: float) -> int:
        """``max(1, ceil(present_count * ratio))`` – never below one vote."""
        present = max(0, int(present_count or 0))
        ratio = max(0.0, float(ratio))
        # round() strips float noise such as 0.1 * 30 = 3.0000000000000004
        return max(1, math.ceil(round(present * ratio, 9)))

    @staticmethod
    def evaluate(
        candidates: Mapping[str, AbstractSet[str]],
        submitted_at: Mapping[str, float],
    ) -> Optional[Leader]:
        """Return the candidate with most supporters.

        Ties go to the earliest-submitted candidate, then to the lowest id,
        so the result never depends on mapping order. Candidates without a
        submission timestamp sort after those with one.
        """
        best_key = None
        best: Optional[Leader] = None
        for candidate_id, supporters in candidates.items():
            count = len(supporters)
            if count == 0:
                continue
            key = (-count, submitted_at.get(candidate_id, math.inf), candidate_id)
            if best_key is None or key < best_key:
                best_key = key
                best = Leader(candidate_id, count)
        return best

    @staticmethod
    def has_crossed(leader: Optional[Leader], quorum: int) -> bool:
        return leader is not None and leader.supporters >= quorum
