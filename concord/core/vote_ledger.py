"""Per-subject vote sets: one vote per user, togglable."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Optional, Set, Tuple

from .errors import Unauthorized
from .models import Direction


@dataclass(frozen=True)
class VoteTally:
    net_votes: int
    upvotes: int
    downvotes: int
    user_vote: Optional[Direction] = None

    @property
    def down_margin(self) -> int:
        return self.downvotes - self.upvotes


class VoteLedger:
    """Records ``subject -> {user: direction}``.

    Casting the same direction twice clears the vote, the opposite
    direction replaces it. Subjects may be grouped under a ``scope`` (the
    owning target) so a whole target can be cleared at once; an
    ``exclusive`` scope lets a user hold at most one up-vote inside it
    (leaderboard voting).
    """

    def __init__(self, eligibility: Optional[Callable[[str], bool]] = None) -> None:
        self._eligibility = eligibility
        self._lock = threading.RLock()
        self._votes: Dict[str, Dict[str, Direction]] = {}
        self._subject_scope: Dict[str, Hashable] = {}
        self._scope_choice: Dict[Tuple[Hashable, str], str] = {}

    def _check_eligible(self, user_id: str) -> None:
        if self._eligibility is not None and not self._eligibility(user_id):
            raise Unauthorized(f"User {user_id} is not checked in and cannot vote")

    def _tally(self, subject_id: str, user_id: Optional[str] = None) -> VoteTally:
        votes = self._votes.get(subject_id, {})
        up = sum(1 for d in votes.values() if d is Direction.UP)
        down = len(votes) - up
        return VoteTally(up - down, up, down, votes.get(user_id) if user_id else None)

    def _drop(self, subject_id: str, user_id: str) -> None:
        votes = self._votes.get(subject_id)
        if not votes or user_id not in votes:
            return
        del votes[user_id]
        scope = self._subject_scope.get(subject_id)
        if scope is not None and self._scope_choice.get((scope, user_id)) == subject_id:
            del self._scope_choice[(scope, user_id)]
        if not votes:
            del self._votes[subject_id]
            self._subject_scope.pop(subject_id, None)

    def vote(
        self,
        subject_id: str,
        user_id: str,
        direction: Direction,
        scope: Optional[Hashable] = None,
        *,
        exclusive: bool = False,
    ) -> VoteTally:
        direction = Direction.parse(direction)
        self._check_eligible(user_id)
        with self._lock:
            current = self._votes.get(subject_id, {}).get(user_id)
            if current is direction:
                self._drop(subject_id, user_id)
                return self._tally(subject_id, user_id)

            if scope is not None and exclusive:
                if direction is Direction.UP:
                    previous = self._scope_choice.get((scope, user_id))
                    if previous is not None and previous != subject_id:
                        self._drop(previous, user_id)
                    self._scope_choice[(scope, user_id)] = subject_id
                elif self._scope_choice.get((scope, user_id)) == subject_id:
                    del self._scope_choice[(scope, user_id)]

            self._votes.setdefault(subject_id, {})[user_id] = direction
            if scope is not None:
                self._subject_scope[subject_id] = scope
            return self._tally(subject_id, user_id)

    def remove(self, subject_id: str, user_id: str) -> VoteTally:
        with self._lock:
            self._drop(subject_id, user_id)
            return self._tally(subject_id, user_id)

    def tally(self, subject_id: str, user_id: Optional[str] = None) -> VoteTally:
        with self._lock:
            return self._tally(subject_id, user_id)

    def user_vote(self, subject_id: str, user_id: str) -> Optional[Direction]:
        with self._lock:
            return self._votes.get(subject_id, {}).get(user_id)

    def supporters(self, subject_id: str) -> Set[str]:
        with self._lock:
            return {u for u, d in self._votes.get(subject_id, {}).items() if d is Direction.UP}

    def candidates(self, scope: Hashable) -> Dict[str, Set[str]]:
        """Up-voters per subject for every subject recorded under ``scope``."""
        with self._lock:
            result: Dict[str, Set[str]] = {}
            for subject_id, subject_scope in self._subject_scope.items():
                if subject_scope != scope:
                    continue
                voters = {u for u, d in self._votes.get(subject_id, {}).items() if d is Direction.UP}
                if voters:
                    result[subject_id] = voters
            return result

    def clear(self, subject_id: str) -> None:
        with self._lock:
            for user_id in list(self._votes.get(subject_id, {})):
                self._drop(subject_id, user_id)
            self._votes.pop(subject_id, None)
            self._subject_scope.pop(subject_id, None)

    def clear_scope(self, scope: Hashable) -> None:
        with self._lock:
            for subject_id in [s for s, sc in self._subject_scope.items() if sc == scope]:
                self.clear(subject_id)

    def is_empty(self, subject_id: Optional[str] = None) -> bool:
        with self._lock:
            if subject_id is None:
                return not self._votes
            return subject_id not in self._votes

    def scope_is_empty(self, scope: Hashable) -> bool:
        with self._lock:
            return all(sc != scope for sc in self._subject_scope.values())

    def vote_count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._votes.values())
