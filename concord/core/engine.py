"""
🗳️ Feature Engine - one collaborative queue with quorum voting
================================================================

Music, photo frames and sand-table patterns all run the same engine with a
different ``FeatureConfig``:

- ``queue`` mode: down-votes reaching the quorum skip the active item or
  evict a waiting one.
- ``leaderboard`` mode: each present user up-votes one candidate per
  target; the leader reaching the quorum plays next.

Lock order: holding-pool lock first, then target locks in id order. Vote
and trash on routed items take only their target lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque
from contextlib import ExitStack
from dataclasses import dataclass
from typing import (TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional,
                    Tuple, Union)

from ..config_schema import FeatureConfig, TargetConfig, apply_settings
from ..constants import TRASH_REMEDIATION
from ..utils.logger import log_structured
from ..utils.thread_safety import KeyedLocks
from .errors import InvalidTransition, NotFound, RateLimited, Unauthorized
from .models import (Direction, Item, ItemStatus, Target, TransitionKind,
                     target_sort_key)
from .queue_store import QueueStore
from .rate_limiter import RateDecision, RateLimiter
from .router import OrientationRouter, RedistributeResult, RouteResult
from .threshold import ThresholdEngine
from .vote_ledger import VoteLedger

if TYPE_CHECKING:
    from .scheduler import SchedulerLoop

_logger = logging.getLogger("concord.engine")

QUEUE_MODE = "queue"
LEADERBOARD_MODE = "leaderboard"


@dataclass(frozen=True)
class TransitionEvent:
    feature_id: str
    target_id: str
    kind: TransitionKind
    subject_id: Optional[str]
    outgoing_id: Optional[str] = None
    incoming_id: Optional[str] = None
    at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "targetId": self.target_id,
            "subjectId": self.subject_id,
            "outgoingId": self.outgoing_id,
            "incomingId": self.incoming_id,
        }


@dataclass(frozen=True)
class SubmitResult:
    item: Item
    route: RouteResult

    def to_dict(self) -> Dict[str, Any]:
        return {**self.route.to_dict(), "item": self.item.to_dict()}


@dataclass(frozen=True)
class VoteResult:
    net_votes: int
    marked_for_threshold: bool
    quorum: int
    user_vote: Optional[Direction] = None
    transition: Optional[TransitionEvent] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "netVotes": self.net_votes,
            "markedForThreshold": self.marked_for_threshold,
            "quorum": self.quorum,
            "userVote": self.user_vote.value if self.user_vote else None,
            "transition": self.transition.to_dict() if self.transition else None,
        }


@dataclass(frozen=True)
class TrashResult:
    item: Item
    remaining: int
    resets_in_seconds: Optional[int]
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "removed": self.item.item_id,
            "remaining": self.remaining,
            "resetsInSeconds": self.resets_in_seconds,
        }
        if self.warning:
            data["warning"] = self.warning
        return data


class FeatureEngine:
    """Owns the queues, ledger and trash limiter of one feature."""

    def __init__(
        self,
        feature_id: str,
        settings: FeatureConfig,
        presence,
        actuator=None,
        scheduler: Optional["SchedulerLoop"] = None,
        *,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        from ..api.actuator import NullActuator
        from .scheduler import SchedulerLoop

        self.feature_id = feature_id
        self.settings = settings
        self.presence = presence
        self.actuator = actuator or NullActuator()
        self._clock = clock

        self._locks = KeyedLocks(f"{feature_id}.target")
        self.store = QueueStore(settings.queue_limit, retire_played=settings.retire_played, clock=clock)
        self.ledger = VoteLedger(eligibility=presence.is_user_eligible)
        self.limiter = RateLimiter(settings.trash_quota, settings.trash_window_seconds, clock=monotonic)
        self.router = OrientationRouter(self.store, lock_for=self.target_lock)

        self._holding_lock = threading.RLock()
        self._holding: List[Item] = []
        self._items: Dict[str, Item] = {}
        self._history_lock = threading.Lock()
        self._history: Deque[Item] = deque(maxlen=settings.history_limit)
        self._counters_lock = threading.Lock()
        self._counters: Counter = Counter()

        for target_cfg in settings.targets:
            self.store.add_target(self._build_target(target_cfg))

        self.scheduler = scheduler or SchedulerLoop()
        self.scheduler.register(self)

    def __repr__(self) -> str:
        return f"<FeatureEngine {self.feature_id} mode={self.mode} targets={self.target_ids()}>"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @property
    def mode(self) -> str:
        return self.settings.mode

    @property
    def is_leaderboard(self) -> bool:
        return self.settings.mode == LEADERBOARD_MODE

    def target_lock(self, target_id: str):
        return self._locks.hold(target_id)

    def target_ids(self) -> List[str]:
        return sorted((t.target_id for t in self.store.targets()), key=target_sort_key)

    def current_quorum(self) -> int:
        return ThresholdEngine.quorum(self.presence.current_count(), self.settings.quorum_ratio)

    def get_item(self, item_id: str) -> Item:
        item = self._items.get(item_id)
        if item is None:
            raise NotFound(f"Item {item_id} not found")
        return item

    @staticmethod
    def _build_target(cfg: TargetConfig) -> Target:
        return Target(cfg.id, name=cfg.name, classifications=set(cfg.classifications))

    def _count(self, name: str) -> None:
        with self._counters_lock:
            self._counters[name] += 1

    def counters(self) -> Dict[str, int]:
        with self._counters_lock:
            return dict(self._counters)

    def _require_eligible(self, user_id: str, action: str) -> None:
        if not user_id:
            raise ValueError("userId is required")
        if not self.presence.is_user_eligible(user_id):
            raise Unauthorized(f"Check in to the office to {action}")

    @staticmethod
    def _check_placement(item: Item, target_id: Optional[str]) -> None:
        if item.target_id != target_id:
            raise InvalidTransition("Item moved while the request was processed, please retry")

    def _all_target_locks(self) -> ExitStack:
        stack = ExitStack()
        for target_id in self.target_ids():
            stack.enter_context(self.target_lock(target_id))
        return stack

    def _retire(self, item: Optional[Item]) -> None:
        """Move a removed item out of the live index into history."""
        if item is None or item.removed_at is None:
            return
        self._items.pop(item.item_id, None)
        self.ledger.clear(item.item_id)
        with self._history_lock:
            self._history.append(item)

    def _sync_target_settings(self) -> None:
        targets = [
            TargetConfig(id=t.target_id, name=t.name, classifications=sorted(t.classifications))
            for t in sorted(self.store.targets(), key=lambda t: target_sort_key(t.target_id))
        ]
        self.settings = self.settings.model_copy(update={"targets": targets})

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------
    def submit(
        self,
        user_id: str,
        payload: str,
        classification: Optional[str] = None,
        title: Optional[str] = None,
    ) -> SubmitResult:
        self._require_eligible(user_id, "submit items")
        if not payload or not str(payload).strip():
            raise ValueError("payload is required")
        classification = classification.strip().lower() if classification else None
        item = Item(
            self.feature_id,
            str(payload).strip(),
            user_id,
            classification=classification,
            title=title,
            submitted_at=self._clock(),
        )
        with self._holding_lock:
            self._items[item.item_id] = item
            result = self.router.route(item, self.store.targets(), self._holding)
        self._retire(result.dropped)
        self._count("submitted")
        if not result.assigned:
            self._count("held")

        log_structured(
            _logger, logging.INFO, "📨 Item submitted",
            feature=self.feature_id, item_id=item.item_id, user=user_id,
            target=result.target_id, held=not result.assigned, reason=result.reason,
        )
        if result.assigned:
            self.scheduler.dispatch_pending(self, result.target_id)
        return SubmitResult(item, result)

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------
    def _is_marked(self, subject_id: str, quorum: int) -> bool:
        if self.is_leaderboard:
            return len(self.ledger.supporters(subject_id)) >= quorum
        return self.ledger.tally(subject_id).down_margin >= quorum

    def _routed_votable(self, subject_id: str) -> Tuple[Item, str]:
        item = self.get_item(subject_id)
        if item.target_id is None:
            raise InvalidTransition("Held items can be voted on once they reach a queue")
        return item, item.target_id

    def vote(self, subject_id: str, user_id: str, direction: Union[Direction, str, int]) -> VoteResult:
        direction = Direction.parse(direction)
        if self.is_leaderboard and direction is Direction.DOWN:
            raise ValueError(f"{self.feature_id} voting only accepts up-votes")
        self._require_eligible(user_id, "vote")
        item, target_id = self._routed_votable(subject_id)

        with self.target_lock(target_id):
            self._check_placement(item, target_id)
            if not item.votable:
                raise InvalidTransition(f"Cannot vote on {item.status.value} items")
            tally = self.ledger.vote(subject_id, user_id, direction, scope=target_id, exclusive=self.is_leaderboard)
            quorum = self.current_quorum()
            marked = self._is_marked(subject_id, quorum)
        self._count("votes")

        _logger.debug(
            "🗳️ %s %s on %s (net %d, quorum %d)", user_id, direction.value, subject_id, tally.net_votes, quorum
        )
        transition = self.scheduler.evaluate(self, target_id)
        return VoteResult(tally.net_votes, marked, quorum, tally.user_vote, transition)

    def remove_vote(self, subject_id: str, user_id: str) -> VoteResult:
        item, target_id = self._routed_votable(subject_id)
        with self.target_lock(target_id):
            self._check_placement(item, target_id)
            tally = self.ledger.remove(subject_id, user_id)
            quorum = self.current_quorum()
            marked = self._is_marked(subject_id, quorum)
        # withdrawing an up-vote can push a queue item over its down margin
        transition = self.scheduler.evaluate(self, target_id)
        return VoteResult(tally.net_votes, marked, quorum, None, transition)

    # ------------------------------------------------------------------
    # Removal (trash / owner)
    # ------------------------------------------------------------------
    def _remove(
        self,
        item: Item,
        reason: str,
        precondition: Optional[Callable[[], Any]] = None,
    ) -> Any:
        """Remove ``item`` from wherever it sits; returns the precondition's result."""
        target_id = item.target_id
        outcome = None
        if target_id is None:
            with self._holding_lock:
                if item.target_id is not None or item not in self._holding:
                    raise InvalidTransition("Item moved while the request was processed, please retry")
                if precondition:
                    outcome = precondition()
                self._holding.remove(item)
                item.status = ItemStatus.EVICTED
                item.removed_at = self._clock()
                item.removal_reason = reason
        else:
            with self.target_lock(target_id):
                self._check_placement(item, target_id)
                target = self.store.target(target_id)
                if target.transition_in_flight and target.pending_actuation == item.item_id:
                    raise InvalidTransition("This item is starting right now, try again in a moment")
                if precondition:
                    outcome = precondition()
                self.store.evict(target_id, item.item_id, reason)
        self._retire(item)
        if target_id is not None:
            self.scheduler.dispatch_pending(self, target_id)
        return outcome

    def _record_trash(self, user_id: str) -> RateDecision:
        decision = self.limiter.record(user_id, self.feature_id)
        if not decision.allowed:
            minutes = round(self.limiter.window_seconds / 60)
            raise RateLimited(
                f"You have used all {self.limiter.quota} trash actions in the last {minutes} minutes. "
                f"{TRASH_REMEDIATION}",
                resets_in_seconds=decision.resets_in_seconds,
            )
        return decision

    def trash(self, subject_id: str, user_id: str) -> TrashResult:
        """Immediately remove an item; limited per user by the trash quota."""
        self._require_eligible(user_id, "trash items")
        item = self.get_item(subject_id)
        decision: RateDecision = self._remove(item, "trashed", lambda: self._record_trash(user_id))
        self._count("trashed")

        warning = None
        minutes = round(self.limiter.window_seconds / 60)
        if decision.remaining == 1:
            warning = f"You have 1 trash action left in the next {minutes} minutes. {TRASH_REMEDIATION}"
        elif decision.remaining == 0:
            warning = f"That was your last trash action for the next {minutes} minutes. {TRASH_REMEDIATION}"

        log_structured(
            _logger, logging.INFO, "🗑️ Item trashed",
            feature=self.feature_id, item_id=subject_id, user=user_id, remaining=decision.remaining,
        )
        return TrashResult(item, decision.remaining, decision.resets_in_seconds, warning)

    def trash_limit(self, user_id: str) -> Dict[str, Any]:
        return self.limiter.status(user_id, self.feature_id)

    def remove_own(self, subject_id: str, user_id: str) -> Item:
        """Let a submitter withdraw their own item (not rate limited)."""
        item = self.get_item(subject_id)
        if item.submitted_by != user_id:
            raise Unauthorized("Only the submitter can remove this item", error_code="not_owner")
        self._remove(item, "owner")
        self._count("withdrawn")
        _logger.info("↩️ %s withdrew %s", user_id, subject_id)
        return item

    # ------------------------------------------------------------------
    # Transitions (called by the scheduler with the target lock held)
    # ------------------------------------------------------------------
    def pending_decision(self, target_id: str) -> Optional[Tuple[TransitionKind, str]]:
        """Which transition the current votes call for, if any."""
        quorum = self.current_quorum()
        target = self.store.target(target_id)
        if self.is_leaderboard:
            current = self.store.current(target_id)
            # the playing item already won; only waiting candidates can take over
            live = {item.item_id: item for item in target.items if item.votable and item is not current}
            candidates = {
                cid: voters for cid, voters in self.ledger.candidates(target_id).items() if cid in live
            }
            leader = ThresholdEngine.evaluate(candidates, {cid: live[cid].submitted_at for cid in candidates})
            if ThresholdEngine.has_crossed(leader, quorum):
                return TransitionKind.PLAY_CANDIDATE, leader.candidate_id
            return None

        current = self.store.current(target_id)
        ordered = ([current] if current else []) + [i for i in target.items if i is not current]
        for item in ordered:
            if item.votable and self.ledger.tally(item.item_id).down_margin >= quorum:
                kind = TransitionKind.SKIP if item is current else TransitionKind.EVICT
                return kind, item.item_id
        return None

    def apply_transition(self, target_id: str, kind: TransitionKind, subject_id: Optional[str] = None) -> TransitionEvent:
        """Mutate queue and ledger for ``kind``; actuation is the scheduler's job."""
        if kind is TransitionKind.FINISHED:
            outgoing, incoming = self.store.advance(target_id)
            if outgoing is not None:
                self.ledger.clear(outgoing.item_id)
        elif kind is TransitionKind.PLAY_CANDIDATE:
            outgoing, incoming = self.store.activate(target_id, subject_id)
            self.ledger.clear_scope(target_id)
        else:
            reason = "skipped" if kind is TransitionKind.SKIP else "quorum"
            outgoing = self.store.evict(target_id, subject_id, reason)
            incoming = self.store.current(target_id)
            self.ledger.clear(subject_id)
        self._retire(outgoing)
        self._count(f"transition.{kind.value}")

        event = TransitionEvent(
            self.feature_id,
            target_id,
            kind,
            subject_id,
            outgoing.item_id if outgoing else None,
            incoming.item_id if incoming else None,
            self._clock(),
        )
        log_structured(_logger, logging.INFO, "⏭️ Transition applied", **event.to_dict(), feature=self.feature_id)
        return event

    def item_finished(self, target_id: str, item_id: Optional[str] = None) -> Optional[TransitionEvent]:
        """External "finished playing" signal; ignored when ``item_id`` is stale."""
        return self.scheduler.advance(self, target_id, item_id)

    def observe_external(self, target_id: str, payload: Optional[str]) -> bool:
        """Record what the device reports; reset votes when it changed on its own.

        Returns True when transient vote state was reset.
        """
        with self.target_lock(target_id):
            target = self.store.target(target_id)
            previous = target.last_external_payload
            target.last_external_payload = payload
            if previous is None or payload is None or payload == previous:
                return False
            current = self.store.current(target_id)
            if current is not None and current.payload == payload:
                return False
            if self.is_leaderboard:
                self.ledger.clear_scope(target_id)
            elif current is not None:
                self.ledger.clear(current.item_id)
        _logger.info("🔄 %s/%s changed externally to %s, votes reset", self.feature_id, target_id, payload)
        return True

    def on_presence_changed(self) -> List[TransitionEvent]:
        """A smaller office means a smaller quorum; re-check every target."""
        events = []
        for target_id in self.target_ids():
            event = self.scheduler.evaluate(self, target_id)
            if event is not None:
                events.append(event)
        return events

    # ------------------------------------------------------------------
    # Settings & targets
    # ------------------------------------------------------------------
    def update_settings(self, changes: Dict[str, Any]) -> FeatureConfig:
        new_settings = apply_settings(self.settings, changes)
        with self._holding_lock:
            with self._all_target_locks():
                old = self.settings
                self.settings = new_settings
                evicted: List[Item] = []
                overflow: List[Item] = []
                if new_settings.queue_limit != old.queue_limit:
                    evicted, overflow = self.store.resize(new_settings.queue_limit)
                if (new_settings.trash_quota, new_settings.trash_window_seconds) != (old.trash_quota, old.trash_window_seconds):
                    self.limiter.configure(new_settings.trash_quota, new_settings.trash_window_seconds)
                if new_settings.history_limit != old.history_limit:
                    with self._history_lock:
                        self._history = deque(self._history, maxlen=new_settings.history_limit)
            for item in evicted:
                self._retire(item)
            for item in overflow:
                self.ledger.clear(item.item_id)
                self.router.route(item, self.store.targets(), self._holding)

        _logger.info("⚙️ %s settings updated: %s", self.feature_id, sorted(changes))
        for target_id in self.target_ids():
            self.scheduler.dispatch_pending(self, target_id)
            self.scheduler.evaluate(self, target_id)
        return self.settings

    def redistribute(self) -> RedistributeResult:
        with self._holding_lock:
            result = self.router.redistribute(self._holding, self.store.targets())
        for item in result.dropped:
            self._retire(item)
        for target_id in sorted(set(result.assigned_targets), key=target_sort_key):
            self.scheduler.dispatch_pending(self, target_id)
        return result

    def add_target(self, target: Union[TargetConfig, Dict[str, Any]]) -> RedistributeResult:
        cfg = target if isinstance(target, TargetConfig) else TargetConfig.model_validate(target)
        with self._holding_lock:
            if self.store.has_target(cfg.id):
                raise ValueError(f"Target {cfg.id} already exists")
            self.store.add_target(self._build_target(cfg))
            self._sync_target_settings()
        _logger.info("➕ Target %s added to %s", cfg.id, self.feature_id)
        return self.redistribute()

    def remove_target(self, target_id: str) -> List[Item]:
        """Drop a target; its unplayed items go back through the router."""
        with self._holding_lock:
            with self.target_lock(target_id):
                target = self.store.target(target_id)
                if target.transition_in_flight:
                    raise InvalidTransition(f"Target {target_id} is mid-transition, try again shortly")
                pending, dropped = self.store.detach_all(target_id)
                self.store.remove_target(target_id)
                self.ledger.clear_scope(target_id)
                self._sync_target_settings()
            for item in pending:
                self.router.route(item, self.store.targets(), self._holding)
        for item in dropped:
            self._retire(item)
        _logger.info("➖ Target %s removed from %s (%d items re-routed)", target_id, self.feature_id, len(pending))
        return pending

    def set_target_classifications(self, target_id: str, classifications: List[str]) -> RedistributeResult:
        cfg = TargetConfig(id=target_id, classifications=classifications)
        with self._holding_lock:
            with self.target_lock(target_id):
                self.store.target(target_id).classifications = set(cfg.classifications)
                self._sync_target_settings()
        _logger.info("🧭 Target %s now accepts %s", target_id, cfg.classifications)
        return self.redistribute()

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------
    def _item_view(self, item: Item, user_id: Optional[str]) -> Dict[str, Any]:
        data = item.to_dict()
        tally = self.ledger.tally(item.item_id, user_id)
        data.update(netVotes=tally.net_votes, upvotes=tally.upvotes, downvotes=tally.downvotes)
        if user_id:
            data["userVote"] = tally.user_vote.value if tally.user_vote else None
        return data

    def snapshot(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        targets = []
        for target_id in self.target_ids():
            with self.target_lock(target_id):
                target = self.store.target(target_id)
                view = target.to_dict(include_items=False)
                view["queue"] = [self._item_view(item, user_id) for item in target.items]
            targets.append(view)
        return {
            "feature": self.feature_id,
            "mode": self.mode,
            "quorum": self.current_quorum(),
            "presentCount": self.presence.current_count(),
            "settings": self.settings.model_dump(mode="json", exclude={"targets"}),
            "targets": targets,
            "holding": self.holding(),
        }

    def holding(self) -> List[Dict[str, Any]]:
        with self._holding_lock:
            return [item.to_dict() for item in self._holding]

    def history(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._history_lock:
            recent = list(self._history)[-limit:] if limit > 0 else []
        return [item.to_dict() for item in reversed(recent)]

    def stats(self) -> Dict[str, Any]:
        by_target = {}
        for target_id in self.target_ids():
            with self.target_lock(target_id):
                target = self.store.target(target_id)
                by_target[target_id] = {
                    "length": len(target.items),
                    "pending": self.store.pending_count(target_id),
                    "state": target.state.value,
                }
        with self._holding_lock:
            held = len(self._holding)
        with self._history_lock:
            history_size = len(self._history)
        return {
            "feature": self.feature_id,
            "counters": self.counters(),
            "held": held,
            "liveItems": len(self._items),
            "historySize": history_size,
            "activeVotes": self.ledger.vote_count(),
            "quorum": self.current_quorum(),
            "targets": by_target,
            "trash": self.limiter.get_stats(),
            "locks": self._locks.get_stats(),
        }
