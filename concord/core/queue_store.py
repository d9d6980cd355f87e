"""Bounded, cursor-based queues – one per target.

Full-queue policy: appending to a full queue evicts the oldest *played*
item. When the queue holds nothing played, :class:`QueueFull` is raised and
the caller keeps the item in the holding pool; an unplayed item is never
dropped silently.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, List, Optional, Tuple

from ..constants import DEFAULT_QUEUE_LIMIT
from .errors import NotFound, QueueFull
from .models import Item, ItemStatus, Target


class QueueStore:
    """Holds the ordered items and cursor of every target.

    The store itself is not locked; the owning engine serialises access
    per target.
    """

    def __init__(
        self,
        queue_limit: int = DEFAULT_QUEUE_LIMIT,
        *,
        retire_played: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.queue_limit = max(1, int(queue_limit))
        self.retire_played = retire_played
        self._clock = clock
        self._targets: Dict[str, Target] = {}

    # ------------------------------------------------------------------
    # Target arena
    # ------------------------------------------------------------------
    def add_target(self, target: Target) -> Target:
        self._targets[target.target_id] = target
        return target

    def remove_target(self, target_id: str) -> Target:
        try:
            return self._targets.pop(target_id)
        except KeyError:
            raise NotFound(f"Target {target_id} not found")

    def target(self, target_id: str) -> Target:
        try:
            return self._targets[target_id]
        except KeyError:
            raise NotFound(f"Target {target_id} not found")

    def targets(self) -> List[Target]:
        return list(self._targets.values())

    def has_target(self, target_id: str) -> bool:
        return target_id in self._targets

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_empty(self, target_id: str) -> bool:
        return not self.target(target_id).items

    def current(self, target_id: str) -> Optional[Item]:
        target = self.target(target_id)
        if target.cursor is None:
            return None
        return target.items[target.cursor]

    def items(self, target_id: str) -> List[Item]:
        return list(self.target(target_id).items)

    def pending_count(self, target_id: str) -> int:
        return sum(1 for item in self.target(target_id).items if item.status is ItemStatus.QUEUED)

    def is_full(self, target_id: str) -> bool:
        return len(self.target(target_id).items) >= self.queue_limit

    def can_accept(self, target_id: str) -> bool:
        """True when an append would succeed (room left or a played item to drop)."""
        return not self.is_full(target_id) or self._oldest_played(self.target(target_id)) is not None

    def find(self, item_id: str) -> Optional[Tuple[Target, int]]:
        for target in self._targets.values():
            for index, item in enumerate(target.items):
                if item.item_id == item_id:
                    return target, index
        return None

    def locate(self, target_id: str, item_id: str) -> int:
        for index, item in enumerate(self.target(target_id).items):
            if item.item_id == item_id:
                return index
        raise NotFound(f"Item {item_id} not found in queue {target_id}")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def append(self, target_id: str, item: Item) -> Optional[Item]:
        """Append ``item``; returns the played item evicted to make room, if any."""
        target = self.target(target_id)
        dropped: Optional[Item] = None
        if len(target.items) >= self.queue_limit:
            index = self._oldest_played(target)
            if index is None:
                raise QueueFull(
                    f"Queue {target_id} is full ({self.queue_limit} unplayed items)"
                )
            dropped = self._remove_at(target, index, ItemStatus.EVICTED, "limit")

        item.target_id = target_id
        item.status = ItemStatus.QUEUED
        target.items.append(item)
        if target.cursor is None:
            self._activate_index(target, len(target.items) - 1)
        return dropped

    def advance(self, target_id: str) -> Tuple[Optional[Item], Optional[Item]]:
        """Move the cursor to the next item (wrapping).

        Returns ``(outgoing, incoming)``. The outgoing item is marked played;
        with ``retire_played`` it also leaves the queue.
        """
        target = self.target(target_id)
        if target.cursor is None:
            return None, None
        index = target.cursor
        outgoing = target.items[index]
        self._mark_played(outgoing)
        if self.retire_played:
            self._remove_at(target, index, ItemStatus.PLAYED, "played")
        else:
            next_index = (index + 1) % len(target.items)
            self._activate_index(target, next_index)
        return outgoing, self.current(target_id)

    def activate(self, target_id: str, item_id: str) -> Tuple[Optional[Item], Item]:
        """Jump the cursor to ``item_id`` ("play candidate now")."""
        target = self.target(target_id)
        index = self.locate(target_id, item_id)
        outgoing = self.current(target_id)
        if outgoing is not None and outgoing.item_id == item_id:
            return None, outgoing
        if outgoing is not None:
            self._mark_played(outgoing)
            if self.retire_played:
                out_index = target.cursor
                self._remove_at(target, out_index, ItemStatus.PLAYED, "played")
                index = self.locate(target_id, item_id)
        self._activate_index(target, index)
        return outgoing, target.items[index]

    def evict(self, target_id: str, item_id: str, reason: str = "evicted") -> Item:
        """Remove ``item_id`` wherever it sits; the cursor keeps its successor."""
        target = self.target(target_id)
        index = self.locate(target_id, item_id)
        return self._remove_at(target, index, ItemStatus.EVICTED, reason)

    def detach_all(self, target_id: str) -> Tuple[List[Item], List[Item]]:
        """Empty a target's queue.

        Returns ``(pending, dropped)``: unplayed items reset for re-routing,
        and played items that leave with the target.
        """
        target = self.target(target_id)
        pending: List[Item] = []
        dropped: List[Item] = []
        now = self._clock()
        for item in target.items:
            if item.status in (ItemStatus.QUEUED, ItemStatus.ACTIVE):
                item.status = ItemStatus.QUEUED
                item.target_id = None
                pending.append(item)
            else:
                item.status = ItemStatus.EVICTED
                item.removed_at = now
                item.removal_reason = "target_removed"
                dropped.append(item)
        target.items.clear()
        target.cursor = None
        target.pending_actuation = None
        return pending, dropped

    def resize(self, queue_limit: int) -> Tuple[List[Item], List[Item]]:
        """Apply a new limit.

        Played items leave first, then the newest unplayed ones. Returns
        ``(evicted, overflow)``; overflow items are detached for re-routing.
        """
        self.queue_limit = max(1, int(queue_limit))
        evicted: List[Item] = []
        overflow: List[Item] = []
        for target in self._targets.values():
            while len(target.items) > self.queue_limit:
                index = self._oldest_played(target)
                if index is not None:
                    evicted.append(self._remove_at(target, index, ItemStatus.EVICTED, "limit"))
                    continue
                last = len(target.items) - 1
                if last == target.cursor:
                    last -= 1
                item = target.items[last]
                self._remove_at(target, last, ItemStatus.QUEUED, None)
                item.target_id = None
                overflow.append(item)
        return evicted, overflow

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _oldest_played(self, target: Target) -> Optional[int]:
        best: Optional[int] = None
        for index, item in enumerate(target.items):
            if item.status is not ItemStatus.PLAYED or index == target.cursor:
                continue
            if best is None:
                best = index
                continue
            current = target.items[best]
            if (item.played_at or 0.0, item.submitted_at) < (current.played_at or 0.0, current.submitted_at):
                best = index
        return best

    def _mark_played(self, item: Item) -> None:
        item.status = ItemStatus.PLAYED
        item.played_at = self._clock()
        item.play_count += 1

    def _activate_index(self, target: Target, index: int) -> None:
        previous = target.cursor
        if previous is not None and previous != index and previous < len(target.items):
            displaced = target.items[previous]
            if displaced.status is ItemStatus.ACTIVE:
                displaced.status = ItemStatus.QUEUED
        target.cursor = index
        item = target.items[index]
        item.status = ItemStatus.ACTIVE
        target.pending_actuation = item.item_id

    def _remove_at(self, target: Target, index: int, status: ItemStatus, reason: Optional[str]) -> Item:
        item = target.items.pop(index)
        was_current = target.cursor == index
        if status is not ItemStatus.QUEUED:
            item.status = status
            item.removed_at = self._clock()
            item.removal_reason = reason

        if not target.items:
            target.cursor = None
            target.pending_actuation = None
        elif target.cursor is not None:
            if index < target.cursor:
                target.cursor -= 1
            elif was_current:
                self._activate_index(target, index % len(target.items))
        return item
