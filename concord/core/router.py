"""Assigns submissions to the best-fit target or the holding pool."""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Callable, ContextManager, Iterable, List, Optional, Tuple

from .errors import QueueFull, RoutingFailure
from .models import Item, Target, target_sort_key
from .queue_store import QueueStore

logger = logging.getLogger("concord.router")


@dataclass(frozen=True)
class RouteResult:
    assigned: bool
    target_id: Optional[str] = None
    reason: Optional[str] = None
    # played item pushed out of a full queue to make room
    dropped: Optional[Item] = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict:
        data = {"assigned": self.assigned}
        if self.target_id is not None:
            data["targetId"] = self.target_id
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class RedistributeResult:
    distributed: int
    remaining: int
    dropped: Tuple[Item, ...] = field(default=(), compare=False, repr=False)
    assigned_targets: Tuple[str, ...] = field(default=(), compare=False, repr=False)

    def to_dict(self) -> dict:
        return {"distributed": self.distributed, "remaining": self.remaining}


class OrientationRouter:
    """Load-balances items across compatible targets.

    Compatible means the target accepts the item's classification. Among
    compatible targets with room, the one with the shortest queue wins;
    ties go to the lowest target id.
    """

    def __init__(
        self,
        store: QueueStore,
        lock_for: Optional[Callable[[str], ContextManager]] = None,
    ) -> None:
        self._store = store
        self._lock_for = lock_for or (lambda target_id: nullcontext())

    def pick(self, item: Item, targets: Iterable[Target]) -> Target:
        """Best target for ``item``; raises ``RoutingFailure`` when none fits."""
        compatible = [t for t in targets if t.accepts(item.classification)]
        if not compatible:
            label = item.classification or "unclassified"
            raise RoutingFailure(f"No {label} targets available")

        open_targets = [t for t in compatible if self._store.can_accept(t.target_id)]
        if not open_targets:
            raise RoutingFailure("All compatible queues are full")

        return min(
            open_targets,
            key=lambda t: (len(t.items), target_sort_key(t.target_id)),
        )

    def route(self, item: Item, targets: Iterable[Target], holding: List[Item]) -> RouteResult:
        """Place ``item`` in a target queue, or append it to ``holding``."""
        try:
            target = self.pick(item, targets)
            with self._lock_for(target.target_id):
                dropped = self._store.append(target.target_id, item)
            return RouteResult(True, target_id=target.target_id, dropped=dropped)
        except (RoutingFailure, QueueFull) as exc:
            # QueueFull: another request filled the queue between pick and append
            reason = exc.message
        item.target_id = None
        holding.append(item)
        logger.info("📥 Item %s held: %s", item.item_id, reason)
        return RouteResult(False, reason=reason)

    def redistribute(self, holding: List[Item], targets: Iterable[Target]) -> RedistributeResult:
        """Re-route every held item; items that still fit nowhere stay held."""
        targets = list(targets)
        waiting = list(holding)
        holding.clear()
        dropped: List[Item] = []
        assigned: List[str] = []
        for item in waiting:
            result = self.route(item, targets, holding)
            if result.assigned:
                assigned.append(result.target_id)
            if result.dropped is not None:
                dropped.append(result.dropped)
        if assigned:
            logger.info("🔀 Redistributed %d held items (%d still held)", len(assigned), len(holding))
        return RedistributeResult(len(assigned), len(holding), tuple(dropped), tuple(assigned))
