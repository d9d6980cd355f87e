"""Event-driven transition scheduler shared by every feature engine.

- Pushed evaluations (after each vote) and the periodic tick converge on
  the same guarded ``evaluate``; the per-target in-flight flag makes sure a
  quorum event fires exactly once.
- Queue state is committed under the target lock; the device is driven
  afterwards on a worker pool. A failed or lost actuation leaves
  ``pending_actuation`` set and is retried on the next tick.
- Each tick also polls what the devices are playing so external changes
  reset stale votes.
"""
from __future__ import annotations

import itertools
import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple

from ..utils.logger import log_structured
from .errors import NotFound
from .models import Item, TransitionKind

if TYPE_CHECKING:
    from .engine import FeatureEngine, TransitionEvent

_logger = logging.getLogger("concord.scheduler")

_Key = Tuple[str, str]


class SchedulerLoop:
    def __init__(
        self,
        *,
        tick_seconds: float = 5.0,
        actuation_timeout: float = 5.0,
        max_workers: int = 4,
        inline_actuation: bool = False,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tick_seconds = tick_seconds
        self.actuation_timeout = actuation_timeout
        self.inline_actuation = inline_actuation
        self._max_workers = max_workers
        self._monotonic = monotonic

        self._engines: Dict[str, "FeatureEngine"] = {}
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._wake_event = threading.Event()
        self._stop_event = threading.Event()
        self._lock = threading.RLock()
        self._running = False

        self._claims = itertools.count(1)
        self._in_flight: Dict[_Key, Tuple[int, float]] = {}
        self._failures: Dict[_Key, int] = {}
        self._retry_at: Dict[_Key, float] = {}
        self._ticks = 0
        self._actuations = 0
        self._last_tick: Optional[float] = None
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def register(self, engine: "FeatureEngine") -> None:
        with self._lock:
            self._engines[engine.feature_id] = engine

    def engines(self) -> Dict[str, "FeatureEngine"]:
        with self._lock:
            return dict(self._engines)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run_loop, name="SchedulerLoop", daemon=True)
            self._running = True
            self._thread.start()
            _logger.info("⏱️ SchedulerLoop started (tick %.1fs)", self.tick_seconds)

    def wake(self) -> None:
        self._wake_event.set()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        self._wake_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        with self._lock:
            self._running = False
            self._thread = None
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)
        _logger.info("🛑 SchedulerLoop stopped")

    def is_running(self) -> bool:
        return self._running

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake_event.clear()
            try:
                self.tick()
            except Exception as exc:
                self._last_error = str(exc)
                _logger.exception("💥 Scheduler tick failed: %s", exc)
            self._wake_event.wait(timeout=self.tick_seconds)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def tick(self) -> None:
        """One synchronous evaluation pass over every engine and target."""
        self._ticks += 1
        self._last_tick = time.time()
        for engine in self.engines().values():
            for target_id in engine.target_ids():
                try:
                    self._tick_target(engine, target_id)
                except NotFound:
                    continue  # target removed during the pass

    def _tick_target(self, engine: "FeatureEngine", target_id: str) -> None:
        self._expire_stale(engine, target_id)
        try:
            observed = engine.actuator.current_payload(target_id)
        except Exception as exc:
            _logger.debug("current_payload failed for %s/%s: %s", engine.feature_id, target_id, exc)
            observed = None
        if observed is not None:
            engine.observe_external(target_id, observed)
        self.evaluate(engine, target_id)
        if self._monotonic() >= self._retry_at.get((engine.feature_id, target_id), 0.0):
            self.dispatch_pending(engine, target_id)

    def _expire_stale(self, engine: "FeatureEngine", target_id: str) -> None:
        key = (engine.feature_id, target_id)
        with engine.target_lock(target_id):
            claim = self._in_flight.get(key)
            if claim is None:
                return
            if self._monotonic() - claim[1] < self.actuation_timeout:
                return
            self._in_flight.pop(key, None)
            engine.store.target(target_id).transition_in_flight = False
            self._failures[key] = self._failures.get(key, 0) + 1
        _logger.warning(
            "⌛ Actuation on %s/%s exceeded %.1fs, will retry", engine.feature_id, target_id, self.actuation_timeout
        )

    # ------------------------------------------------------------------
    # Guarded transitions
    # ------------------------------------------------------------------
    def evaluate(self, engine: "FeatureEngine", target_id: str) -> Optional["TransitionEvent"]:
        """Fire the transition the votes call for, at most once per quorum event."""
        try:
            with engine.target_lock(target_id):
                target = engine.store.target(target_id)
                if target.transition_in_flight:
                    return None
                decision = engine.pending_decision(target_id)
                if decision is None:
                    return None
                kind, subject_id = decision
                event = engine.apply_transition(target_id, kind, subject_id)
                claimed = self._claim(engine, target_id)
        except NotFound:
            return None
        if claimed is not None:
            self._actuate(engine, target_id, *claimed)
        return event

    def advance(
        self, engine: "FeatureEngine", target_id: str, expected_item_id: Optional[str] = None
    ) -> Optional["TransitionEvent"]:
        """Natural end of the active item."""
        with engine.target_lock(target_id):
            current = engine.store.current(target_id)
            if current is None:
                return None
            if expected_item_id is not None and current.item_id != expected_item_id:
                _logger.debug("Stale finished signal for %s on %s/%s", expected_item_id, engine.feature_id, target_id)
                return None
            target = engine.store.target(target_id)
            if target.transition_in_flight:
                return None
            event = engine.apply_transition(target_id, TransitionKind.FINISHED, current.item_id)
            claimed = self._claim(engine, target_id)
        if claimed is not None:
            self._actuate(engine, target_id, *claimed)
        return event

    def dispatch_pending(self, engine: "FeatureEngine", target_id: str) -> bool:
        """Start actuation of the target's unconfirmed item, if any."""
        try:
            with engine.target_lock(target_id):
                claimed = self._claim(engine, target_id)
        except NotFound:
            return False
        if claimed is None:
            return False
        self._actuate(engine, target_id, *claimed)
        return True

    def _claim(self, engine: "FeatureEngine", target_id: str) -> Optional[Tuple[int, Optional[Item]]]:
        """Mark the target in flight; caller holds the target lock."""
        target = engine.store.target(target_id)
        if target.transition_in_flight or target.pending_actuation is None:
            return None
        current = engine.store.current(target_id)
        if current is None or current.item_id != target.pending_actuation:
            target.pending_actuation = current.item_id if current else None
            if current is None:
                return None
        target.transition_in_flight = True
        claim_id = next(self._claims)
        self._in_flight[(engine.feature_id, target_id)] = (claim_id, self._monotonic())
        return claim_id, current

    # ------------------------------------------------------------------
    # Actuation
    # ------------------------------------------------------------------
    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="actuator")
            return self._executor

    def _actuate(self, engine: "FeatureEngine", target_id: str, claim_id: int, item: Optional[Item]) -> None:
        if self.inline_actuation:
            self._perform(engine, target_id, claim_id, item)
        else:
            self._get_executor().submit(self._perform, engine, target_id, claim_id, item)

    def _perform(self, engine: "FeatureEngine", target_id: str, claim_id: int, item: Optional[Item]) -> None:
        started = self._monotonic()
        ok = True
        try:
            engine.actuator.perform_transition(target_id, item)
        except Exception as exc:
            ok = False
            self._last_error = str(exc)
            _logger.warning("⚠️ Actuation failed on %s/%s: %s", engine.feature_id, target_id, exc)
        self._complete(engine, target_id, claim_id, item, ok, self._monotonic() - started)

    def _complete(
        self,
        engine: "FeatureEngine",
        target_id: str,
        claim_id: int,
        item: Optional[Item],
        ok: bool,
        elapsed: float,
    ) -> None:
        key = (engine.feature_id, target_id)
        try:
            with engine.target_lock(target_id):
                target = engine.store.target(target_id)
                current_claim = self._in_flight.get(key)
                if current_claim is not None and current_claim[0] == claim_id:
                    self._in_flight.pop(key, None)
                    target.transition_in_flight = False
                if ok:
                    self._actuations += 1
                    self._failures.pop(key, None)
                    self._retry_at.pop(key, None)
                    if item is not None and target.pending_actuation == item.item_id:
                        target.pending_actuation = None
                        target.last_external_payload = item.payload
                else:
                    attempts = self._failures.get(key, 0) + 1
                    self._failures[key] = attempts
                    self._retry_at[key] = self._monotonic() + self._compute_backoff(attempts - 1)
        except NotFound:
            return
        log_structured(
            _logger, logging.DEBUG if ok else logging.WARNING, "🎬 Actuation finished",
            feature=engine.feature_id, target=target_id, item_id=item.item_id if item else None,
            ok=ok, elapsed_ms=round(elapsed * 1000, 1),
        )
        if ok:
            # votes may have piled up while the device was switching
            self.evaluate(engine, target_id)

    def _compute_backoff(self, attempt: int) -> float:
        base = min(10.0, 2 ** min(attempt, 3))
        return base + random.uniform(0.2, 0.7)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "running": self._running,
                "tick_seconds": self.tick_seconds,
                "actuation_timeout": self.actuation_timeout,
                "ticks": self._ticks,
                "last_tick": self._last_tick,
                "actuations": self._actuations,
                "in_flight": ["/".join(key) for key in self._in_flight],
                "failures": {"/".join(key): count for key, count in self._failures.items()},
                "last_error": self._last_error,
                "features": sorted(self._engines),
            }
