"""Sliding-window rate limiter keyed by (user, feature).

Used for the destructive "trash" action, and reused by the HTTP layer
(``utils.rate_limiting``) to throttle API clients.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from ..constants import TRASH_QUOTA, TRASH_WINDOW_SECONDS


@dataclass(frozen=True)
class RateDecision:
    """Outcome of :meth:`RateLimiter.record`."""

    allowed: bool
    remaining: int
    resets_in_seconds: Optional[int]
    used: int = 0


class RateLimiter:
    """Fixed quota inside a trailing window, per (user, feature) pair.

    A rejected call leaves no trace: only allowed actions are recorded.
    """

    def __init__(
        self,
        quota: int = TRASH_QUOTA,
        window_seconds: float = TRASH_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if quota < 1:
            raise ValueError("quota must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.quota = int(quota)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[Tuple[str, str], Deque[float]] = {}
        self._total = 0
        self._rejected = 0

    def _prune(self, key: Tuple[str, str], now: float) -> Deque[float]:
        window = self._windows.get(key)
        if window is None:
            window = deque()
            self._windows[key] = window
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def _resets_in(self, window: Deque[float], now: float) -> Optional[int]:
        if not window:
            return None
        return max(0, math.ceil(self.window_seconds - (now - window[0])))

    def record(self, user_id: str, feature_id: str) -> RateDecision:
        """Atomically check the quota and record the action when allowed."""
        key = (str(user_id), str(feature_id))
        with self._lock:
            now = self._clock()
            window = self._prune(key, now)
            self._total += 1
            if len(window) >= self.quota:
                self._rejected += 1
                return RateDecision(False, 0, self._resets_in(window, now), used=len(window))
            window.append(now)
            return RateDecision(
                True,
                self.quota - len(window),
                self._resets_in(window, now),
                used=len(window),
            )

    def status(self, user_id: str, feature_id: str) -> Dict[str, Any]:
        """Read-only view of a user's window: ``{used, remaining, resetsIn}``."""
        key = (str(user_id), str(feature_id))
        with self._lock:
            now = self._clock()
            window = self._prune(key, now)
            used = len(window)
            if not window:
                self._windows.pop(key, None)
            return {
                "used": used,
                "remaining": max(0, self.quota - used),
                "resetsIn": self._resets_in(window, now),
            }

    def configure(self, quota: int, window_seconds: float) -> None:
        """Change quota/window in place; recorded actions keep counting."""
        if quota < 1 or window_seconds <= 0:
            raise ValueError("quota must be at least 1 and window_seconds positive")
        with self._lock:
            self.quota = int(quota)
            self.window_seconds = float(window_seconds)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._total = 0
            self._rejected = 0

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "quota": self.quota,
                "window_seconds": self.window_seconds,
                "tracked_keys": len(self._windows),
                "total_checks": self._total,
                "rejected": self._rejected,
            }
