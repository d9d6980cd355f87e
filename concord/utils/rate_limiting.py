"""Per-client API throttling for the Flask routes.

Each rule is a sliding window backed by the same ``RateLimiter`` that
enforces the trash quota, keyed by (client, rule). Disable with
``CONCORD_DISABLE_RATE_LIMIT=1`` (tests do).
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Dict, Optional

from flask import g, jsonify, request

from ..core.rate_limiter import RateDecision, RateLimiter


@dataclass(frozen=True)
class RateLimitRule:
    """Definition of a rate limiting rule."""

    name: str
    requests_per_window: int
    window_seconds: float
    exempt_ips: tuple[str, ...] = ()


class ApiRateLimiter:
    """Sliding-window limiter with one window per client and rule."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rules: Dict[str, RateLimitRule] = {}
        self._limiters: Dict[str, RateLimiter] = {}
        self._start = time.monotonic()
        self._enabled = os.getenv("CONCORD_DISABLE_RATE_LIMIT", "0") != "1"
        self._install_default_rules()

    def _install_default_rules(self) -> None:
        self.add_rule(RateLimitRule("api_general", 300, 60.0))
        self.add_rule(RateLimitRule("votes", 120, 60.0))
        self.add_rule(RateLimitRule("config_changes", 30, 60.0))
        self.add_rule(RateLimitRule("status_check", 200, 10.0))

    def add_rule(self, rule: RateLimitRule) -> None:
        with self._lock:
            self._rules[rule.name] = rule
            self._limiters[rule.name] = RateLimiter(rule.requests_per_window, rule.window_seconds)

    def get_rules_summary(self) -> Dict[str, Dict[str, float]]:
        return {
            name: {"requests_per_window": rule.requests_per_window, "window_seconds": rule.window_seconds}
            for name, rule in self._rules.items()
        }

    def _resolve_client_id(self) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        ip = forwarded.split(",")[0].strip() if forwarded else request.remote_addr or "127.0.0.1"
        user_agent = request.headers.get("User-Agent", "")[:64]
        return f"{ip}:{hash(user_agent) & 0xFFFF:x}"

    def check_rate_limit(self, rule_name: str, client_id: Optional[str] = None) -> Optional[RateDecision]:
        """Record a request; ``None`` when limiting does not apply."""
        if not self._enabled:
            return None
        limiter = self._limiters.get(rule_name)
        if limiter is None:
            return None
        if client_id is None:
            client_id = self._resolve_client_id()
        if client_id.split(":", 1)[0] in self._rules[rule_name].exempt_ips:
            return None
        return limiter.record(client_id, rule_name)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            "uptime_seconds": time.monotonic() - self._start,
            "rules": self.get_rules_summary(),
            "statistics": {name: limiter.get_stats() for name, limiter in self._limiters.items()},
        }

    def reset(self) -> None:
        for limiter in self._limiters.values():
            limiter.reset()
        self._start = time.monotonic()

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled


_rate_limiter: Optional[ApiRateLimiter] = None


def get_rate_limiter() -> ApiRateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = ApiRateLimiter()
    return _rate_limiter


def rate_limit(rule_name: str):
    """Decorator that applies rate limiting to Flask routes."""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            decision = get_rate_limiter().check_rate_limit(rule_name)
            if decision is not None and not decision.allowed:
                retry_after = max(1, decision.resets_in_seconds or 1)
                response = jsonify({
                    "success": False,
                    "message": "Too many requests. Please retry later.",
                    "error_code": "rate_limited",
                    "data": {"resetsInSeconds": retry_after},
                })
                response.status_code = 429
                response.headers["Retry-After"] = str(retry_after)
                response.headers["X-RateLimit-Remaining"] = "0"
                response.headers["X-RateLimit-Reset"] = str(int(time.time() + retry_after))
                return response

            g.rate_limit_decision = decision
            return func(*args, **kwargs)

        return wrapper

    return decorator


def add_rate_limit_headers(response):
    """Attach rate limit metadata to responses when available."""
    decision: Optional[RateDecision] = getattr(g, "rate_limit_decision", None)
    if decision is not None:
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        if decision.resets_in_seconds is not None:
            response.headers["X-RateLimit-Reset"] = str(int(time.time() + decision.resets_in_seconds))
    return response
