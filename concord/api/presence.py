"""Presence providers: who is currently checked in to the office.

The engine only needs two answers: how many people are present (for the
quorum) and whether a given user may vote or trash.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

import requests

from .http import get_http_session

_LOGGER = logging.getLogger("concord.presence")


class PresenceProvider(Protocol):
    def current_count(self) -> int: ...

    def is_user_eligible(self, user_id: str) -> bool: ...


class InMemoryPresence:
    """Check-in registry kept in process memory.

    Used for development, tests and when the PWA backend pushes check-ins
    through ``POST /api/presence/changed``.
    """

    def __init__(self, present: Optional[Iterable[str]] = None) -> None:
        self._lock = threading.Lock()
        self._present: Dict[str, float] = {user: time.time() for user in (present or ())}
        self._listeners: List[Callable[[], None]] = []

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as exc:
                _LOGGER.error("❌ Presence listener %s failed: %s", getattr(listener, "__name__", listener), exc)

    def check_in(self, user_id: str) -> bool:
        with self._lock:
            changed = user_id not in self._present
            self._present.setdefault(user_id, time.time())
        if changed:
            _LOGGER.info("👋 %s checked in", user_id)
            self._notify()
        return changed

    def check_out(self, user_id: str) -> bool:
        with self._lock:
            changed = self._present.pop(user_id, None) is not None
        if changed:
            _LOGGER.info("🚪 %s checked out", user_id)
            self._notify()
        return changed

    def replace(self, users: Iterable[str]) -> None:
        """Set the full present list (webhook sync)."""
        now = time.time()
        with self._lock:
            new = {user: self._present.get(user, now) for user in users}
            changed = set(new) != set(self._present)
            self._present = new
        if changed:
            self._notify()

    def check_out_all(self) -> int:
        with self._lock:
            count = len(self._present)
            self._present.clear()
        if count:
            _LOGGER.info("🌙 Checked out %d users", count)
            self._notify()
        return count

    def present_users(self) -> Set[str]:
        with self._lock:
            return set(self._present)

    def current_count(self) -> int:
        with self._lock:
            return len(self._present)

    def is_user_eligible(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._present


class HttpPresenceProvider:
    """Reads the present list from the presence service.

    Expects ``GET <url>`` to answer ``{"users": [...]}`` (or a bare list).
    Answers are cached for ``cache_seconds``; when the service is down the
    last known list is used so voting keeps working.
    """

    def __init__(self, url: str, *, cache_seconds: float = 5.0, session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.cache_seconds = cache_seconds
        self._session = session
        self._lock = threading.Lock()
        self._users: Set[str] = set()
        self._fetched_at: float = 0.0

    def _fetch(self) -> Set[str]:
        session = self._session or get_http_session()
        response = session.get(self.url)
        response.raise_for_status()
        body = response.json()
        users = body.get("users", []) if isinstance(body, dict) else body
        return {str(entry.get("id") if isinstance(entry, dict) else entry) for entry in users}

    def _snapshot(self) -> Set[str]:
        with self._lock:
            if time.monotonic() - self._fetched_at < self.cache_seconds:
                return self._users
            try:
                self._users = self._fetch()
            except (requests.RequestException, ValueError) as exc:
                _LOGGER.warning("⚠️ Presence lookup failed, using last known list (%d users): %s", len(self._users), exc)
            self._fetched_at = time.monotonic()
            return self._users

    def invalidate(self) -> None:
        with self._lock:
            self._fetched_at = 0.0

    def current_count(self) -> int:
        return len(self._snapshot())

    def is_user_eligible(self, user_id: str) -> bool:
        return user_id in self._snapshot()
