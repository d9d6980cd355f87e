"""Actuators: the devices that actually play what the queue decided.

``perform_transition`` is best-effort; the scheduler retries until the
device confirms. ``current_payload`` (optional) reports what the device is
playing so external changes (someone skipped in the Spotify app) can be
detected.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Protocol

import requests

from ..core.models import Item
from .http import get_http_session

_LOGGER = logging.getLogger("concord.actuator")


class ActuationError(RuntimeError):
    """Device did not accept the transition."""


class Actuator(Protocol):
    def perform_transition(self, target_id: str, item: Optional[Item]) -> None: ...

    def current_payload(self, target_id: str) -> Optional[str]: ...


class InMemoryActuator:
    """Records transitions instead of driving hardware."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._playing: Dict[str, Optional[str]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.fail_next = 0

    def perform_transition(self, target_id: str, item: Optional[Item]) -> None:
        with self._lock:
            if self.fail_next > 0:
                self.fail_next -= 1
                raise ActuationError(f"Simulated failure on {target_id}")
            payload = item.payload if item else None
            self._playing[target_id] = payload
            self.calls.append({"target": target_id, "item": item.item_id if item else None, "payload": payload})
        _LOGGER.debug("🎬 %s now playing %s", target_id, payload)

    def current_payload(self, target_id: str) -> Optional[str]:
        with self._lock:
            return self._playing.get(target_id)

    def set_external(self, target_id: str, payload: Optional[str]) -> None:
        """Simulate the device changing on its own."""
        with self._lock:
            self._playing[target_id] = payload


class HttpActuator:
    """Posts transitions to a device bridge (Home Assistant, frame display, table).

    ``POST <base_url>/targets/<id>/play`` with the item, and
    ``GET <base_url>/targets/<id>/now-playing`` returning ``{"payload": ...}``.
    """

    def __init__(self, base_url: str, *, token: Optional[str] = None, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._session = session

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"} if self._token else {}

    def perform_transition(self, target_id: str, item: Optional[Item]) -> None:
        session = self._session or get_http_session()
        body = {"item": item.to_dict() if item else None}
        try:
            response = session.post(f"{self.base_url}/targets/{target_id}/play", json=body, headers=self._headers())
        except requests.RequestException as exc:
            raise ActuationError(f"Device bridge unreachable for {target_id}: {exc}") from exc
        if response.status_code >= 400:
            raise ActuationError(f"Device bridge rejected {target_id}: HTTP {response.status_code}")

    def current_payload(self, target_id: str) -> Optional[str]:
        session = self._session or get_http_session()
        try:
            response = session.get(f"{self.base_url}/targets/{target_id}/now-playing", headers=self._headers())
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json().get("payload")
        except (requests.RequestException, ValueError) as exc:
            _LOGGER.debug("now-playing lookup failed for %s: %s", target_id, exc)
            return None


class NullActuator:
    """Accepts every transition; used when no device bridge is configured."""

    def perform_transition(self, target_id: str, item: Optional[Item]) -> None:
        _LOGGER.debug("No actuator configured; %s -> %s", target_id, item.payload if item else None)

    def current_payload(self, target_id: str) -> Optional[str]:
        return None
