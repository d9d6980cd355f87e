"""Shared pytest fixtures for the Concord test suite."""

from __future__ import annotations

import os

# Must be set before concord modules read them at import time
os.environ.setdefault("CONCORD_DISABLE_RATE_LIMIT", "1")
os.environ.setdefault("CONCORD_FILE_LOGS", "0")
os.environ.setdefault("CONCORD_ENV", "testing")

import pytest

from concord.api.actuator import InMemoryActuator
from concord.api.presence import InMemoryPresence
from concord.app import create_app
from concord.config_schema import FeatureConfig
from concord.core.engine import FeatureEngine
from concord.core.scheduler import SchedulerLoop
from concord.services.service_manager import ServiceManager, set_service_manager

OFFICE = ["alice", "bob", "carol", "dave"]

FEATURES = {
    "music": {
        "mode": "queue",
        "queue_limit": 50,
        "retire_played": True,
        "targets": [{"id": "speaker"}],
    },
    "frames": {
        "mode": "queue",
        "queue_limit": 10,
        "targets": [
            {"id": "1", "classifications": ["horizontal"]},
            {"id": "2", "classifications": ["horizontal"]},
            {"id": "3", "classifications": ["vertical"]},
            {"id": "4", "classifications": ["vertical"]},
        ],
    },
    "patterns": {
        "mode": "leaderboard",
        "queue_limit": 25,
        "retire_played": True,
        "targets": [{"id": "sand-table"}],
    },
    "leds": {
        "mode": "queue",
        "queue_limit": 25,
        "retire_played": True,
        "targets": [{"id": "sand-table-led"}],
    },
}


class FakeClock:
    """Manually advanced clock usable as both wall and monotonic time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def presence() -> InMemoryPresence:
    return InMemoryPresence(OFFICE)


@pytest.fixture
def actuator() -> InMemoryActuator:
    return InMemoryActuator()


@pytest.fixture
def scheduler(clock) -> SchedulerLoop:
    loop = SchedulerLoop(inline_actuation=True, monotonic=clock)
    yield loop
    loop.stop(timeout=1.0)


@pytest.fixture
def make_engine(presence, actuator, scheduler, clock):
    """Build a feature engine from one of ``FEATURES`` plus overrides."""

    def _make(feature_id: str = "music", **overrides) -> FeatureEngine:
        settings = FeatureConfig(**{**FEATURES.get(feature_id, {}), **overrides})
        return FeatureEngine(
            feature_id, settings, presence, actuator, scheduler, clock=clock, monotonic=clock
        )

    return _make


@pytest.fixture
def service_manager(presence, actuator, scheduler) -> ServiceManager:
    manager = ServiceManager(
        {"environment": "testing", "features": FEATURES},
        presence=presence,
        actuator=actuator,
        scheduler=scheduler,
    )
    yield manager
    set_service_manager(None)


@pytest.fixture
def app(service_manager):
    flask_app = create_app(service_manager=service_manager, start_scheduler=False)
    flask_app.config.update({"TESTING": True})
    return flask_app


@pytest.fixture
def client(app):
    """Provide a fresh Flask test client for each test."""
    with app.test_client() as test_client:
        yield test_client
