"""Global pytest configuration and fixtures for driver telemetry tests.

This module provides shared pytest fixtures used across all test modules,
including configuration reset for test isolation and local collaborator
backends.
"""

import asyncio
from collections.abc import Callable
from typing import Generator

import pytest

from telemetry.local_backends import InMemoryDocumentStore, InMemoryKeyValueStore, LoggingNotificationSink
from telemetry.tracking_models import Coordinate, PositionFix

# Zone center used across tests
CENTER_LAT = 14.0
CENTER_LNG = 121.0

# Degrees of latitude per meter (haversine with R = 6371 km)
DEG_PER_M = 1 / 111194.93


class ManualClock:
    """Millisecond clock advanced explicitly by tests."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> int:
        self.now_ms += ms
        return self.now_ms


@pytest.fixture(autouse=True, scope="function")
def reset_config_fixture() -> Generator[None, None, None]:
    """Automatically reset configuration before and after each test.

    Yields:
        Generator: Control to the test function
    """
    from telemetry.config import reset_config

    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def local_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def notifier() -> LoggingNotificationSink:
    return LoggingNotificationSink()


@pytest.fixture
def north_of() -> Callable[[float], Coordinate]:
    """Coordinate ``meters`` north of the test zone center."""

    def _north_of(meters: float) -> Coordinate:
        return Coordinate(CENTER_LAT + meters * DEG_PER_M, CENTER_LNG)

    return _north_of


@pytest.fixture
def make_fix() -> Callable[..., PositionFix]:
    """Build a fix ``meters`` north of the test zone center."""

    def _make_fix(timestamp_ms: int, meters: float = 0.0, speed_mps: float | None = None) -> PositionFix:
        return PositionFix(
            latitude=CENTER_LAT + meters * DEG_PER_M,
            longitude=CENTER_LNG,
            timestamp_ms=timestamp_ms,
            speed_mps=speed_mps,
        )

    return _make_fix


@pytest.fixture
def wait_until() -> Callable[..., object]:
    """Poll a predicate while letting background tasks run."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                return False
            await asyncio.sleep(0.01)
        return True

    return _wait_until
