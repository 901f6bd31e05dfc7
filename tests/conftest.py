"""Pytest configuration and fixtures for ARMADA tests."""

from collections.abc import Generator

import pytest

from armada.config import ArmadaConfig
from armada.events import EventBus, EventRecorder
from armada.types import Feature
from tests.helpers.fake_clock import FakeClock


@pytest.fixture(autouse=True)
def _fresh_config_cache() -> Generator[None, None, None]:
    """Keep the config singleton cache from leaking between tests."""
    ArmadaConfig.invalidate_cache()
    yield
    ArmadaConfig.invalidate_cache()


@pytest.fixture
def bus() -> EventBus:
    """In-memory event bus."""
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    """Recorder subscribed to the ``bus`` fixture.

    Returns:
        EventRecorder collecting every emitted event
    """
    return EventRecorder(bus)


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock whose sleeps return immediately and advance time."""
    return FakeClock()


@pytest.fixture
def manual_clock() -> FakeClock:
    """Fake clock whose sleepers wait for an explicit advance()."""
    return FakeClock(auto_advance=False)


@pytest.fixture
def diamond_features() -> list[Feature]:
    """A,B independent; C needs A; D needs B; E needs C and D.

    Returns:
        Features in declaration order
    """
    return [
        Feature(id="A", capability="backend"),
        Feature(id="B", capability="frontend"),
        Feature(id="C", capability="backend", dependencies=("A",)),
        Feature(id="D", capability="frontend", dependencies=("B",)),
        Feature(id="E", capability="tester", dependencies=("C", "D")),
    ]
