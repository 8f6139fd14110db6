import pytest

from planning_poker.server.coordinator import SessionCoordinator
from planning_poker.server.settings import CoordinatorConfig


class FakeClock:
    """Manually advanced wall clock for expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_coordinator(clock):
    def _make(**overrides) -> SessionCoordinator:
        return SessionCoordinator(CoordinatorConfig(**overrides), clock=clock)

    return _make
