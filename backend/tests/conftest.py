"""
Shared fixtures: a controllable wall clock and in-memory stores.
"""
import sys
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from resilience.settings import SupervisorConfig
from resilience.store import SupervisorStore

T0 = 1_700_000_000_000  # arbitrary epoch ms


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms

    def set(self, ms: int):
        self.now = ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return SupervisorConfig()


@pytest.fixture
def memory_store(clock):
    store = SupervisorStore.ephemeral_store(clock=clock)
    yield store
    store.close()
