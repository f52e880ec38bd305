"""
Pytest configuration and fixtures for taskfeed tests.
"""
import pytest

from taskfeed.config import Settings
from taskfeed.store import MemoryStore


@pytest.fixture
async def store():
    """Create and connect a memory store for testing."""
    store = MemoryStore()
    await store.connect()
    yield store
    await store.disconnect()


@pytest.fixture
def settings():
    """Settings that ignore the environment's .env file."""
    return Settings(
        _env_file=None,
        worker_id="worker-test",
        sweep_interval_seconds=60.0,
    )


@pytest.fixture
def settle(store):
    """
    Wait until change delivery and the given components are quiet.

    Handlers write new changes, so delivery and draining alternate a few times.
    """
    async def _settle(*components, rounds: int = 5):
        for _ in range(rounds):
            await store.flush()
            for component in components:
                await component.drain()
        await store.flush()
    return _settle


class FakeClock:
    """Manually advanced epoch clock for lease expiry tests."""

    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    import time
    return FakeClock(time.time())
