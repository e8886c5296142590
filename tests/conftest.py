"""Shared fixtures for Scribble tests."""

import pytest

from scribble.store import KeyValueStore


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    """A clock starting at a fixed, realistic millisecond timestamp."""
    return FakeClock(1_760_000_000_000)


@pytest.fixture
def store():
    """Create an in-memory key/value store."""
    store = KeyValueStore(":memory:")
    store.connect()
    yield store
    store.close()
