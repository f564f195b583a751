"""
Shared fixtures for the chatrelay test suite.
"""

import pytest

from chatrelay.store import MessageStore


class FakeClock:
    """Deterministic millisecond clock; advances by `step` on every call."""

    def __init__(self, start=1_700_000_000_000, step=1000):
        self.now = start
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """An empty store using the fake clock."""
    return MessageStore(clock=clock)


def make_message(message_id, text="hi", **extra):
    """Build a message the way the web client sends it."""
    message = {"id": message_id, "text": text, "timestamp": 1, "editHistory": []}
    message.update(extra)
    return message
