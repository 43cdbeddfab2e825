"""Shared fixtures."""

import pytest

from crabgate.bus.queue import MessageBus
from fakes import FakeClock


@pytest.fixture
def bus() -> MessageBus:
    return MessageBus(capacity=100)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
