"""Shared fixtures: a controllable clock and a recording sleep."""

from __future__ import annotations

import pytest


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records delays and optionally moves a clock."""

    def __init__(self, clock: FakeClock | None = None):
        self.delays = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.advance(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def clocked_sleep(clock):
    return RecordingSleep(clock)
