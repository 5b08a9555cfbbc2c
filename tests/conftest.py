import asyncio

import pytest


def addr(n):
    """Deterministic lowercase hex address for fixtures."""
    return "0x" + format(n, "040x")


@pytest.fixture
def sleeps(monkeypatch):
    """Replace asyncio.sleep with a recorder so backoff paths run instantly."""
    delays = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay, *args, **kwargs):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return delays


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
