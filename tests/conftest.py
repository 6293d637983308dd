import asyncio

import pytest

from hamsafar.gateway.upstream import BaseUpstream


class FakeClock:
    """Monotonic clock whose sleeps advance time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        # Yield before advancing so tasks that are ready now read the
        # clock at the moment they were scheduled
        self.sleeps.append(seconds)
        await asyncio.sleep(0)
        self.now += seconds


class ScriptedUpstream(BaseUpstream):
    """Upstream double that plays back a script of outcomes.

    Each outcome is a reply string, an exception instance to raise, or an
    async callable taking the prompt. When the script runs out every call
    answers "reply to <prompt>".
    """

    name = "scripted"

    def __init__(self, outcomes=None, clock: FakeClock | None = None):
        self.outcomes = list(outcomes or [])
        self.clock = clock
        self.calls: list[str] = []
        self.call_times: list[float] = []

    async def generate(self, prompt: str) -> str:
        self.calls.append(prompt)
        if self.clock is not None:
            self.call_times.append(self.clock())

        outcome = self.outcomes.pop(0) if self.outcomes else f"reply to {prompt}"
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(prompt)
        return outcome


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scripted():
    """Factory for ScriptedUpstream instances."""
    return ScriptedUpstream
