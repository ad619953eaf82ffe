"""Injectable time source and cooperative sleeping for the epoch loop."""
import asyncio
import contextlib
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float, stop: asyncio.Event | None = None) -> None: ...


class SystemClock:
    """Wall-clock time; sleeps wake early when ``stop`` is set."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float, stop: asyncio.Event | None = None) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        if stop is None:
            await asyncio.sleep(seconds)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=seconds)


class FakeClock:
    """Virtual time for tests and simulations: sleeping advances ``now`` instantly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = float(start)
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float, stop: asyncio.Event | None = None) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        self._now += seconds
        await asyncio.sleep(0)


async def sleep_bounded(
    clock: Clock,
    seconds: float,
    max_step: float,
    stop: asyncio.Event | None = None,
) -> None:
    """Sleep ``seconds`` in steps no longer than ``max_step``, returning early on stop."""
    remaining = seconds
    while remaining > 0:
        if stop is not None and stop.is_set():
            return
        step = min(remaining, max_step)
        await clock.sleep(step, stop)
        remaining -= step
