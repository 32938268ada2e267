"""Shared fakes for the unit tests: a controllable clock and light."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

import pytest

from homebridge_controller import state
from homebridge_controller.light_controller import (
    LightCommand,
    LightController,
    LightObservedState,
)
from homebridge_controller.transitions import MonotonicClock


class FakeClock(MonotonicClock):
    """Clock whose sleeps advance time instantly.

    Monotonic time and wall time advance together. Each sleeper advances
    time on its own, so use SteppingClock when two tasks sleep concurrently.
    """

    def __init__(self, wall: Optional[datetime] = None):
        self.t = 0.0
        self.wall = wall or datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    def wall_now(self) -> datetime:
        return self.wall

    def advance(self, seconds: float) -> None:
        self.t += seconds
        self.wall += timedelta(seconds=seconds)

    async def sleep(self, delay: float, wake: Optional[asyncio.Event] = None) -> None:
        self.sleeps.append(delay)
        if wake is None or not wake.is_set():
            self.advance(max(0.0, delay))
        await asyncio.sleep(0)


class SteppingClock(FakeClock):
    """Clock shared by several tasks sleeping at once.

    Sleeps park until ``drive`` moves time to the earliest deadline, so
    concurrent sleepers share one timeline instead of each advancing it.
    """

    def __init__(self, wall: Optional[datetime] = None):
        super().__init__(wall)
        self._sleepers = []

    async def sleep(self, delay: float, wake: Optional[asyncio.Event] = None) -> None:
        self.sleeps.append(delay)
        if wake is not None and wake.is_set():
            await asyncio.sleep(0)
            return

        future = asyncio.get_running_loop().create_future()
        entry = (self.t + max(0.0, delay), future)
        self._sleepers.append(entry)
        waiter = None
        if wake is not None:
            def woken(_):
                if not future.done():
                    future.set_result(None)

            waiter = asyncio.ensure_future(wake.wait())
            waiter.add_done_callback(woken)
        try:
            await future
        finally:
            self._sleepers.remove(entry)
            if waiter is not None:
                waiter.cancel()

    async def drive(self, awaitable, max_steps: int = 10000):
        """Run ``awaitable`` to completion, jumping time from one deadline to the next."""
        task = asyncio.ensure_future(awaitable)
        for _ in range(max_steps):
            for _ in range(20):
                await asyncio.sleep(0)
            if task.done():
                return task.result()
            deadlines = [d for d, f in self._sleepers if not f.done()]
            if not deadlines:
                continue
            deadline = min(deadlines)
            if deadline > self.t:
                self.advance(deadline - self.t)
            for d, f in list(self._sleepers):
                if d <= self.t + 1e-9 and not f.done():
                    f.set_result(None)
        task.cancel()
        raise AssertionError(f"Still running after {max_steps} steps")


class FakeLight(LightController):
    """In-memory light.

    ``set_errors``/``get_errors`` are consumed one per call; ``None`` entries
    mean the call succeeds. ``observed`` overrides what ``get`` reports, one
    entry per call, the last entry repeating. ``after_set`` runs after every
    successful command.
    """

    def __init__(self, power: bool = False, brightness: int = 0, hue: Optional[float] = None):
        self.power = power
        self.brightness = brightness
        self.hue = hue
        self.commands: List[LightCommand] = []
        self.set_calls = 0
        self.get_calls = 0
        self.set_errors: List[Optional[Exception]] = []
        self.get_errors: List[Optional[Exception]] = []
        self.observed: List[LightObservedState] = []
        self.after_set = None

    async def set(self, command: LightCommand) -> None:
        self.set_calls += 1
        if self.set_errors:
            error = self.set_errors.pop(0)
            if error is not None:
                raise error
        self.commands.append(command)
        if command.power is not None:
            self.power = command.power
        if command.brightness is not None:
            self.brightness = command.brightness
        if command.hue is not None:
            self.hue = command.hue
        if self.after_set is not None:
            self.after_set(self)

    async def get(self) -> LightObservedState:
        self.get_calls += 1
        if self.get_errors:
            error = self.get_errors.pop(0)
            if error is not None:
                raise error
        if self.observed:
            return self.observed.pop(0) if len(self.observed) > 1 else self.observed[0]
        return LightObservedState(power=self.power, brightness=self.brightness, hue=self.hue)


class StubSolar:
    """Sun times fixed per time of day, optionally undefined on some dates."""

    def __init__(self, sunrise=(6, 45), sunset=(18, 0), tz=timezone.utc, undefined=()):
        self._sunrise = sunrise
        self._sunset = sunset
        self.tz = tz
        self.undefined = set(undefined)

    def _at(self, day: date, hm, event: str) -> datetime:
        from homebridge_controller.suntimes import SolarUndefined

        if day in self.undefined:
            raise SolarUndefined(day, event)
        return datetime(day.year, day.month, day.day, hm[0], hm[1], tzinfo=self.tz)

    def sunrise(self, day: date) -> datetime:
        return self._at(day, self._sunrise, "sunrise")

    def sunset(self, day: date) -> datetime:
        return self._at(day, self._sunset, "sunset")


@pytest.fixture(autouse=True)
def memory_state():
    """Every test starts with empty, in-memory run records."""
    state.init(None)
    yield
    state.init(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def light():
    return FakeLight()
