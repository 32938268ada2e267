#!/usr/bin/env python3
"""Transition executor - gradual brightness/hue changes.

A transition linearly interpolates from start to end values over a duration,
one tick at a time. Ticks are placed on absolute offsets from the start so a
slow device call never pushes later ticks back. The executor only talks to
the device through the ``on_tick`` coroutine it is handed, and it stops at
the next tick boundary once the cancel event is set.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from .light_controller import (
    BRIGHTNESS_MAX,
    BRIGHTNESS_MIN,
    COMMAND_RETRY,
    HUE_MAX,
    HUE_MIN,
    HUE_RESOLUTION,
    DeviceUnreachable,
    LightCommand,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

# Consecutive ticks whose retries are exhausted before the transition fails
MAX_FAILED_TICKS = 3


class TransitionOutcome(Enum):
    """How a transition ended."""
    COMPLETED = "completed"
    CANCELLED = "cancelled"  # light turned off by someone else, or shutdown
    FAILED = "failed"  # device unreachable for too many ticks in a row


class MonotonicClock:
    """Monotonic time source with event-aware sleeping."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, delay: float, wake: Optional[asyncio.Event] = None) -> None:
        """Sleep for ``delay`` seconds, returning early if ``wake`` is set."""
        if wake is None:
            await asyncio.sleep(max(0.0, delay))
            return
        try:
            await asyncio.wait_for(wake.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            pass


@dataclass(frozen=True)
class LightValues:
    """Brightness (integer percent) and optional hue (degrees)."""
    brightness: int
    hue: Optional[float] = None


@dataclass
class TransitionState:
    """Mutable progress of one running transition."""
    fraction: float = 0.0
    ticks: int = 0
    commands_sent: int = 0
    consecutive_failures: int = 0
    last_sent: Optional[LightValues] = None


class _Cancelled(Exception):
    pass


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def _lerp(start: float, end: float, fraction: float) -> float:
    return start + fraction * (end - start)


def interpolate(start: LightValues, end: LightValues, fraction: float) -> LightValues:
    """Linear interpolation between two light values.

    Brightness is rounded to whole percent and hue to the device's hue
    resolution. Hue never wraps around 360. When only one side has a hue,
    that hue is held constant.
    """
    fraction = clamp(fraction, 0.0, 1.0)
    brightness = round(_lerp(start.brightness, end.brightness, fraction))
    brightness = int(clamp(brightness, BRIGHTNESS_MIN, BRIGHTNESS_MAX))

    if start.hue is None and end.hue is None:
        hue = None
    elif start.hue is None or end.hue is None:
        hue = start.hue if start.hue is not None else end.hue
    else:
        hue = _lerp(start.hue, end.hue, fraction)

    if hue is not None:
        hue = round(hue / HUE_RESOLUTION) * HUE_RESOLUTION
        hue = float(clamp(hue, HUE_MIN, HUE_MAX))

    return LightValues(brightness=brightness, hue=hue)


def value_at(start: LightValues, end: LightValues, elapsed: float, duration: float) -> LightValues:
    """Values a transition should show ``elapsed`` seconds in."""
    if duration <= 0:
        return interpolate(start, end, 1.0)
    return interpolate(start, end, elapsed / duration)


class TransitionExecutor:
    """Run transitions against a command sink."""

    def __init__(
        self,
        *,
        retry: RetryPolicy = COMMAND_RETRY,
        max_failed_ticks: int = MAX_FAILED_TICKS,
        clock: Optional[MonotonicClock] = None,
    ):
        self.retry = retry
        self.max_failed_ticks = max_failed_ticks
        self.clock = clock or MonotonicClock()
        self.state: Optional[TransitionState] = None

    async def run(
        self,
        start: LightValues,
        end: LightValues,
        duration: float,
        tick_interval: float,
        on_tick: Callable[[LightCommand], Awaitable[None]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TransitionOutcome:
        """Drive the light from ``start`` to ``end`` over ``duration`` seconds.

        Args:
            start: Values for the first command (sent at t=0, with power on)
            end: Values for the last command (sent at t=duration)
            duration: Length of the transition in seconds
            tick_interval: Seconds between ticks
            on_tick: Coroutine that applies one command to the device
            cancel_event: When set, the transition stops before the next send

        Returns:
            The outcome. DeviceRejected from ``on_tick`` is not caught.
        """
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        cancel_event = cancel_event or asyncio.Event()

        state = TransitionState()
        self.state = state
        started = self.clock.now()
        logger.info(
            f"Starting transition {start} -> {end} over {duration:.0f}s "
            f"(tick {tick_interval:g}s)"
        )

        try:
            while True:
                if state.ticks == 0:
                    fraction = 0.0
                elif duration <= 0:
                    fraction = 1.0
                else:
                    fraction = clamp((self.clock.now() - started) / duration, 0.0, 1.0)
                state.fraction = fraction
                final = fraction >= 1.0

                if cancel_event.is_set():
                    raise _Cancelled()

                values = interpolate(start, end, fraction)
                sent = True
                if state.ticks == 0 or final or values != state.last_sent:
                    sent = await self._send(state, values, on_tick, cancel_event, tick_interval)
                    if not sent and state.consecutive_failures >= self.max_failed_ticks:
                        logger.error(
                            f"Transition failed: device unreachable for "
                            f"{state.consecutive_failures} consecutive ticks"
                        )
                        return TransitionOutcome.FAILED
                else:
                    logger.debug(f"Tick {state.ticks}: {values} unchanged, nothing sent")

                state.ticks += 1

                if final and sent:
                    logger.info(
                        f"Transition complete at {values} "
                        f"({state.commands_sent} commands over {state.ticks} ticks)"
                    )
                    return TransitionOutcome.COMPLETED

                if final:
                    # The end value did not get through; try again a tick later
                    delay = tick_interval
                else:
                    next_at = started + state.ticks * tick_interval
                    if duration > 0:
                        next_at = min(next_at, started + duration)
                    delay = next_at - self.clock.now()
                await self.clock.sleep(delay, cancel_event)

        except _Cancelled:
            logger.info(
                f"Transition cancelled at {state.fraction:.0%} "
                f"(last sent {state.last_sent})"
            )
            return TransitionOutcome.CANCELLED
        finally:
            self.state = None

    async def _send(
        self,
        state: TransitionState,
        values: LightValues,
        on_tick: Callable[[LightCommand], Awaitable[None]],
        cancel_event: asyncio.Event,
        tick_interval: float,
    ) -> bool:
        """Send one tick's values; False if the retries were exhausted.

        Backoff between attempts never runs past the next tick and ends
        early when the cancel event is set.
        """
        command = LightCommand(
            power=True if state.last_sent is None else None,
            brightness=values.brightness,
            hue=values.hue,
        )

        async def attempt():
            if cancel_event.is_set():
                raise _Cancelled()
            await on_tick(command)

        logger.debug(f"Tick {state.ticks} ({state.fraction:.0%}): sending {command}")
        try:
            await self.retry.call(
                attempt,
                description=f"Transition tick {state.ticks}",
                sleep=lambda delay: self.clock.sleep(delay, cancel_event),
                budget=tick_interval,
            )
        except DeviceUnreachable:
            state.consecutive_failures += 1
            logger.warning(
                f"Skipping tick {state.ticks}: device unreachable "
                f"({state.consecutive_failures}/{self.max_failed_ticks})"
            )
            return False

        state.last_sent = values
        state.commands_sent += 1
        state.consecutive_failures = 0
        return True
