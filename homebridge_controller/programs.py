#!/usr/bin/env python3
"""Light programs - one lifecycle per configured program.

Each program cycles through

    IDLE -> SCHEDULED -> RUNNING -> {COMPLETED, CANCELLED, FAILED, SKIPPED} -> IDLE

where the return to IDLE happens at local midnight. Programs run as
independent asyncio tasks and share nothing but the read-only location
context and the light controller.

Key rules
---------
* COMPLETED and CANCELLED mark today's run record; FAILED and SKIPPED do not.
* A program whose run record is already marked for today sends nothing.
* An inactive program never leaves IDLE/SKIPPED.
* Shutdown lets the command in flight finish, then stops without recording.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Callable, List, Optional

from .configuration import (
    Configuration,
    EveningLightsConfig,
    GeoTimeContext,
    MorningLightsConfig,
    TurnMorningLightsOffConfig,
)
from .light_controller import (
    COMMAND_RETRY,
    POLL_RETRY,
    DeviceError,
    DeviceRejected,
    DeviceUnreachable,
    LightCommand,
    LightController,
    LightObservedState,
)
from .monitor import DEFAULT_TOLERANCE, CancellationMonitor, CommandLedger
from .planner import Anchor, SunTimes, next_trigger
from .state import RunRecord
from .suntimes import SolarClock, SolarUndefined
from .transitions import (
    LightValues,
    MonotonicClock,
    TransitionExecutor,
    TransitionOutcome,
)

logger = logging.getLogger(__name__)


class ProgramState(Enum):
    """Lifecycle state of a program for the current day."""
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SKIPPED = "skipped"


_OUTCOME_STATES = {
    TransitionOutcome.COMPLETED: ProgramState.COMPLETED,
    TransitionOutcome.CANCELLED: ProgramState.CANCELLED,
    TransitionOutcome.FAILED: ProgramState.FAILED,
}


def next_midnight(day: date, tz) -> datetime:
    """Start of the day after ``day`` in ``tz``."""
    return datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz)


class Program(ABC):
    """Base class: planning, waiting, gating and run bookkeeping."""

    name = "program"

    def __init__(
        self,
        geo: GeoTimeContext,
        controller: LightController,
        anchor: Anchor,
        *,
        active: bool = True,
        solar: Optional[SunTimes] = None,
        program_loop_pause: float = 60.0,
        tick_interval: float = 5.0,
        tolerance: float = DEFAULT_TOLERANCE,
        now: Optional[Callable[[], datetime]] = None,
        clock: Optional[MonotonicClock] = None,
    ):
        self.geo = geo
        self.controller = controller
        self.anchor = anchor
        self.active = active
        self.solar = solar or SolarClock(geo)
        self.program_loop_pause = program_loop_pause
        self.tick_interval = tick_interval
        self.tolerance = tolerance
        self.clock = clock or MonotonicClock()
        self._now = now or (lambda: datetime.now(geo.tzinfo))

        self.state = ProgramState.IDLE
        self.trigger: Optional[datetime] = None
        self.day: Optional[date] = None
        self.run_record = RunRecord(self.name)
        self._solar_undefined_day: Optional[date] = None
        self._stopping = False
        self._wake: Optional[asyncio.Event] = None  # created lazily in the running loop
        self._cancel: Optional[asyncio.Event] = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.anchor.describe()} state={self.state.value}>"

    @property
    def wake_event(self) -> asyncio.Event:
        if self._wake is None:
            self._wake = asyncio.Event()
        return self._wake

    # ------------------------------------------------------------------
    # External control
    # ------------------------------------------------------------------

    def set_active(self, active: bool) -> None:
        """Activate/deactivate; a waiting program re-plans immediately."""
        if active != self.active:
            logger.info(f"[{self.name}] {'activated' if active else 'deactivated'}")
        self.active = active
        self.wake_event.set()

    def stop(self) -> None:
        """Ask the program to stop after the command in flight, if any."""
        self._stopping = True
        self.wake_event.set()
        if self._cancel is not None:
            self._cancel.set()

    # ------------------------------------------------------------------
    # State machine steps
    # ------------------------------------------------------------------

    def rollover(self, now: datetime) -> None:
        """Reset to IDLE when the local date has changed."""
        today = now.date()
        if self.day == today:
            return
        if self.day is not None:
            logger.info(f"[{self.name}] Midnight rollover ({self.day} -> {today})")
        self.day = today
        self.state = ProgramState.IDLE
        self.trigger = None
        self.run_record.rollover(today)

    def plan(self, now: datetime) -> Optional[datetime]:
        """Compute the next trigger. Returns None if nothing is due today."""
        self.rollover(now)
        today = now.date()

        if not self.active:
            if self.state is not ProgramState.SKIPPED:
                logger.info(f"[{self.name}] Program inactive - nothing to do.")
            self.state = ProgramState.SKIPPED
            self.trigger = None
            return None

        # Already ran today: the earliest possible run is tomorrow
        after = now
        if self.run_record.is_done(today):
            after = max(now, next_midnight(today, now.tzinfo))

        try:
            trigger = next_trigger(self.anchor, after, self.solar)
        except SolarUndefined as e:
            if self._solar_undefined_day != today:
                logger.warning(f"[{self.name}] {e} - program suspended for today")
                self._solar_undefined_day = today
            self.state = ProgramState.SKIPPED
            self.trigger = None
            return None

        self.trigger = trigger
        self.state = ProgramState.SCHEDULED
        logger.info(f"[{self.name}] Next run {self.anchor.describe()}: {trigger.isoformat()}")
        return trigger

    async def fire(self, now: datetime) -> ProgramState:
        """Run the program once now, enforcing the gating rules."""
        today = now.date()
        if not self.active:
            logger.info(f"[{self.name}] Program inactive - nothing to do.")
            self.state = ProgramState.SKIPPED
            return self.state

        if self.run_record.is_done(today):
            logger.info(f"[{self.name}] Already ran today - nothing to do.")
            self.state = ProgramState.IDLE
            return self.state

        if not self.may_run(now):
            self.state = ProgramState.IDLE
            return self.state

        logger.info(f"[{self.name}] Running")
        self.state = ProgramState.RUNNING
        try:
            outcome = await self.execute(now)
        except DeviceRejected as e:
            logger.error(f"[{self.name}] Device rejected a command, aborting: {e}")
            outcome = TransitionOutcome.FAILED

        if self._stopping and outcome is TransitionOutcome.CANCELLED:
            logger.info(f"[{self.name}] Interrupted by shutdown - not recording the run")
            self.state = ProgramState.IDLE
            return self.state

        self.state = _OUTCOME_STATES[outcome]
        if outcome is TransitionOutcome.FAILED:
            logger.error(f"[{self.name}] Run failed - not recorded as done")
        else:
            self.run_record.mark_done(today)
            if outcome is TransitionOutcome.CANCELLED:
                self.on_cancelled(now)
            logger.info(f"[{self.name}] Run {outcome.value}")
        return self.state

    def may_run(self, now: datetime) -> bool:
        """Program-specific gate checked right before running."""
        return True

    def on_cancelled(self, now: datetime) -> None:
        """Hook for programs that react to an external cancellation."""
        pass

    @abstractmethod
    async def execute(self, now: datetime) -> TransitionOutcome:
        """Perform the program's device actions."""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def run_transition(
        self, start: LightValues, end: LightValues, duration: float
    ) -> TransitionOutcome:
        """Run a transition supervised by a cancellation monitor."""
        cancel = asyncio.Event()
        self._cancel = cancel
        if self._stopping:
            cancel.set()

        ledger = CommandLedger(self.clock)

        async def send(command: LightCommand) -> None:
            ledger.record(command)
            await self.controller.set(command)
            ledger.confirm(command)

        monitor = CancellationMonitor(
            self.controller,
            ledger,
            cancel,
            poll_interval=self.tick_interval,
            tolerance=self.tolerance,
            clock=self.clock,
        )
        executor = TransitionExecutor(clock=self.clock)
        monitor_task = asyncio.create_task(monitor.run())
        try:
            return await executor.run(start, end, duration, self.tick_interval, send, cancel)
        finally:
            monitor_task.cancel()
            results = await asyncio.gather(monitor_task, return_exceptions=True)
            if isinstance(results[0], Exception):
                logger.error(f"[{self.name}] Cancellation monitor crashed: {results[0]}")
            self._cancel = None

    async def _wait_until(self, instant: datetime) -> bool:
        """Sleep until ``instant``. False if woken early (stop/re-plan)."""
        while not self._stopping:
            wake = self.wake_event
            if wake.is_set():
                wake.clear()
                return False
            remaining = (instant - self._now()).total_seconds()
            if remaining <= 0:
                return True
            await self.clock.sleep(min(remaining, self.program_loop_pause), wake)
        return False

    async def run_forever(self) -> None:
        """Plan, wait, run, and wait for midnight, until stopped."""
        logger.info(f"[{self.name}] Starting program loop")
        while not self._stopping:
            try:
                now = self._now()
                trigger = self.plan(now)
                if trigger is None:
                    await self._wait_until(next_midnight(now.date(), now.tzinfo))
                    continue

                if not await self._wait_until(trigger):
                    continue

                fired_at = self._now()
                await self.fire(fired_at)
                # Terminal states hold until the day we fired on is over
                await self._wait_until(next_midnight(fired_at.date(), fired_at.tzinfo))

            except asyncio.CancelledError:
                logger.info(f"[{self.name}] Program loop cancelled")
                raise
            except Exception as e:
                logger.error(f"[{self.name}] Error in program loop: {e}", exc_info=True)
                await self.clock.sleep(self.program_loop_pause, self.wake_event)
        logger.info(f"[{self.name}] Program loop stopped")


class MorningLightsProgram(Program):
    """Raise the light gradually from a fixed morning start time."""

    name = "morning_lights"

    def __init__(self, config: MorningLightsConfig, geo: GeoTimeContext,
                 controller: LightController, **kwargs):
        super().__init__(geo, controller, Anchor.fixed(config.start),
                         active=config.active, **kwargs)
        self.config = config

    async def execute(self, now: datetime) -> TransitionOutcome:
        return await self.run_transition(
            LightValues(self.config.start_brightness, self.config.start_hue),
            LightValues(self.config.end_brightness, self.config.end_hue),
            self.config.duration * 60,
        )


class TurnMorningLightsOffProgram(Program):
    """Turn the light off once per morning."""

    name = "turn_morning_lights_off"

    def __init__(self, config: TurnMorningLightsOffConfig, geo: GeoTimeContext,
                 controller: LightController, **kwargs):
        if config.off_time is not None:
            anchor = Anchor.fixed(config.off_time)
        else:
            anchor = Anchor.after_sunrise(config.hours_after_sunrise)
        super().__init__(geo, controller, anchor, active=config.active, **kwargs)
        self.config = config

    async def execute(self, now: datetime) -> TransitionOutcome:
        logger.info(f"[{self.name}] After registered off-time, attempting to turn the light off.")
        try:
            await COMMAND_RETRY.call(
                self.controller.turn_off,
                description="Turning light off",
                sleep=self.clock.sleep,
            )
        except DeviceUnreachable as e:
            logger.error(f"[{self.name}] Could not turn the light off: {e}")
            return TransitionOutcome.FAILED
        return TransitionOutcome.COMPLETED


class EveningLightsProgram(Program):
    """Raise the light gradually ahead of sunset, then optionally dim it.

    The rise goes from ``start_*`` to the peak (``end_*``); when
    ``final_brightness`` is configured a second transition dims from the
    peak to ``final_*``. The bulb is read before each phase: the rise never
    lowers a light that is already brighter, and the dim never raises one
    that is already darker.

    If someone turns the light off or changes its brightness mid-way, the
    program stays quiet for the rest of that evening's window.
    """

    name = "evening_lights"

    def __init__(self, config: EveningLightsConfig, geo: GeoTimeContext,
                 controller: LightController, **kwargs):
        super().__init__(geo, controller, Anchor.before_sunset(config.hours_before_sunset_start),
                         active=config.active, **kwargs)
        self.config = config
        self.suppressed_until: Optional[datetime] = None

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.config.duration + self.config.dim_duration)

    def may_run(self, now: datetime) -> bool:
        if self.suppressed_until is not None and now < self.suppressed_until:
            logger.info(
                f"[{self.name}] Light was taken over this evening - "
                f"not restarting before {self.suppressed_until.isoformat()}"
            )
            return False
        return True

    def on_cancelled(self, now: datetime) -> None:
        start = self.trigger if self.trigger is not None else now
        self.suppressed_until = start + self.window

    async def _read_bulb(self) -> Optional[LightObservedState]:
        """Current bulb state, or None when it cannot be read."""
        try:
            return await POLL_RETRY.call(
                self.controller.get,
                description="Reading current bulb",
                sleep=self.clock.sleep,
            )
        except DeviceError as e:
            logger.warning(f"[{self.name}] Could not read the bulb, using configured values: {e}")
            return None

    async def execute(self, now: datetime) -> TransitionOutcome:
        config = self.config
        start = LightValues(config.start_brightness, config.start_hue)
        peak = LightValues(config.end_brightness, config.end_hue)

        bulb = await self._read_bulb()
        if bulb is not None and not bulb.is_off and bulb.brightness is not None:
            # Only brighten during the rise
            start = LightValues(max(start.brightness, bulb.brightness), start.hue)
            peak = LightValues(max(peak.brightness, bulb.brightness), peak.hue)
            logger.debug(f"[{self.name}] Bulb at {bulb.brightness}%, rising {start} -> {peak}")

        outcome = await self.run_transition(start, peak, config.duration * 60)
        if outcome is not TransitionOutcome.COMPLETED or not config.dims:
            return outcome

        final = LightValues(config.final_brightness, config.final_hue)
        bulb = await self._read_bulb()
        if bulb is not None:
            if bulb.is_off:
                logger.info(f"[{self.name}] Light turned OFF at the peak - skipping the dim phase")
                return TransitionOutcome.CANCELLED
            if bulb.brightness is not None:
                # Only darken during the dim
                peak = LightValues(min(peak.brightness, bulb.brightness), peak.hue)
                final = LightValues(min(final.brightness, bulb.brightness), final.hue)

        logger.info(f"[{self.name}] Peak reached, dimming to {final}")
        return await self.run_transition(peak, final, config.dim_duration * 60)


def build_programs(
    config: Configuration, controller: LightController, **kwargs
) -> List[Program]:
    """Create one program per configured section."""
    options = {
        "program_loop_pause": config.program_loop_pause,
        "tick_interval": config.tick_interval,
    }
    options.update(kwargs)

    programs: List[Program] = []
    if config.morning_lights is not None:
        programs.append(MorningLightsProgram(config.morning_lights, config.geo, controller, **options))
    if config.turn_morning_lights_off is not None:
        programs.append(TurnMorningLightsOffProgram(
            config.turn_morning_lights_off, config.geo, controller, **options
        ))
    if config.evening_lights is not None:
        programs.append(EveningLightsProgram(config.evening_lights, config.geo, controller, **options))
    return programs
