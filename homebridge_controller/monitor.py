"""Cancellation monitor - notices when someone else takes over the light.

While a transition runs, the light is polled. Two readings count as an
external change:

* the light is off, the last command this process issued did not itself
  darken it, and our last power change (normally the transition's first
  command) is more than ``tolerance`` seconds old
* the light is on at a brightness other than the one we last set, and our
  last brightness write is more than ``tolerance`` seconds old

Brightness writes do not restart the window for "off" readings, so a
transition that changes value on every tick still notices a person
switching the light off. The tolerance absorbs device reporting latency.
This is a heuristic: a very quick off/on by a person between two polls
goes unseen.

Polling errors never cancel: after the poll retries are used up the poll is
treated as "no cancellation". A false cancellation would leave the scene
half-finished, which is worse than running on after a missed one.
"""

import asyncio
import logging
from typing import Optional

from .light_controller import (
    POLL_RETRY,
    DeviceError,
    LightCommand,
    LightController,
    LightObservedState,
    RetryPolicy,
)
from .transitions import MonotonicClock

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 3.0  # seconds after our own change during which a mismatch is ignored
BRIGHTNESS_DEADBAND = 1  # percent; devices storing 0-254 read 40% back as 39% or 41%


class CommandLedger:
    """Remembers what was last issued to the light during one transition.

    ``record`` is called before a command goes out and ``confirm`` once the
    device accepted it, so a failed write never becomes the expected value.
    """

    def __init__(self, clock: Optional[MonotonicClock] = None):
        self.clock = clock or MonotonicClock()
        self.last_command: Optional[LightCommand] = None
        self.last_issued_at: Optional[float] = None
        self.power_changed_at: Optional[float] = None
        self.brightness_issued_at: Optional[float] = None
        self.confirmed_brightness: Optional[int] = None

    def record(self, command: LightCommand) -> None:
        now = self.clock.now()
        self.last_command = command
        self.last_issued_at = now
        if command.power is not None:
            self.power_changed_at = now
        if command.brightness is not None:
            self.brightness_issued_at = now

    def confirm(self, command: LightCommand) -> None:
        if command.brightness is not None:
            self.confirmed_brightness = command.brightness

    def _since(self, instant: Optional[float]) -> Optional[float]:
        if instant is None:
            return None
        return self.clock.now() - instant

    def seconds_since_last(self) -> Optional[float]:
        return self._since(self.last_issued_at)

    def seconds_since_power_change(self) -> Optional[float]:
        """Age of the last power command, else of the last command."""
        if self.power_changed_at is None:
            return self.seconds_since_last()
        return self._since(self.power_changed_at)

    def seconds_since_brightness(self) -> Optional[float]:
        return self._since(self.brightness_issued_at)


class CancellationMonitor:
    """Polls the light and sets ``cancel_event`` on an external change."""

    def __init__(
        self,
        controller: LightController,
        ledger: CommandLedger,
        cancel_event: asyncio.Event,
        *,
        poll_interval: float,
        tolerance: float = DEFAULT_TOLERANCE,
        retry: RetryPolicy = POLL_RETRY,
        clock: Optional[MonotonicClock] = None,
    ):
        self.controller = controller
        self.ledger = ledger
        self.cancel_event = cancel_event
        self.poll_interval = poll_interval
        self.tolerance = tolerance
        self.retry = retry
        self.clock = clock or ledger.clock
        self.polls = 0
        self.reason: Optional[str] = None

    async def check(self) -> bool:
        """Poll once. Returns True (and sets the event) on an external change."""
        self.polls += 1
        try:
            observed = await self.retry.call(
                self.controller.get,
                description="Light state poll",
                sleep=self.clock.sleep,
            )
        except DeviceError as e:
            logger.warning(f"Could not read light state, assuming no cancellation: {e}")
            return False

        if observed.is_off:
            reason = self._external_off()
        else:
            reason = self._external_brightness(observed)
        if reason is None:
            return False

        logger.info(f"{reason} - cancelling transition")
        self.reason = reason
        self.cancel_event.set()
        return True

    def _external_off(self) -> Optional[str]:
        last = self.ledger.last_command
        if last is None:
            logger.debug("Light is off but nothing has been sent yet - ignoring")
            return None
        if last.turns_off:
            logger.debug("Light is off as commanded")
            return None

        since = self.ledger.seconds_since_power_change()
        if since is not None and since < self.tolerance:
            logger.debug(
                f"Light reports off {since:.1f}s after we switched it - "
                f"within {self.tolerance:g}s tolerance, ignoring"
            )
            return None
        return "Light turned OFF by someone else"

    def _external_brightness(self, observed: LightObservedState) -> Optional[str]:
        expected = self.ledger.confirmed_brightness
        if expected is None or observed.brightness is None:
            return None
        if abs(observed.brightness - expected) <= BRIGHTNESS_DEADBAND:
            return None

        since = self.ledger.seconds_since_brightness()
        if since is not None and since < self.tolerance:
            logger.debug(
                f"Light reports {observed.brightness}% {since:.1f}s after we set "
                f"{expected}% - within tolerance, ignoring"
            )
            return None
        return f"Brightness adjusted externally ({expected}% -> {observed.brightness}%)"

    async def run(self) -> None:
        """Poll until cancellation is raised or this task is cancelled."""
        try:
            while not self.cancel_event.is_set():
                await self.clock.sleep(self.poll_interval, self.cancel_event)
                if self.cancel_event.is_set():
                    break
                if await self.check():
                    break
        except asyncio.CancelledError:
            logger.debug("Cancellation monitor stopped")
            raise
