"""
Light controller module for the single light driven by the programs.
Provides the abstraction layer between the scheduling engine and the
device transport, plus the bounded retry policy used for every call.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Device parameter resolution
BRIGHTNESS_MIN = 0
BRIGHTNESS_MAX = 100
HUE_MIN = 0.0
HUE_MAX = 360.0
HUE_RESOLUTION = 1.0  # degrees


class DeviceError(Exception):
    """Base class for failures talking to the light."""


class DeviceUnreachable(DeviceError):
    """Transient network/API failure. Safe to retry."""


class DeviceRejected(DeviceError):
    """The API was reached but refused the request. Never retried."""


@dataclass(frozen=True)
class LightCommand:
    """Command to control the light.

    Fields left as None are not written.
    """
    power: Optional[bool] = None
    brightness: Optional[int] = None  # 0-100
    hue: Optional[float] = None  # degrees, 0-360

    @property
    def turns_off(self) -> bool:
        """Whether applying this command leaves the light dark."""
        return self.power is False or self.brightness == 0

    def is_empty(self) -> bool:
        return self.power is None and self.brightness is None and self.hue is None


@dataclass(frozen=True)
class LightObservedState:
    """Snapshot of the light as reported by the device."""
    power: bool
    brightness: Optional[int] = None
    hue: Optional[float] = None

    @property
    def is_off(self) -> bool:
        return not self.power

    @classmethod
    def from_values(cls, values: Dict[str, Any]) -> "LightObservedState":
        """Build a snapshot from a Homebridge ``values`` mapping."""
        hue = values.get("Hue")
        brightness = values.get("Brightness")
        return cls(
            power=bool(int(values.get("On", 0))),
            brightness=int(brightness) if brightness is not None else None,
            hue=float(hue) if hue is not None else None,
        )


class LightController(ABC):
    """Abstract base class for light controllers."""

    @abstractmethod
    async def set(self, command: LightCommand) -> None:
        """Apply a command to the light.

        Raises:
            DeviceUnreachable: transient failure, the caller may retry
            DeviceRejected: the device refused the command
        """
        pass

    @abstractmethod
    async def get(self) -> LightObservedState:
        """Read the current power/brightness/hue state of the light."""
        pass

    async def turn_off(self) -> None:
        """Turn the light off."""
        await self.set(LightCommand(power=False))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for device calls.

    Delay before attempt n (1-based, n >= 2) is
    ``min(base_delay * 2 ** (n - 2), max_delay)``.
    """
    attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Return the backoff delay to wait after failed attempt ``attempt``."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def call(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        description: str = "device call",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        budget: Optional[float] = None,
    ) -> Any:
        """Run ``operation`` until it succeeds or the attempts are used up.

        Only DeviceUnreachable is retried; any other exception propagates
        immediately. After the last attempt the final DeviceUnreachable is
        re-raised. With ``budget`` set, retrying also stops once the total
        backoff would exceed that many seconds.
        """
        waited = 0.0
        for attempt in range(1, self.attempts + 1):
            try:
                return await operation()
            except DeviceUnreachable as e:
                delay = self.delay_for(attempt)
                out_of_budget = budget is not None and waited + delay > budget
                if attempt >= self.attempts or out_of_budget:
                    logger.warning(
                        f"{description} failed after {attempt} attempt(s): {e}"
                    )
                    raise
                waited += delay
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await sleep(delay)


# Retry policies
COMMAND_RETRY = RetryPolicy(attempts=5, base_delay=1.0, max_delay=30.0)
POLL_RETRY = RetryPolicy(attempts=3, base_delay=0.5, max_delay=2.0)
