#!/usr/bin/env python3
"""Trigger planning - when does a program next start?

Anchors are either a fixed clock time or an offset (in hours, fractional
allowed) from sunrise or sunset. ``now`` is always passed in; nothing here
reads the system clock.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional, Protocol

from .configuration import parse_clock_time

logger = logging.getLogger(__name__)

MAX_DAYS_AHEAD = 2


class AnchorKind(Enum):
    """Reference point a trigger is computed relative to."""
    FIXED = "fixed"
    SUNRISE = "sunrise"
    SUNSET = "sunset"


class SunTimes(Protocol):
    def sunrise(self, day: date) -> datetime: ...

    def sunset(self, day: date) -> datetime: ...


@dataclass(frozen=True)
class Anchor:
    kind: AnchorKind
    clock_time: Optional[time] = None
    offset_hours: float = 0.0

    @classmethod
    def fixed(cls, clock_time) -> "Anchor":
        if isinstance(clock_time, str):
            clock_time = parse_clock_time(clock_time)
        return cls(AnchorKind.FIXED, clock_time=clock_time)

    @classmethod
    def after_sunrise(cls, hours: float) -> "Anchor":
        return cls(AnchorKind.SUNRISE, offset_hours=hours)

    @classmethod
    def before_sunset(cls, hours: float) -> "Anchor":
        return cls(AnchorKind.SUNSET, offset_hours=-hours)

    @property
    def is_solar(self) -> bool:
        return self.kind is not AnchorKind.FIXED

    def describe(self) -> str:
        if self.kind is AnchorKind.FIXED:
            return f"at {self.clock_time.isoformat()}"
        return f"{self.offset_hours:+g}h from {self.kind.value}"


def trigger_on(anchor: Anchor, day: date, solar: SunTimes, tz=None) -> datetime:
    """Return the trigger instant for ``day`` (no rollover applied).

    Args:
        anchor: The program's anchor
        day: Calendar date to resolve the anchor on
        solar: Source of sunrise/sunset instants
        tz: Timezone for fixed clock times

    Raises:
        SolarUndefined: the solar event does not happen on ``day``
    """
    if anchor.kind is AnchorKind.FIXED:
        return datetime.combine(day, anchor.clock_time, tzinfo=tz)

    if anchor.kind is AnchorKind.SUNRISE:
        event = solar.sunrise(day)
    else:
        event = solar.sunset(day)
    return event + timedelta(hours=anchor.offset_hours)


def next_trigger(anchor: Anchor, now: datetime, solar: SunTimes) -> datetime:
    """Return the next instant at or after ``now`` for ``anchor``.

    A trigger equal to ``now`` is due immediately. If today's trigger has
    already passed, tomorrow's occurrence is returned.

    Raises:
        SolarUndefined: the solar event does not happen on the resolved date
    """
    today = now.date()
    candidate = trigger_on(anchor, today, solar, now.tzinfo)
    if candidate >= now:
        return candidate

    # Large solar offsets can push a day's trigger onto the previous date
    for days_ahead in range(1, MAX_DAYS_AHEAD + 1):
        day = today + timedelta(days=days_ahead)
        candidate = trigger_on(anchor, day, solar, now.tzinfo)
        if candidate >= now:
            logger.debug(f"Trigger {anchor.describe()} already passed today, next on {day}")
            return candidate
    return candidate
