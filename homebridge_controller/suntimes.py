#!/usr/bin/env python3
"""Sunrise/sunset times for the configured location.

Pure calculations via astral: no I/O and no clock reads, so a given date and
location always produce the same instants.
"""

import logging
from datetime import date, datetime, tzinfo
from typing import Dict

from astral import Observer
from astral.sun import sunrise as astral_sunrise, sunset as astral_sunset

from .configuration import GeoTimeContext

logger = logging.getLogger(__name__)


class SolarUndefined(Exception):
    """The sun does not rise or set on this date at this location."""

    def __init__(self, day: date, event: str):
        super().__init__(f"No {event} on {day.isoformat()} at this location")
        self.day = day
        self.event = event


def sunrise(day: date, latitude: float, longitude: float, tz: tzinfo) -> datetime:
    """Return the local sunrise instant for ``day``.

    Raises:
        SolarUndefined: polar day or polar night
    """
    try:
        return astral_sunrise(Observer(latitude, longitude), date=day, tzinfo=tz)
    except ValueError as e:
        raise SolarUndefined(day, "sunrise") from e


def sunset(day: date, latitude: float, longitude: float, tz: tzinfo) -> datetime:
    """Return the local sunset instant for ``day``.

    Raises:
        SolarUndefined: polar day or polar night
    """
    try:
        return astral_sunset(Observer(latitude, longitude), date=day, tzinfo=tz)
    except ValueError as e:
        raise SolarUndefined(day, "sunset") from e


class SolarClock:
    """Sun times bound to the process-wide location and timezone."""

    def __init__(self, geo: GeoTimeContext):
        self.geo = geo
        self._cache: Dict[tuple, datetime] = {}

    def _event(self, event: str, day: date) -> datetime:
        key = (event, day)
        if key not in self._cache:
            if len(self._cache) > 16:
                self._cache.clear()
            func = sunrise if event == "sunrise" else sunset
            self._cache[key] = func(
                day, self.geo.latitude, self.geo.longitude, self.geo.tzinfo
            )
            logger.debug(f"{event.capitalize()} on {day}: {self._cache[key]}")
        return self._cache[key]

    def sunrise(self, day: date) -> datetime:
        return self._event("sunrise", day)

    def sunset(self, day: date) -> datetime:
        return self._event("sunset", day)
