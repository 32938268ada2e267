#!/usr/bin/env python3
"""Configuration loading for the Homebridge light programs.

The config file and the secrets file are plain JSON documents. They are read
once at startup and turned into frozen dataclasses; nothing here is mutated
afterwards.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import time, timedelta, timezone, tzinfo
from typing import Any, Dict, Optional

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError  # stdlib ≥3.9

logger = logging.getLogger(__name__)

DEFAULT_ACCESSORY_NAME = "Bed Light"
DEFAULT_PROGRAM_LOOP_PAUSE = 60.0  # seconds, longest single wait before re-checking the clock
DEFAULT_TICK_INTERVAL = 5.0  # seconds between transition ticks
DEFAULT_SECRETS_FILE = "./secrets.json"


class ConfigurationError(Exception):
    """A required field is missing or cannot be parsed."""


def parse_clock_time(value: str) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a time of day."""
    try:
        return time.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Error parsing time: {value!r}") from e


@dataclass(frozen=True)
class GeoTimeContext:
    """Where the light is and which clock it follows."""
    ip_address: str
    latitude: float
    longitude: float
    tz_offset: float = 0.0  # hours from UTC
    timezone_name: Optional[str] = None

    def __post_init__(self):
        # Resolved once; programs read it on every wait
        object.__setattr__(self, "_tzinfo", resolve_timezone(self.timezone_name, self.tz_offset))

    @property
    def tzinfo(self) -> tzinfo:
        """Named timezone when configured and known, else the fixed offset."""
        return self._tzinfo


def resolve_timezone(name: Optional[str], offset_hours: float) -> tzinfo:
    """Return ``ZoneInfo(name)``, or the fixed UTC offset when ``name`` is unset or unknown.

    Raises:
        ConfigurationError: ``name`` is not a valid timezone key at all
    """
    if name:
        try:
            return ZoneInfo(name)
        except ZoneInfoNotFoundError:
            logger.warning(f"Unknown timezone '{name}' - falling back to UTC{offset_hours:+g}")
        except (ValueError, OSError) as e:
            raise ConfigurationError(f"Invalid timezone {name!r}: {e}") from e
    return timezone(timedelta(hours=offset_hours))


@dataclass(frozen=True)
class MorningLightsConfig:
    start: time
    duration: float  # minutes
    start_brightness: int
    end_brightness: int
    start_hue: Optional[float] = None
    end_hue: Optional[float] = None
    active: bool = True


@dataclass(frozen=True)
class TurnMorningLightsOffConfig:
    """Either ``off_time`` or ``hours_after_sunrise`` anchors the program."""
    off_time: Optional[time] = None
    hours_after_sunrise: Optional[float] = None
    active: bool = True


@dataclass(frozen=True)
class EveningLightsConfig:
    """Rise from start to peak (``end_*``), then optionally dim to ``final_*``.

    The rise lasts ``duration`` minutes from its trigger; the dim phase,
    when ``final_brightness`` is set, follows directly and lasts
    ``dim_duration`` minutes.
    """
    hours_before_sunset_start: float
    duration: float  # minutes
    start_brightness: int
    end_brightness: int
    start_hue: Optional[float] = None
    end_hue: Optional[float] = None
    active: bool = True
    final_brightness: Optional[int] = None
    final_hue: Optional[float] = None
    dim_duration: float = 0.0  # minutes

    @property
    def dims(self) -> bool:
        return self.final_brightness is not None


@dataclass(frozen=True)
class Configuration:
    geo: GeoTimeContext
    accessory_name: str = DEFAULT_ACCESSORY_NAME
    program_loop_pause: float = DEFAULT_PROGRAM_LOOP_PAUSE
    tick_interval: float = DEFAULT_TICK_INTERVAL
    state_file: Optional[str] = None
    morning_lights: Optional[MorningLightsConfig] = None
    turn_morning_lights_off: Optional[TurnMorningLightsOffConfig] = None
    evening_lights: Optional[EveningLightsConfig] = None


@dataclass(frozen=True)
class Secrets:
    username: str
    password: str


def _require(data: Dict[str, Any], key: str, section: str) -> Any:
    if data.get(key) is None:
        raise ConfigurationError(f"Missing '{key}' in {section}")
    return data[key]


def _optional_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _parse_morning_lights(data: Dict[str, Any]) -> MorningLightsConfig:
    section = "morning_lights"
    return MorningLightsConfig(
        start=parse_clock_time(_require(data, "start", section)),
        duration=float(_require(data, "duration", section)),
        start_brightness=int(_require(data, "start_brightness", section)),
        end_brightness=int(_require(data, "end_brightness", section)),
        start_hue=_optional_float(data.get("start_hue")),
        end_hue=_optional_float(data.get("end_hue")),
        active=bool(data.get("active", True)),
    )


def _parse_turn_morning_lights_off(data: Dict[str, Any]) -> TurnMorningLightsOffConfig:
    off_time = data.get("off_time")
    after_sunrise = data.get("hours_after_sunrise")
    if off_time is None and after_sunrise is None:
        raise ConfigurationError(
            "turn_morning_lights_off needs 'off_time' or 'hours_after_sunrise'"
        )
    if off_time is not None and after_sunrise is not None:
        logger.warning(
            "Both 'off_time' and 'hours_after_sunrise' set for "
            "turn_morning_lights_off - using 'off_time'"
        )
        after_sunrise = None
    return TurnMorningLightsOffConfig(
        off_time=parse_clock_time(off_time) if off_time is not None else None,
        hours_after_sunrise=_optional_float(after_sunrise),
        active=bool(data.get("active", True)),
    )


def _parse_evening_lights(data: Dict[str, Any]) -> EveningLightsConfig:
    section = "evening_lights"
    final_brightness = data.get("final_brightness")
    dim_duration = 0.0
    if final_brightness is not None:
        final_brightness = int(final_brightness)
        dim_duration = float(_require(data, "dim_duration", section))
        if dim_duration <= 0:
            raise ConfigurationError("evening_lights 'dim_duration' must be positive")
    return EveningLightsConfig(
        hours_before_sunset_start=float(_require(data, "hours_before_sunset_start", section)),
        duration=float(_require(data, "duration", section)),
        start_brightness=int(_require(data, "start_brightness", section)),
        end_brightness=int(_require(data, "end_brightness", section)),
        start_hue=_optional_float(data.get("start_hue")),
        end_hue=_optional_float(data.get("end_hue")),
        active=bool(data.get("active", True)),
        final_brightness=final_brightness,
        final_hue=_optional_float(data.get("final_hue")),
        dim_duration=dim_duration,
    )


def parse_config(data: Dict[str, Any]) -> Configuration:
    """Turn a decoded config document into a Configuration.

    Environment overrides:
        HOMEBRIDGE_URL: replaces ``ip_address``
        HOMEBRIDGE_STATE_FILE: replaces ``state_file``
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a JSON object")

    try:
        geo = GeoTimeContext(
            ip_address=os.getenv("HOMEBRIDGE_URL") or _require(data, "ip_address", "config"),
            latitude=float(_require(data, "latitude", "config")),
            longitude=float(_require(data, "longitude", "config")),
            tz_offset=float(data.get("tz_offset", 0.0)),
            timezone_name=data.get("timezone") or None,
        )

        sections = {}
        if data.get("morning_lights") is not None:
            sections["morning_lights"] = _parse_morning_lights(data["morning_lights"])
        if data.get("turn_morning_lights_off") is not None:
            sections["turn_morning_lights_off"] = _parse_turn_morning_lights_off(
                data["turn_morning_lights_off"]
            )
        if data.get("evening_lights") is not None:
            sections["evening_lights"] = _parse_evening_lights(data["evening_lights"])

        return Configuration(
            geo=geo,
            accessory_name=data.get("accessory_name") or DEFAULT_ACCESSORY_NAME,
            program_loop_pause=float(data.get("program_loop_pause", DEFAULT_PROGRAM_LOOP_PAUSE)),
            tick_interval=float(data.get("tick_interval", DEFAULT_TICK_INTERVAL)),
            state_file=os.getenv("HOMEBRIDGE_STATE_FILE") or data.get("state_file"),
            **sections,
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e


def load_config(path: str) -> Configuration:
    """Load and parse the JSON config file at ``path``."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to read config from {path}: {e}") from e

    config = parse_config(data)
    logger.info(f"Loaded configuration from {path}")
    logger.debug(f"Config: {config}")
    return config


def load_secrets(path: str = DEFAULT_SECRETS_FILE) -> Secrets:
    """Load the Homebridge credentials file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Secrets(username=data["username"], password=data["password"])
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to read secrets from {path}: {e}") from e
    except (TypeError, KeyError) as e:
        raise ConfigurationError(f"Secrets file {path} needs 'username' and 'password'") from e
