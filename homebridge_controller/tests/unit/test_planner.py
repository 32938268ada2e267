#!/usr/bin/env python3
"""Test suite for planner.py - anchors and next trigger computation."""

from datetime import date, datetime, time, timedelta, timezone

import pytest

from conftest import StubSolar
from homebridge_controller.configuration import ConfigurationError
from homebridge_controller.planner import (
    Anchor,
    AnchorKind,
    next_trigger,
    trigger_on,
)
from homebridge_controller.suntimes import SolarUndefined

UTC = timezone.utc
CET = timezone(timedelta(hours=1))


class TestAnchor:
    """Test cases for Anchor construction."""

    def test_fixed_from_string(self):
        anchor = Anchor.fixed("07:30")
        assert anchor.kind is AnchorKind.FIXED
        assert anchor.clock_time == time(7, 30)
        assert not anchor.is_solar

    def test_fixed_rejects_garbage(self):
        with pytest.raises(ConfigurationError):
            Anchor.fixed("half past seven")

    def test_before_sunset_is_negative_offset(self):
        anchor = Anchor.before_sunset(1.5)
        assert anchor.kind is AnchorKind.SUNSET
        assert anchor.offset_hours == -1.5
        assert anchor.is_solar

    def test_describe(self):
        assert Anchor.fixed(time(8)).describe() == "at 08:00:00"
        assert Anchor.after_sunrise(2.5).describe() == "+2.5h from sunrise"
        assert Anchor.before_sunset(2).describe() == "-2h from sunset"


class TestNextTrigger:
    """Test cases for next_trigger."""

    def setup_method(self):
        self.solar = StubSolar(sunrise=(6, 45), sunset=(18, 0))

    def test_fixed_time_later_today(self):
        now = datetime(2024, 6, 1, 6, 0, tzinfo=UTC)
        assert next_trigger(Anchor.fixed("07:00"), now, self.solar) == datetime(2024, 6, 1, 7, 0, tzinfo=UTC)

    def test_trigger_equal_to_now_is_today(self):
        now = datetime(2024, 6, 1, 7, 0, tzinfo=UTC)
        assert next_trigger(Anchor.fixed("07:00"), now, self.solar) == now

    def test_passed_trigger_rolls_to_tomorrow(self):
        now = datetime(2024, 6, 1, 7, 0, 1, tzinfo=UTC)
        assert next_trigger(Anchor.fixed("07:00"), now, self.solar) == datetime(2024, 6, 2, 7, 0, tzinfo=UTC)

    def test_fixed_time_uses_local_timezone(self):
        now = datetime(2024, 6, 1, 6, 0, tzinfo=CET)
        trigger = next_trigger(Anchor.fixed("07:00"), now, self.solar)
        assert trigger.tzinfo is CET
        assert trigger.hour == 7

    def test_hours_after_sunrise(self):
        now = datetime(2024, 6, 1, 0, 0, tzinfo=UTC)
        trigger = next_trigger(Anchor.after_sunrise(2.5), now, self.solar)
        assert trigger == datetime(2024, 6, 1, 9, 15, tzinfo=UTC)

    def test_hours_before_sunset(self):
        now = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
        trigger = next_trigger(Anchor.before_sunset(2), now, self.solar)
        assert trigger == datetime(2024, 6, 1, 16, 0, tzinfo=UTC)

    def test_large_offset_crossing_midnight(self):
        # Sunset minus 20h lands on the previous evening
        now = datetime(2024, 6, 1, 23, 0, tzinfo=UTC)
        trigger = next_trigger(Anchor.before_sunset(20), now, self.solar)
        assert trigger == datetime(2024, 6, 2, 22, 0, tzinfo=UTC)

    def test_undefined_sun_propagates(self):
        solar = StubSolar(undefined={date(2024, 6, 1)})
        now = datetime(2024, 6, 1, 0, 0, tzinfo=UTC)
        with pytest.raises(SolarUndefined):
            next_trigger(Anchor.after_sunrise(1), now, solar)

    def test_undefined_sun_ignored_by_fixed_anchor(self):
        solar = StubSolar(undefined={date(2024, 6, 1)})
        now = datetime(2024, 6, 1, 0, 0, tzinfo=UTC)
        assert next_trigger(Anchor.fixed("05:00"), now, solar).hour == 5

    def test_trigger_on_specific_day(self):
        trigger = trigger_on(Anchor.after_sunrise(1), date(2024, 6, 3), self.solar)
        assert trigger == datetime(2024, 6, 3, 7, 45, tzinfo=UTC)
