#!/usr/bin/env python3
"""Test suite for light_controller.py - commands, snapshots and retries."""

from unittest.mock import AsyncMock

import pytest

from conftest import FakeLight
from homebridge_controller.light_controller import (
    COMMAND_RETRY,
    POLL_RETRY,
    DeviceRejected,
    DeviceUnreachable,
    LightCommand,
    LightObservedState,
    RetryPolicy,
)


class TestLightCommand:
    """Test cases for LightCommand."""

    def test_turns_off(self):
        assert LightCommand(power=False).turns_off
        assert LightCommand(brightness=0).turns_off
        assert not LightCommand(power=True, brightness=1).turns_off
        assert not LightCommand(hue=120.0).turns_off

    def test_is_empty(self):
        assert LightCommand().is_empty()
        assert not LightCommand(hue=0.0).is_empty()


class TestLightObservedState:
    """Test cases for LightObservedState."""

    def test_from_homebridge_values(self):
        observed = LightObservedState.from_values({"On": 1, "Brightness": 40, "Hue": 210})
        assert observed == LightObservedState(power=True, brightness=40, hue=210.0)
        assert not observed.is_off

    def test_missing_fields(self):
        observed = LightObservedState.from_values({"On": 0})
        assert observed.is_off
        assert observed.brightness is None
        assert observed.hue is None

    @pytest.mark.asyncio
    async def test_turn_off_helper(self):
        light = FakeLight(power=True, brightness=50)
        await light.turn_off()
        assert light.commands == [LightCommand(power=False)]
        assert (await light.get()).is_off


class TestRetryPolicy:
    """Test cases for RetryPolicy."""

    def test_backoff_doubles_up_to_cap(self):
        policy = RetryPolicy(attempts=8, base_delay=1.0, max_delay=30.0)
        assert [policy.delay_for(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    def test_default_policies(self):
        assert (COMMAND_RETRY.attempts, COMMAND_RETRY.base_delay, COMMAND_RETRY.max_delay) == (5, 1.0, 30.0)
        assert (POLL_RETRY.attempts, POLL_RETRY.base_delay, POLL_RETRY.max_delay) == (3, 0.5, 2.0)

    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=[DeviceUnreachable("a"), DeviceUnreachable("b"), "ok"])

        result = await RetryPolicy().call(operation, sleep=sleep)

        assert result == "ok"
        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_reraises_after_last_attempt(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=DeviceUnreachable("down"))

        with pytest.raises(DeviceUnreachable):
            await RetryPolicy(attempts=3, base_delay=0.5, max_delay=2.0).call(operation, sleep=sleep)

        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_rejected_is_not_retried(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=DeviceRejected("bad request"))

        with pytest.raises(DeviceRejected):
            await RetryPolicy().call(operation, sleep=sleep)

        assert operation.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        operation = AsyncMock(side_effect=RuntimeError("bug"))

        with pytest.raises(RuntimeError):
            await RetryPolicy().call(operation, sleep=AsyncMock())

    @pytest.mark.asyncio
    async def test_budget_limits_total_backoff(self):
        sleep = AsyncMock()
        operation = AsyncMock(side_effect=DeviceUnreachable("down"))

        with pytest.raises(DeviceUnreachable):
            await RetryPolicy().call(operation, sleep=sleep, budget=5)

        # A third wait of 4s would bring the total to 7s
        assert operation.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
