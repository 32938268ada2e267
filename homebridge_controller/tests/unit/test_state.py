#!/usr/bin/env python3
"""Test suite for state.py - persisted run records."""

import json
import os
from datetime import date
from unittest.mock import patch

from homebridge_controller import state
from homebridge_controller.state import RunRecord

JUNE_1 = date(2024, 6, 1)
JUNE_2 = date(2024, 6, 2)


class TestStateFile:
    """Test cases for loading and saving the state file."""

    def test_missing_file_starts_empty(self, tmp_path):
        state.init(str(tmp_path / "state.json"))
        assert state.get_last_run("morning_lights") is None

    def test_records_survive_restart(self, tmp_path):
        path = str(tmp_path / "state.json")
        state.init(path)
        state.set_last_run("morning_lights", JUNE_1)

        state.init(path)

        assert state.get_last_run("morning_lights") == JUNE_1
        with open(path, encoding="utf-8") as f:
            assert json.load(f) == {"programs": {"morning_lights": {"last_run": "2024-06-01"}}}

    def test_creates_missing_directory(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        state.init(str(path))
        state.set_last_run("evening_lights", JUNE_1)
        assert path.exists()

    def test_corrupt_file_starts_fresh(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        state.init(str(path))
        assert state.get_last_run("morning_lights") is None

    def test_unexpected_format_starts_fresh(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"morning_lights": "2024-06-01"}))
        state.init(str(path))
        assert state.get_last_run("morning_lights") is None

    def test_unreadable_date_is_ignored(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"programs": {"morning_lights": {"last_run": "yesterday"}}}))
        state.init(str(path))
        assert state.get_last_run("morning_lights") is None

    def test_memory_only_writes_nothing(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        state.init(None)
        state.set_last_run("morning_lights", JUNE_1)
        assert state.get_last_run("morning_lights") == JUNE_1
        assert os.listdir(tmp_path) == []

    def test_default_state_file_outside_container(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        real_exists = os.path.exists
        with patch(
            "homebridge_controller.state.os.path.exists",
            side_effect=lambda p: False if p == "/data" else real_exists(p),
        ):
            path = state.default_state_file()
        assert path == os.path.join(str(tmp_path), ".data", state.STATE_FILE_NAME)
        assert (tmp_path / ".data").is_dir()


class TestRunRecord:
    """Test cases for RunRecord."""

    def test_mark_done_once(self):
        record = RunRecord("turn_morning_lights_off")
        assert not record.is_done(JUNE_1)
        assert record.mark_done(JUNE_1) is True
        assert record.mark_done(JUNE_1) is False
        assert record.is_done(JUNE_1)
        assert not record.is_done(JUNE_2)

    def test_rollover_clears_previous_day(self):
        record = RunRecord("turn_morning_lights_off")
        record.mark_done(JUNE_1)

        record.rollover(JUNE_1)
        assert record.is_done(JUNE_1)

        record.rollover(JUNE_2)
        assert state.get_last_run("turn_morning_lights_off") is None

    def test_records_are_per_program(self):
        RunRecord("morning_lights").mark_done(JUNE_1)
        assert not RunRecord("evening_lights").is_done(JUNE_1)
