#!/usr/bin/env python3
"""Run record storage - which program already ran on which day.

State is:
- Loaded from JSON at startup
- Held in memory for fast access
- Written to JSON immediately after changes
- Kept in memory only when no state file was initialised

Only the date of each program's last run is stored; that is all the
once-per-day rule needs.
"""

import json
import logging
import os
from datetime import date
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "homebridge_controller_state.json"

# In-memory state dict: program name -> {"last_run": "YYYY-MM-DD"}
_state: Dict[str, Dict[str, Any]] = {}

# Path to state file (set during init)
_state_file_path: Optional[str] = None


def _get_data_directory() -> str:
    """Get the appropriate data directory based on environment."""
    if os.path.exists("/data"):
        return "/data"
    # Running in development - use local .data directory
    data_dir = os.path.join(os.getcwd(), ".data")
    os.makedirs(data_dir, exist_ok=True)
    return data_dir


def default_state_file() -> str:
    return os.path.join(_get_data_directory(), STATE_FILE_NAME)


def init(state_file: Optional[str] = None) -> None:
    """Initialize the state module and load state from disk.

    Args:
        state_file: Path to the state file. None keeps records in memory only.
    """
    global _state_file_path, _state

    _state_file_path = state_file
    _state = {}

    if not state_file:
        logger.info("No state file configured, run records kept in memory only")
        return

    if os.path.exists(state_file):
        try:
            with open(state_file, "r", encoding="utf-8") as f:
                data = json.load(f)

            if isinstance(data, dict) and "programs" in data:
                _state = data.get("programs", {})
                logger.info(f"Loaded run records for {len(_state)} program(s) from {state_file}")
            else:
                logger.warning(f"Invalid state file format at {state_file}, starting fresh")

        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load state from {state_file}: {e}")
    else:
        logger.info(f"No state file found at {state_file}, starting fresh")


def _save() -> None:
    """Save current state to disk."""
    if not _state_file_path:
        return

    try:
        directory = os.path.dirname(_state_file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(_state_file_path, "w", encoding="utf-8") as f:
            json.dump({"programs": _state}, f, indent=2)
        logger.debug(f"Saved state to {_state_file_path}")
    except OSError as e:
        logger.error(f"Failed to save state to {_state_file_path}: {e}")


def get_last_run(program: str) -> Optional[date]:
    """Return the day ``program`` last ran, if known."""
    value = _state.get(program, {}).get("last_run")
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring unreadable last_run {value!r} for {program}")
        return None


def set_last_run(program: str, day: date) -> None:
    _state.setdefault(program, {})["last_run"] = day.isoformat()
    _save()
    logger.debug(f"Recorded run of {program} on {day}")


def clear(program: str) -> None:
    if program in _state:
        del _state[program]
        _save()


class RunRecord:
    """Per-program, per-day completion marker."""

    def __init__(self, program: str):
        self.program = program

    def is_done(self, day: date) -> bool:
        return get_last_run(self.program) == day

    def mark_done(self, day: date) -> bool:
        """Mark ``day`` as done. Returns False if it already was."""
        if self.is_done(day):
            return False
        set_last_run(self.program, day)
        return True

    def rollover(self, day: date) -> None:
        """Drop a record belonging to an earlier day."""
        last = get_last_run(self.program)
        if last is not None and last != day:
            logger.debug(f"Clearing {self.program} run record from {last}")
            clear(self.program)
