from .light_controller import (
    DeviceRejected,
    DeviceUnreachable,
    LightCommand,
    LightController,
    LightObservedState,
    RetryPolicy,
)
from .planner import Anchor, next_trigger
from .programs import (
    EveningLightsProgram,
    MorningLightsProgram,
    ProgramState,
    TurnMorningLightsOffProgram,
    build_programs,
)
from .suntimes import SolarClock, SolarUndefined
from .transitions import LightValues, TransitionExecutor, TransitionOutcome

__all__ = [
    "Anchor",
    "DeviceRejected",
    "DeviceUnreachable",
    "EveningLightsProgram",
    "LightCommand",
    "LightController",
    "LightObservedState",
    "LightValues",
    "MorningLightsProgram",
    "ProgramState",
    "RetryPolicy",
    "SolarClock",
    "SolarUndefined",
    "TransitionExecutor",
    "TransitionOutcome",
    "TurnMorningLightsOffProgram",
    "build_programs",
    "next_trigger",
]
