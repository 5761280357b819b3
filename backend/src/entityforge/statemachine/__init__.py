"""State machine engine."""

from entityforge.statemachine.engine import (
    GUARD_FAILED,
    INVALID_TRANSITION,
    StateMachineEngine,
    TransitionError,
    TransitionEvent,
    TransitionOutcome,
)

__all__ = [
    "GUARD_FAILED",
    "INVALID_TRANSITION",
    "StateMachineEngine",
    "TransitionError",
    "TransitionEvent",
    "TransitionOutcome",
]
