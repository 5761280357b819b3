"""State machine enforcement for governed fields.

For each active machine on an entity, in declaration order:

- create without the field: the initial state is injected
- create with the field: it must equal the initial state
- update with an unchanged value: no-op, no lookup and no guard
- otherwise a transition must leave the stored state for the requested
  one; the caller must hold one of its roles (admin always does) and its
  guard, when present, must evaluate truthy

Completed transitions run their actions in order. ``set_field`` mutates
the record (the value ``"now"`` becomes the evaluation time); the other
action types are returned as DeferredAction requests.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from entityforge.auth.types import UserContext
from entityforge.effects.types import DeferredAction
from entityforge.errors import EngineError, ErrorCode, ErrorDetail, forbidden, validation_failed
from entityforge.expressions import Environment, ExpressionError, is_allowed
from entityforge.metadata.types import StateMachineDefinition, Transition

logger = logging.getLogger(__name__)

INVALID_TRANSITION = "INVALID_TRANSITION"
GUARD_FAILED = "GUARD_FAILED"

NOW_SENTINEL = "now"


@dataclass
class TransitionEvent:
    entity: str
    field: str
    from_state: str | None
    to_state: str


@dataclass
class TransitionOutcome:
    """Result of applying one machine.

    Attributes:
        record: The record with any set_field actions applied
        actions: Deferred side-effect requests, in declaration order
        events: Completed transitions (empty for a no-op)
    """

    record: dict[str, Any]
    actions: list[DeferredAction] = field(default_factory=list)
    events: list[TransitionEvent] = field(default_factory=list)


class TransitionError(EngineError):
    """A rejected transition, reported as VALIDATION_FAILED."""

    def __init__(self, kind: str, state_field: str, message: str):
        self.kind = kind
        super().__init__(
            ErrorCode.VALIDATION_FAILED,
            message,
            [ErrorDetail(field=state_field, rule=kind, message=message)],
        )


class StateMachineEngine:
    """Validates and applies state transitions."""

    def apply_transition(
        self,
        machine: StateMachineDefinition,
        action: str,
        record: dict[str, Any],
        old: dict[str, Any] | None = None,
        user: UserContext | None = None,
        now: datetime | None = None,
    ) -> TransitionOutcome:
        """Apply one machine to the candidate record.

        Raises:
            TransitionError: INVALID_TRANSITION or GUARD_FAILED
            EngineError: FORBIDDEN when the caller lacks a transition role
        """
        now = now or datetime.now(timezone.utc)
        name = machine.field
        candidate = dict(record)

        if action == "create":
            requested = candidate.get(name)
            if requested is None:
                candidate[name] = machine.initial
                logger.debug("Injected initial state %s.%s=%s", machine.entity, name, machine.initial)
            elif str(requested) != machine.initial:
                raise TransitionError(
                    INVALID_TRANSITION,
                    name,
                    f"{name} must start in '{machine.initial}', got '{requested}'",
                )
            return TransitionOutcome(
                record=candidate,
                events=[TransitionEvent(machine.entity, name, None, machine.initial)],
            )

        current = (old or {}).get(name)
        requested = candidate.get(name)
        if requested == current:
            return TransitionOutcome(record=candidate)

        transition = self._find(machine, current, requested)
        if transition is None:
            raise TransitionError(
                INVALID_TRANSITION,
                name,
                f"invalid transition from '{current}' to '{requested}'",
            )

        if transition.roles and not (user and (user.is_admin or user.has_any_role(transition.roles))):
            raise forbidden(
                f"transition from '{current}' to '{requested}' requires one of roles: "
                f"{', '.join(transition.roles)}"
            )

        if transition.guard:
            env = Environment(
                record=candidate,
                old=old,
                user=user.to_dict() if user else None,
                action=action,
                now=now,
            )
            try:
                allowed = is_allowed(transition.guard, env)
            except ExpressionError as e:
                raise TransitionError(GUARD_FAILED, name, f"guard evaluation error: {e}") from e
            if not allowed:
                raise TransitionError(
                    GUARD_FAILED,
                    name,
                    f"guard blocked transition from '{current}' to '{requested}'",
                )

        actions = self._run_actions(machine, transition, candidate, now)
        return TransitionOutcome(
            record=candidate,
            actions=actions,
            events=[TransitionEvent(machine.entity, name, current, str(requested))],
        )

    def apply_all(
        self,
        machines: list[StateMachineDefinition],
        action: str,
        record: dict[str, Any],
        old: dict[str, Any] | None = None,
        user: UserContext | None = None,
        now: datetime | None = None,
    ) -> TransitionOutcome:
        """Apply every machine in order, merging their outcomes.

        Transition failures from several machines are reported together;
        FORBIDDEN is raised as soon as it occurs.
        """
        merged = TransitionOutcome(record=dict(record))
        details: list[ErrorDetail] = []

        for machine in machines:
            try:
                outcome = self.apply_transition(machine, action, merged.record, old, user, now)
            except TransitionError as e:
                details.extend(e.details)
                continue
            merged.record = outcome.record
            merged.actions.extend(outcome.actions)
            merged.events.extend(outcome.events)

        if details:
            message = details[0].message if len(details) == 1 else "state transition rejected"
            raise validation_failed(details, message)

        return merged

    @staticmethod
    def _find(machine: StateMachineDefinition, current: Any, requested: Any) -> Transition | None:
        for transition in machine.transitions:
            if transition.leaves(current) and transition.to == str(requested):
                return transition
        return None

    @staticmethod
    def _run_actions(
        machine: StateMachineDefinition,
        transition: Transition,
        record: dict[str, Any],
        now: datetime,
    ) -> list[DeferredAction]:
        deferred: list[DeferredAction] = []
        for step in transition.actions:
            if step.type == "set_field":
                value = now.isoformat() if step.value == NOW_SENTINEL else step.value
                record[step.field] = value
            else:
                deferred.append(DeferredAction(type=step.type, entity=machine.entity, config=dict(step.config)))
        return deferred
