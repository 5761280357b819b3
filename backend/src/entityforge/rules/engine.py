"""Three-phase rule engine.

Rules for one (entity, hook) run in three fixed sub-phases, each ordered by
priority and then by declaration order:

1. field rules: operator checks against the incoming payload only
2. expression rules: a truthy result means the rule is violated; may
   prefetch related records declared in ``related_load``
3. computed rules: the result is written into the named field; these run
   only when the first two phases collected no violation

A violated rule adds one ErrorDetail and evaluation continues, unless the
rule has ``stop_on_fail``, which ends the current and all later phases.
The engine reports violations; it never raises for them.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from entityforge.auth.types import UserContext
from entityforge.errors import ErrorDetail
from entityforge.expressions import Environment, ExpressionError, evaluate, is_violated
from entityforge.metadata.registry import Registry
from entityforge.metadata.types import RelationDefinition, Rule, RuleDefinition

logger = logging.getLogger(__name__)

PHASES = ("field", "expression", "computed")


class RelatedLoader(Protocol):
    """Loads the related records of ``record`` through ``relation``."""

    async def load_related(
        self,
        relation: RelationDefinition,
        record: dict[str, Any],
        conditions: Any = None,
    ) -> list[dict[str, Any]]:
        ...


@dataclass
class RuleOutcome:
    """Result of running one hook's rules.

    Attributes:
        record: The record after computed fields were applied
        errors: Every violation collected, in evaluation order
        stopped: True when a stop_on_fail rule ended evaluation early
    """

    record: dict[str, Any]
    errors: list[ErrorDetail] = field(default_factory=list)
    stopped: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors


def ordered(rules: list[Rule], rule_type: str) -> list[Rule]:
    """Rules of one type sorted by priority, ties broken by declaration order."""
    return sorted((r for r in rules if r.type == rule_type), key=lambda r: (r.priority, r.order))


class RuleEngine:
    """Runs field, expression and computed rules for a hook."""

    def __init__(self, registry: Registry, loader: RelatedLoader | None = None):
        self.registry = registry
        self.loader = loader

    async def run_hooks(
        self,
        hook: str,
        entity: str,
        action: str,
        record: dict[str, Any],
        old: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        user: UserContext | None = None,
        now: datetime | None = None,
    ) -> RuleOutcome:
        """Evaluate every active rule for (entity, hook).

        Args:
            hook: "before_write" or "before_delete"
            entity: Entity name
            action: "create", "update" or "delete"
            record: The candidate record (old merged with payload on update)
            old: The stored record, None on create
            payload: Client-supplied fields; field rules only look here.
                Defaults to ``record``.
            user: The caller
            now: Evaluation time, shared with the rest of the request
        """
        rules = self.registry.rules_for(entity, hook)
        candidate = dict(record)
        outcome = RuleOutcome(record=candidate)
        if not rules:
            return outcome

        env = Environment(
            record=candidate,
            old=old,
            user=user.to_dict() if user else None,
            action=action,
        )
        if now is not None:
            env.now = now
        supplied = candidate if payload is None else payload
        prefetched: dict[str, list[dict[str, Any]]] = {}

        for rule in ordered(rules, "field"):
            message = check_field_rule(rule.definition, supplied, action)
            if message and self._violate(outcome, rule, message):
                return outcome

        for rule in ordered(rules, "expression"):
            await self._prefetch(entity, rule, candidate, env, prefetched)
            definition = rule.definition
            try:
                violated = is_violated(definition.expression, env)
            except ExpressionError as e:
                if self._violate(outcome, rule, f"rule evaluation error: {e}"):
                    return outcome
                continue
            if violated and self._violate(outcome, rule, definition.message or "Expression rule violated"):
                return outcome

        if outcome.errors:
            logger.debug("Skipping computed rules for %s: %d violation(s)", entity, len(outcome.errors))
            return outcome

        for rule in ordered(rules, "computed"):
            await self._prefetch(entity, rule, candidate, env, prefetched)
            try:
                candidate[rule.definition.field] = evaluate(rule.definition.expression, env)
            except ExpressionError as e:
                if self._violate(outcome, rule, f"rule evaluation error: {e}"):
                    return outcome

        return outcome

    @staticmethod
    def _violate(outcome: RuleOutcome, rule: Rule, message: str) -> bool:
        """Record a violation; return True when evaluation must stop."""
        outcome.errors.append(ErrorDetail(field=rule.definition.field, rule=rule.id, message=message))
        if rule.definition.stop_on_fail:
            outcome.stopped = True
            return True
        return False

    async def _prefetch(
        self,
        entity: str,
        rule: Rule,
        record: dict[str, Any],
        env: Environment,
        prefetched: dict[str, list[dict[str, Any]]],
    ) -> None:
        """Populate env.related for the rule, loading each (relation, filter) once."""
        for load in rule.definition.related_load:
            key = f"{load.relation}|{json.dumps(load.filter, sort_keys=True, default=str)}"
            if key not in prefetched:
                relation = self.registry.find_relation(entity, load.relation)
                if self.loader is None or relation is None:
                    logger.warning(
                        "Rule '%s' requests relation '%s' but no loader is available",
                        rule.id,
                        load.relation,
                    )
                    prefetched[key] = []
                else:
                    prefetched[key] = await self.loader.load_related(relation, record, load.filter)
            env.related[load.relation] = prefetched[key]


# -----------------------------------------------------------------------------
# Field rule operators
# -----------------------------------------------------------------------------


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def check_field_rule(
    definition: RuleDefinition,
    payload: dict[str, Any],
    action: str,
) -> str | None:
    """Apply one field operator to the payload.

    Returns the violation message, or None when the rule passes. Absent
    and null values pass every operator except ``required``, and so do
    values an operator cannot measure (non-numbers for min/max, non-strings
    for the length checks).
    """
    name, op, limit = definition.field, definition.operator, definition.value
    message = definition.message or f"field {name} failed {op} validation"
    present = name in payload
    value = payload.get(name)

    if op == "required":
        if present:
            return message if value is None or value == "" else None
        return message if action == "create" else None

    if value is None:
        return None

    if op in ("min", "max"):
        number, bound = _as_number(value), _as_number(limit)
        if number is None or bound is None:
            return None
        if op == "min":
            return message if number < bound else None
        return message if number > bound else None

    if op in ("min_length", "max_length"):
        bound = _as_number(limit)
        if not isinstance(value, str) or bound is None:
            return None
        if op == "min_length":
            return message if len(value) < bound else None
        return message if len(value) > bound else None

    if op == "pattern":
        try:
            return None if re.search(str(limit), str(value)) else message
        except re.error:
            return f"field {name} has an invalid pattern"

    if op == "in":
        return None if value in (limit or []) else message

    if op == "not_in":
        return message if value in (limit or []) else None

    return f"field {name} uses unknown operator {op}"
