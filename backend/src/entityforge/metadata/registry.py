"""Immutable metadata registry snapshots.

A Registry is built once from loaded definitions, cross-checked, and then
only read. Reloading metadata builds a fresh Registry and publishes it
through RegistryHolder.swap; requests capture ``holder.current`` at entry
and keep using that snapshot until they finish.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable

from entityforge.errors import unknown_entity
from entityforge.expressions import ExpressionError, parse
from entityforge.metadata.types import (
    EntityDefinition,
    MetadataError,
    PermissionPolicy,
    RelationDefinition,
    Rule,
    StateMachineDefinition,
    WebhookDefinition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Registry:
    """Read-only view over one generation of metadata."""

    entities: dict[str, EntityDefinition] = field(default_factory=dict)
    relations: tuple[RelationDefinition, ...] = ()
    rules: tuple[Rule, ...] = ()
    state_machines: tuple[StateMachineDefinition, ...] = ()
    policies: tuple[PermissionPolicy, ...] = ()
    webhooks: tuple[WebhookDefinition, ...] = ()

    @classmethod
    def build(
        cls,
        entities: Iterable[EntityDefinition] = (),
        relations: Iterable[RelationDefinition] = (),
        rules: Iterable[Rule] = (),
        state_machines: Iterable[StateMachineDefinition] = (),
        policies: Iterable[PermissionPolicy] = (),
        webhooks: Iterable[WebhookDefinition] = (),
    ) -> "Registry":
        """Assemble and cross-check a registry.

        Raises:
            MetadataError: On duplicate names, dangling entity/relation
                references, or expressions that do not parse.
        """
        by_name: dict[str, EntityDefinition] = {}
        for entity in entities:
            if entity.name in by_name:
                raise MetadataError(f"duplicate entity '{entity.name}'")
            by_name[entity.name] = entity

        registry = cls(
            entities=by_name,
            relations=tuple(relations),
            rules=tuple(sorted(rules, key=lambda r: r.order)),
            state_machines=tuple(state_machines),
            policies=tuple(policies),
            webhooks=tuple(webhooks),
        )
        registry._check()
        return registry

    # ------------------------------------------------------------------
    # Consistency checks
    # ------------------------------------------------------------------

    def _check(self) -> None:
        def known(entity: str, where: str) -> None:
            if entity not in self.entities:
                raise MetadataError(f"{where} references unknown entity '{entity}'")

        seen: set[tuple[str, str]] = set()
        for rel in self.relations:
            known(rel.source, f"relation '{rel.name}'")
            known(rel.target, f"relation '{rel.name}'")
            key = (rel.source, rel.name)
            if key in seen:
                raise MetadataError(f"duplicate relation '{rel.name}' on entity '{rel.source}'")
            if self.entities[rel.source].has_field(rel.name):
                raise MetadataError(f"relation '{rel.name}' clashes with a field of '{rel.source}'")
            if not rel.is_many_to_many and not self.entities[rel.target].has_field(rel.target_key or ""):
                raise MetadataError(
                    f"relation '{rel.name}' target key '{rel.target_key}' is not a field of '{rel.target}'"
                )
            seen.add(key)

        for rule in self.rules:
            known(rule.entity, f"rule '{rule.id}'")
            if rule.definition.expression:
                self._check_expression(rule.definition.expression, f"rule '{rule.id}'")
            for load in rule.definition.related_load:
                if self.find_relation(rule.entity, load.relation) is None:
                    raise MetadataError(
                        f"rule '{rule.id}' loads unknown relation '{load.relation}'"
                    )

        for machine in self.state_machines:
            known(machine.entity, f"state machine '{machine.id}'")
            if not self.entities[machine.entity].has_field(machine.field):
                raise MetadataError(
                    f"state machine '{machine.id}' governs unknown field '{machine.field}'"
                )
            for transition in machine.transitions:
                if transition.guard:
                    self._check_expression(transition.guard, f"state machine '{machine.id}' guard")

        for policy in self.policies:
            known(policy.entity, "permission policy")

        for hook in self.webhooks:
            known(hook.entity, f"webhook '{hook.id}'")
            if hook.condition:
                self._check_expression(hook.condition, f"webhook '{hook.id}' condition")

    @staticmethod
    def _check_expression(expression: str, where: str) -> None:
        try:
            parse(expression)
        except ExpressionError as e:
            raise MetadataError(f"{where}: {e}") from e

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def entity(self, name: str) -> EntityDefinition:
        """Return an entity definition, raising UNKNOWN_ENTITY if absent."""
        definition = self.entities.get(name)
        if definition is None:
            raise unknown_entity(name)
        return definition

    def has_entity(self, name: str) -> bool:
        return name in self.entities

    def relations_of(self, entity: str) -> list[RelationDefinition]:
        """Relations whose source is ``entity``, in declaration order."""
        return [r for r in self.relations if r.source == entity]

    def find_relation(self, entity: str, name: str) -> RelationDefinition | None:
        for rel in self.relations:
            if rel.source == entity and rel.name == name:
                return rel
        return None

    def rules_for(self, entity: str, hook: str) -> list[Rule]:
        return [r for r in self.rules if r.entity == entity and r.hook == hook and r.active]

    def state_machines_for(self, entity: str) -> list[StateMachineDefinition]:
        return [m for m in self.state_machines if m.entity == entity and m.active]

    def policies_for(self, entity: str, action: str) -> list[PermissionPolicy]:
        return [p for p in self.policies if p.entity == entity and p.action == action]

    def webhooks_for(self, entity: str, hook: str) -> list[WebhookDefinition]:
        return [w for w in self.webhooks if w.entity == entity and w.hook == hook and w.active]

    def summary(self) -> dict[str, int]:
        return {
            "entities": len(self.entities),
            "relations": len(self.relations),
            "rules": len(self.rules),
            "state_machines": len(self.state_machines),
            "permissions": len(self.policies),
            "webhooks": len(self.webhooks),
        }


class RegistryHolder:
    """Process-wide pointer to the current Registry snapshot."""

    def __init__(self, registry: Registry | None = None):
        self._registry = registry or Registry()
        self._lock = threading.Lock()

    @property
    def current(self) -> Registry:
        return self._registry

    def swap(self, registry: Registry) -> Registry:
        """Publish a new snapshot and return the one it replaced."""
        with self._lock:
            previous, self._registry = self._registry, registry
        logger.info("Metadata registry swapped: %s", registry.summary())
        return previous
