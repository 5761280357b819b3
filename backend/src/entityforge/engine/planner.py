"""Nested write planning.

A write payload mixes field values with relation keys. ``split_payload``
separates them; ``WritePlanner`` turns the result into a WritePlan: a flat
arena of PlanNodes linked by index. The root node carries the parent row,
each relation write becomes a SYNC node under its parent, and each item
under a SYNC node becomes an INSERT, UPDATE, DELETE, LINK or UNLINK node.

Planning validates every row before a statement runs. Whether a keyed
item really belongs to its parent is only known inside the transaction,
so the executor makes that call.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from entityforge.errors import ErrorDetail, invalid_payload, unknown_fields, validation_failed
from entityforge.metadata.registry import Registry
from entityforge.metadata.types import WRITE_MODES, EntityDefinition, RelationDefinition
from entityforge.engine.records import (
    apply_auto_timestamps,
    apply_defaults,
    normalize_values,
    strip_read_only,
    validate_values,
)

logger = logging.getLogger(__name__)

MAX_NESTING_DEPTH = 8
DELETE_FLAG = "_delete"


class OpKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    LINK = "link"
    UNLINK = "unlink"
    SYNC = "sync"


@dataclass
class PlanNode:
    """One planned operation.

    Attributes:
        index: Position in the plan arena
        kind: The operation
        entity: Entity the row belongs to (the target entity for SYNC)
        key: Primary key, when known at planning time
        values: Column values to write
        parent: Index of the owning node (None for the root)
        relation: Relation name, for SYNC nodes and their items
        write_mode: diff, replace or append, for SYNC nodes
        children: Indexes of nodes owned by this one, in execution order
        path: Payload location used in error details
    """

    index: int
    kind: OpKind
    entity: str
    key: Any = None
    values: dict[str, Any] = field(default_factory=dict)
    parent: int | None = None
    relation: str | None = None
    write_mode: str | None = None
    children: list[int] = field(default_factory=list)
    path: str = ""


@dataclass
class WritePlan:
    entity: str
    action: str
    nodes: list[PlanNode] = field(default_factory=list)

    def add(self, kind: OpKind, entity: str, parent: int | None = None, **attrs: Any) -> PlanNode:
        node = PlanNode(index=len(self.nodes), kind=kind, entity=entity, parent=parent, **attrs)
        self.nodes.append(node)
        if parent is not None:
            self.nodes[parent].children.append(node.index)
        return node

    @property
    def root(self) -> PlanNode:
        return self.nodes[0]

    def children_of(self, node: PlanNode) -> list[PlanNode]:
        return [self.nodes[i] for i in node.children]

    def include_tree(self, node: PlanNode | None = None) -> dict[str, Any]:
        """Relation names written under ``node``, nested, for re-reading the result."""
        node = node or self.root
        tree: dict[str, Any] = {}
        for group in self.children_of(node):
            subtree = tree.setdefault(group.relation, {})
            for item in self.children_of(group):
                subtree.update(self.include_tree(item))
        return tree


@dataclass
class RelationWrite:
    relation: RelationDefinition
    write_mode: str
    items: list[Any]


# -----------------------------------------------------------------------------
# Payload splitting
# -----------------------------------------------------------------------------


def split_payload(
    registry: Registry,
    entity: EntityDefinition,
    payload: Any,
    path: str = "",
) -> tuple[dict[str, Any], dict[str, RelationWrite]]:
    """Separate field values from relation writes.

    A relation value must be ``{"write_mode": ..., "data": [...]}`` (the
    mode is optional; ``_write_mode`` is accepted as an alias). For
    one_to_one relations ``data`` may be a single object.

    Raises:
        EngineError: UNKNOWN_FIELD for keys that are neither fields nor
            relations, INVALID_PAYLOAD for malformed relation values
    """
    if not isinstance(payload, dict):
        raise invalid_payload(f"{path or entity.name}: expected an object")

    values: dict[str, Any] = {}
    writes: dict[str, RelationWrite] = {}
    unknown: list[str] = []

    for key, value in payload.items():
        if entity.has_field(key):
            values[key] = value
            continue
        relation = registry.find_relation(entity.name, key)
        if relation is None:
            unknown.append(key)
            continue
        writes[key] = _relation_write(relation, value, f"{path}{key}")

    if unknown:
        raise unknown_fields(unknown, prefix=path)
    return values, writes


def _relation_write(relation: RelationDefinition, value: Any, path: str) -> RelationWrite:
    if not isinstance(value, dict) or "data" not in value:
        raise invalid_payload(f"{path}: relation writes must be an object with a 'data' list")

    extra = set(value) - {"data", "write_mode", "_write_mode"}
    if extra:
        raise invalid_payload(f"{path}: unexpected keys {', '.join(sorted(extra))}")

    mode = value.get("write_mode", value.get("_write_mode")) or relation.write_mode
    if mode not in WRITE_MODES:
        raise invalid_payload(f"{path}: unknown write mode '{mode}'")

    data = value["data"]
    if relation.type == "one_to_one" and isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise invalid_payload(f"{path}: 'data' must be a list")
    if relation.type == "one_to_one" and len(data) > 1:
        raise invalid_payload(f"{path}: one_to_one relations take at most one item")
    if not relation.is_many_to_many:
        for i, item in enumerate(data):
            if not isinstance(item, dict):
                raise invalid_payload(f"{path}[{i}]: expected an object")

    return RelationWrite(relation=relation, write_mode=mode, items=data)


# -----------------------------------------------------------------------------
# Planning
# -----------------------------------------------------------------------------


class WritePlanner:
    """Builds validated WritePlans from split payloads."""

    def __init__(self, registry: Registry):
        self.registry = registry

    def plan(
        self,
        entity: str,
        action: str,
        values: dict[str, Any],
        writes: dict[str, RelationWrite] | None = None,
        key: Any = None,
        now: datetime | None = None,
    ) -> WritePlan:
        """Plan a create or update of one root record and its relations.

        Args:
            entity: Root entity name
            action: "create" or "update"
            values: Root field values (for updates, only changed fields)
            writes: Relation writes from ``split_payload``
            key: Root key for updates
            now: Time used for auto timestamps

        Raises:
            EngineError: VALIDATION_FAILED with every row problem found,
                INVALID_PAYLOAD for structural problems
        """
        entity_def = self.registry.entity(entity)
        now_iso = (now or datetime.now(timezone.utc)).isoformat()
        plan = WritePlan(entity=entity, action=action)
        errors: list[ErrorDetail] = []

        if action == "create":
            row = normalize_values(entity_def, apply_auto_timestamps(
                entity_def, apply_defaults(entity_def, values), action, now_iso
            ))
            errors.extend(validate_values(entity_def, row, partial=False, exempt=self._generated(entity_def)))
            root = plan.add(OpKind.INSERT, entity, values=row, key=row.get(entity_def.pk))
        else:
            row = values
            if row:
                row = normalize_values(entity_def, apply_auto_timestamps(entity_def, row, action, now_iso))
            errors.extend(validate_values(entity_def, row, partial=True))
            root = plan.add(OpKind.UPDATE, entity, values=row, key=key)

        self._plan_relations(plan, root, entity_def, writes or {}, "", [entity], now_iso, errors)

        if errors:
            raise validation_failed(errors)
        logger.debug("Planned %s %s: %d node(s)", action, entity, len(plan.nodes))
        return plan

    def plan_delete(self, entity: str, key: Any) -> WritePlan:
        plan = WritePlan(entity=entity, action="delete")
        plan.add(OpKind.DELETE, entity, key=key)
        return plan

    @staticmethod
    def _generated(entity: EntityDefinition) -> set[str]:
        return {entity.pk} if entity.primary_key.generated else set()

    def _plan_relations(
        self,
        plan: WritePlan,
        parent: PlanNode,
        entity: EntityDefinition,
        writes: dict[str, RelationWrite],
        path: str,
        lineage: list[str],
        now_iso: str,
        errors: list[ErrorDetail],
    ) -> None:
        # Owned rows before join rows
        ordered = sorted(writes.values(), key=lambda w: w.relation.is_many_to_many)
        for write in ordered:
            relation = write.relation
            target = self.registry.entity(relation.target)
            group_path = f"{path}{relation.name}"

            if not relation.is_many_to_many:
                if relation.target in lineage:
                    chain = " -> ".join(lineage + [relation.target])
                    raise invalid_payload(f"{group_path}: circular relation chain {chain}")
                if len(lineage) >= MAX_NESTING_DEPTH:
                    raise invalid_payload(
                        f"{group_path}: nesting deeper than {MAX_NESTING_DEPTH} levels"
                    )

            group = plan.add(
                OpKind.SYNC,
                target.name,
                parent=parent.index,
                relation=relation.name,
                write_mode=write.write_mode,
                path=group_path,
            )

            for i, item in enumerate(write.items):
                item_path = f"{group_path}[{i}]"
                if relation.is_many_to_many:
                    self._plan_link(plan, group, target, item, write.write_mode, item_path)
                else:
                    self._plan_child(
                        plan, group, relation, target, item, write.write_mode,
                        item_path, lineage, now_iso, errors,
                    )

    def _plan_link(
        self,
        plan: WritePlan,
        group: PlanNode,
        target: EntityDefinition,
        item: Any,
        mode: str,
        path: str,
    ) -> None:
        if isinstance(item, dict):
            target_key = item.get(target.pk)
            unlink = item.get(DELETE_FLAG) is True
        else:
            target_key, unlink = item, False

        if target_key is None or isinstance(target_key, (dict, list, bool)):
            raise invalid_payload(
                f"{path}: many_to_many items must reference an existing {target.name} by {target.pk}"
            )
        if unlink and mode == "append":
            logger.debug("Skipping unlink at %s: append mode never removes", path)
            return
        plan.add(OpKind.UNLINK if unlink else OpKind.LINK, target.name, parent=group.index, key=target_key, path=path)

    def _plan_child(
        self,
        plan: WritePlan,
        group: PlanNode,
        relation: RelationDefinition,
        child: EntityDefinition,
        item: dict[str, Any],
        mode: str,
        path: str,
        lineage: list[str],
        now_iso: str,
        errors: list[ErrorDetail],
    ) -> None:
        item = dict(item)
        delete = item.pop(DELETE_FLAG, False) is True
        key = item.get(child.pk)
        prefix = f"{path}."

        if delete:
            if key is None:
                raise invalid_payload(f"{path}: '{DELETE_FLAG}' requires {child.pk}")
            if mode == "append":
                logger.debug("Skipping delete at %s: append mode never removes", path)
                return
            plan.add(OpKind.DELETE, child.name, parent=group.index, key=key, path=path)
            return

        if key is not None and mode == "append":
            logger.debug("Skipping keyed item at %s: append mode only inserts", path)
            return

        values, writes = split_payload(self.registry, child, item, prefix)
        values.pop(relation.target_key, None)

        if key is None:
            action = "create"
            row = apply_auto_timestamps(child, apply_defaults(child, strip_read_only(child, values, action)), action, now_iso)
            row = normalize_values(child, row)
            exempt = self._generated(child) | {relation.target_key}
            errors.extend(validate_values(child, row, partial=False, path=prefix, exempt=exempt))
            node = plan.add(OpKind.INSERT, child.name, parent=group.index, values=row, path=path)
        else:
            action = "update"
            row = strip_read_only(child, values, action)
            row = normalize_values(child, apply_auto_timestamps(child, row, action, now_iso))
            errors.extend(validate_values(child, row, partial=True, path=prefix))
            node = plan.add(OpKind.UPDATE, child.name, parent=group.index, values=row, key=key, path=path)

        self._plan_relations(plan, node, child, writes, prefix, lineage + [child.name], now_iso, errors)
