"""Executes WritePlans inside one open transaction.

The parent row is written first. Relation groups follow in plan order,
owned rows before join rows, and every child finishes its own nested
relations before its next sibling starts. Existing children are read on
the same connection, so a keyed item that does not belong to its parent
is skipped rather than reassigned. Stored keys and payload keys are
compared after ``coerce_key``.
"""

import logging
from typing import Any

from sqlalchemy.engine import Connection

from entityforge.engine.cascade import CascadeDeleter
from entityforge.engine.planner import OpKind, PlanNode, WritePlan
from entityforge.errors import invalid_payload, not_found
from entityforge.metadata.registry import Registry
from entityforge.metadata.types import EntityDefinition, RelationDefinition
from entityforge.persistence.store import Store, coerce_key

logger = logging.getLogger(__name__)


class WriteExecutor:
    def __init__(self, registry: Registry, store: Store, now_iso: str):
        self.registry = registry
        self.store = store
        self.cascade = CascadeDeleter(registry, store, deleted_at=now_iso)

    def execute(self, plan: WritePlan, conn: Connection) -> Any:
        """Run every node of ``plan``; returns the root key.

        Raises:
            EngineError: NOT_FOUND when the root row disappeared,
                CONFLICT from restrict relations
        """
        root = plan.root
        entity = self.registry.entity(root.entity)

        if root.kind is OpKind.INSERT:
            root.key = self.store.insert(conn, entity, root.values)
        elif root.kind is OpKind.UPDATE:
            if root.values and self.store.update(conn, entity, root.key, root.values) == 0:
                raise not_found(entity.name, root.key)
        elif root.kind is OpKind.DELETE:
            self.cascade.delete(conn, entity, root.key)
            return root.key

        links: list[tuple[PlanNode, RelationDefinition, Any]] = []
        self._sync(plan, root, entity, conn, links)
        for group, relation, parent_value in links:
            self._sync_links(plan, group, relation, parent_value, conn)
        return root.key

    def _sync(
        self,
        plan: WritePlan,
        node: PlanNode,
        entity: EntityDefinition,
        conn: Connection,
        links: list[tuple[PlanNode, RelationDefinition, Any]],
    ) -> None:
        for group in plan.children_of(node):
            relation = self.registry.find_relation(entity.name, group.relation)
            parent_value = self._parent_value(conn, entity, node, relation)
            if relation.is_many_to_many:
                # Join rows go after every owned row in the tree
                links.append((group, relation, parent_value))
            else:
                self._sync_children(plan, group, relation, parent_value, conn, links)

    def _parent_value(
        self,
        conn: Connection,
        entity: EntityDefinition,
        node: PlanNode,
        relation: RelationDefinition,
    ) -> Any:
        if relation.source_key == entity.pk:
            return node.key
        if relation.source_key in node.values:
            return node.values[relation.source_key]
        record = self.store.fetch(conn, entity, node.key) or {}
        return record.get(relation.source_key)

    @staticmethod
    def _key(entity: EntityDefinition, node: PlanNode) -> Any:
        try:
            return coerce_key(entity, node.key)
        except (TypeError, ValueError) as e:
            raise invalid_payload(f"{node.path}: invalid {entity.pk} {node.key!r}") from e

    def _sync_children(
        self,
        plan: WritePlan,
        group: PlanNode,
        relation: RelationDefinition,
        parent_value: Any,
        conn: Connection,
        links: list[tuple[PlanNode, RelationDefinition, Any]],
    ) -> None:
        child = self.registry.entity(relation.target)
        existing = {coerce_key(child, k) for k in self.store.child_keys(conn, relation, child, parent_value)}
        mentioned: set[Any] = set()

        for item in plan.children_of(group):
            if item.kind is OpKind.INSERT:
                values = {**item.values, relation.target_key: parent_value}
                item.key = self.store.insert(conn, child, values)
                mentioned.add(coerce_key(child, item.key))
                self._sync(plan, item, child, conn, links)
                continue

            key = self._key(child, item)
            mentioned.add(key)
            if key not in existing:
                logger.debug(
                    "Skipping %s at %s: %s %s is not a child of %s",
                    item.kind.value, item.path, child.name, key, parent_value,
                )
                continue

            if item.kind is OpKind.UPDATE:
                item.key = key
                self.store.update(conn, child, key, item.values)
                self._sync(plan, item, child, conn, links)
            elif item.kind is OpKind.DELETE:
                self.cascade.delete(conn, child, key)

        if group.write_mode == "replace":
            for key in existing - mentioned:
                self.cascade.delete(conn, child, key)

    def _sync_links(
        self,
        plan: WritePlan,
        group: PlanNode,
        relation: RelationDefinition,
        parent_value: Any,
        conn: Connection,
    ) -> None:
        target = self.registry.entity(relation.target)
        linked = {coerce_key(target, k) for k in self.store.linked_keys(conn, relation, parent_value)}
        wanted: set[Any] = set()

        for item in plan.children_of(group):
            key = self._key(target, item)
            if item.kind is OpKind.LINK:
                wanted.add(key)
                if key not in linked:
                    self.store.link(conn, relation, parent_value, key)
                    linked.add(key)
            elif item.kind is OpKind.UNLINK and key in linked:
                self.store.unlink(conn, relation, parent_value, key)
                linked.discard(key)

        if group.write_mode == "replace":
            for key in linked - wanted:
                self.store.unlink(conn, relation, parent_value, key)
