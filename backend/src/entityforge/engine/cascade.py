"""Delete propagation along relations.

Deleting a record first applies the ``on_delete`` policy of every
relation it is the source of:

- cascade: delete each live child (recursively)
- set_null: clear the children's foreign key
- restrict: refuse with CONFLICT while live children or links exist
- detach: leave one_to_* children untouched; drop join rows

Join rows are always hard-deleted. The record itself is soft-deleted when
its entity declares soft_delete.
"""

import logging
from typing import Any

from sqlalchemy.engine import Connection

from entityforge.errors import conflict, not_found
from entityforge.metadata.registry import Registry
from entityforge.metadata.types import EntityDefinition, RelationDefinition
from entityforge.persistence.store import Store

logger = logging.getLogger(__name__)


class CascadeDeleter:
    def __init__(self, registry: Registry, store: Store, deleted_at: str):
        self.registry = registry
        self.store = store
        self.deleted_at = deleted_at

    def delete(
        self,
        conn: Connection,
        entity: EntityDefinition,
        key: Any,
        record: dict[str, Any] | None = None,
        _seen: set[tuple[str, Any]] | None = None,
    ) -> None:
        """Delete one record after applying its relations' on_delete policies.

        Raises:
            EngineError: NOT_FOUND when the row is gone, CONFLICT when a
                restrict relation still has dependents
        """
        seen = _seen if _seen is not None else set()
        if (entity.name, key) in seen:
            return
        seen.add((entity.name, key))

        for relation in self.registry.relations_of(entity.name):
            value = self._source_value(conn, entity, key, relation, record)
            if value is None:
                continue
            if relation.is_many_to_many:
                self._release_links(conn, entity, key, relation, value)
            else:
                self._release_children(conn, entity, key, relation, value, seen)

        if self.store.delete(conn, entity, key, self.deleted_at) == 0:
            raise not_found(entity.name, key)
        logger.debug("Deleted %s %s", entity.name, key)

    def _source_value(
        self,
        conn: Connection,
        entity: EntityDefinition,
        key: Any,
        relation: RelationDefinition,
        record: dict[str, Any] | None,
    ) -> Any:
        if relation.source_key == entity.pk:
            return key
        if record is None:
            record = self.store.fetch(conn, entity, key) or {}
        return record.get(relation.source_key)

    def _release_links(
        self,
        conn: Connection,
        entity: EntityDefinition,
        key: Any,
        relation: RelationDefinition,
        value: Any,
    ) -> None:
        if relation.on_delete == "restrict" and self.store.linked_keys(conn, relation, value):
            raise conflict(f"cannot delete {entity.name} {key}: '{relation.name}' still has links")
        removed = self.store.unlink(conn, relation, value)
        if removed:
            logger.debug("Removed %d %s link(s) of %s %s", removed, relation.name, entity.name, key)

    def _release_children(
        self,
        conn: Connection,
        entity: EntityDefinition,
        key: Any,
        relation: RelationDefinition,
        value: Any,
        seen: set[tuple[str, Any]],
    ) -> None:
        child = self.registry.entity(relation.target)
        policy = relation.on_delete

        if policy == "restrict":
            if self.store.child_keys(conn, relation, child, value):
                raise conflict(f"cannot delete {entity.name} {key}: '{relation.name}' still has records")
        elif policy == "cascade":
            for child_key in self.store.child_keys(conn, relation, child, value):
                self.delete(conn, child, child_key, _seen=seen)
        elif policy == "set_null":
            self.store.set_null(conn, relation, child, value)
