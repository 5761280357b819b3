"""Read access: filtered, paginated lists, single records and includes.

Client reads are scoped by the caller's read policies. ``load_tree`` is the
system-level variant used after writes; it ignores policies.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.engine import Connection

from entityforge.auth.permissions import PermissionEvaluator
from entityforge.auth.types import UserContext
from entityforge.errors import EngineError, ErrorCode, invalid_payload, not_found, unknown_fields
from entityforge.filters import MATCH_ALL, CompiledFilter, ParamBuilder, all_of, compile_conditions
from entityforge.metadata.registry import Registry
from entityforge.metadata.types import EntityDefinition, RelationDefinition
from entityforge.persistence.store import Store, coerce_key

logger = logging.getLogger(__name__)

DEFAULT_PER_PAGE = 25
MAX_PER_PAGE = 100


def parse_include(include: str | list[str] | dict[str, Any] | None) -> dict[str, Any]:
    """Turn ``"items,items.product,tags"`` into a nested include tree."""
    if not include:
        return {}
    if isinstance(include, dict):
        return include
    paths = include.split(",") if isinstance(include, str) else include
    tree: dict[str, Any] = {}
    for path in paths:
        node = tree
        for part in path.strip().split("."):
            if part:
                node = node.setdefault(part, {})
    return tree


def parse_sort(entity: EntityDefinition, sort: str | list[str] | None) -> list[tuple[str, bool]]:
    """``"-total,name"`` -> [("total", True), ("name", False)]; defaults to the key."""
    if not sort:
        return [(entity.pk, False)]
    terms = sort.split(",") if isinstance(sort, str) else sort
    order: list[tuple[str, bool]] = []
    for term in terms:
        term = term.strip()
        if not term:
            continue
        desc = term.startswith("-")
        name = term.lstrip("-+")
        if not entity.has_field(name):
            raise unknown_fields([name])
        order.append((name, desc))
    return order or [(entity.pk, False)]


class ReadService:
    def __init__(self, registry: Registry, store: Store):
        self.registry = registry
        self.store = store
        self.permissions = PermissionEvaluator(registry)

    async def list(
        self,
        entity: str,
        user: UserContext | None,
        filters: Any = None,
        sort: str | list[str] | None = None,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
        include: Any = None,
    ) -> dict[str, Any]:
        """List visible records.

        Returns:
            {"data": [...], "meta": {"page", "per_page", "total"}}

        Raises:
            EngineError: FORBIDDEN without a matching read policy,
                UNKNOWN_FIELD / INVALID_PAYLOAD for bad filters
        """
        entity_def = self.registry.entity(entity)
        if page < 1 or per_page < 1:
            raise invalid_payload("page and per_page must be positive")
        per_page = min(per_page, MAX_PER_PAGE)

        builder = ParamBuilder()
        scope = self.permissions.read_scope(user, entity, ParamBuilder(prefix="rls"))
        where = all_of([
            compile_conditions(filters, entity_def, builder),
            scope.filter or MATCH_ALL,
        ])
        order = parse_sort(entity_def, sort)
        tree = parse_include(include)

        with self.store.connect() as conn:
            total = self.store.count(conn, entity_def, where)
            rows = self.store.select(
                conn,
                entity_def,
                where=where,
                order_by=order,
                limit=per_page,
                offset=(page - 1) * per_page,
            )
            self._attach(conn, entity_def, rows, tree, user)

        return {"data": rows, "meta": {"page": page, "per_page": per_page, "total": total}}

    async def get(
        self,
        entity: str,
        record_id: Any,
        user: UserContext | None,
        include: Any = None,
    ) -> dict[str, Any]:
        """Fetch one visible record; rows outside the read scope are NOT_FOUND."""
        entity_def = self.registry.entity(entity)
        key = self.parse_key(entity_def, record_id)
        scope = self.permissions.read_scope(user, entity)

        with self.store.connect() as conn:
            record = self.store.fetch(conn, entity_def, key, where=scope.filter)
            if record is None:
                raise not_found(entity, record_id)
            self._attach(conn, entity_def, [record], parse_include(include), user)
        return record

    @staticmethod
    def parse_key(entity: EntityDefinition, record_id: Any) -> Any:
        try:
            return coerce_key(entity, record_id)
        except (TypeError, ValueError) as e:
            raise not_found(entity.name, record_id) from e

    def load_tree(
        self,
        conn: Connection,
        entity: EntityDefinition,
        key: Any,
        include: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """System-level read of one record and its included relations."""
        record = self.store.fetch(conn, entity, key)
        if record is not None:
            self._attach(conn, entity, [record], include or {}, None)
        return record

    async def load_related(
        self,
        relation: RelationDefinition,
        record: dict[str, Any],
        conditions: Any = None,
    ) -> list[dict[str, Any]]:
        """Related records of ``record`` for rule evaluation (system-level)."""
        source = self.registry.entity(relation.source)
        target = self.registry.entity(relation.target)
        value = record.get(relation.source_key)
        if value is None:
            return []
        extra = compile_conditions(conditions, target, ParamBuilder(prefix="rl"))
        with self.store.connect() as conn:
            grouped = self._related(conn, relation, target, [value], extra)
        logger.debug("Loaded %s.%s for rule evaluation", source.name, relation.name)
        return grouped.get(value, [])

    # ------------------------------------------------------------------
    # Includes
    # ------------------------------------------------------------------

    def _attach(
        self,
        conn: Connection,
        entity: EntityDefinition,
        records: list[dict[str, Any]],
        tree: dict[str, Any],
        user: UserContext | None,
    ) -> None:
        if not records or not tree:
            return
        for name, subtree in tree.items():
            relation = self.registry.find_relation(entity.name, name)
            if relation is None:
                raise unknown_fields([name])
            target = self.registry.entity(relation.target)
            scope = self._scope(user, target)

            values = [r.get(relation.source_key) for r in records if r.get(relation.source_key) is not None]
            grouped = self._related(conn, relation, target, values, scope) if scope is not None else {}

            children: list[dict[str, Any]] = []
            for record in records:
                rows = grouped.get(record.get(relation.source_key), [])
                children.extend(rows)
                if relation.type == "one_to_one":
                    record[name] = rows[0] if rows else None
                else:
                    record[name] = rows
            self._attach(conn, target, children, subtree, user)

    def _scope(self, user: UserContext | None, target: EntityDefinition) -> CompiledFilter | None:
        """Read filter for included rows; None when the caller may not read them."""
        if user is None:
            return MATCH_ALL
        try:
            scope = self.permissions.read_scope(user, target.name, ParamBuilder(prefix="rls"))
        except EngineError as e:
            if e.code is not ErrorCode.FORBIDDEN:
                raise
            return None
        return scope.filter or MATCH_ALL

    def _related(
        self,
        conn: Connection,
        relation: RelationDefinition,
        target: EntityDefinition,
        values: list[Any],
        extra: CompiledFilter,
    ) -> dict[Any, list[dict[str, Any]]]:
        """Rows of ``target`` related to each source value, grouped by that value."""
        grouped: dict[Any, list[dict[str, Any]]] = {}
        if not values:
            return grouped
        order = [(target.pk, False)]

        if not relation.is_many_to_many:
            where = all_of([
                compile_conditions({relation.target_key: {"in": list(values)}}, params=ParamBuilder(prefix="rel")),
                extra,
            ])
            for row in self.store.select(conn, target, where=where, order_by=order):
                grouped.setdefault(row.get(relation.target_key), []).append(row)
            return grouped

        links: dict[Any, list[Any]] = {}
        for value in values:
            links[value] = self.store.linked_keys(conn, relation, value)
        keys = sorted({k for ks in links.values() for k in ks}, key=str)
        if not keys:
            return grouped
        where = all_of([
            compile_conditions({target.pk: {"in": keys}}, params=ParamBuilder(prefix="rel")),
            extra,
        ])
        rows = {row[target.pk]: row for row in self.store.select(conn, target, where=where, order_by=order)}
        for value, linked in links.items():
            grouped[value] = [rows[k] for k in linked if k in rows]
        return grouped
