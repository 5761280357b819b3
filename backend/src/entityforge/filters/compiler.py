"""Compile declarative conditions into SQL fragments and record predicates.

The same conditions produce two artifacts that must agree:

- ``sql`` / ``params``: a parameterized WHERE fragment using SQLAlchemy
  named binds, injected into list/get queries (permission reads, filters).
- ``matches(record)``: a pure in-memory predicate, used where a single
  stored record is already at hand (permission writes, related filters).

Accepted condition shapes::

    [{"field": "status", "operator": "in", "value": ["draft", "sent"]}]
    {"status": {"in": ["draft", "sent"]}, "total": {"gte": 100}}
    {"status": "draft"}                   # eq shorthand
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from entityforge.core.types import encode_value, get_field_type
from entityforge.errors import invalid_payload, unknown_fields
from entityforge.metadata.types import EntityDefinition

OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in", "like")

_SQL_OPERATORS = {"eq": "=", "neq": "<>", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Predicate = Callable[[dict[str, Any]], bool]


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any


@dataclass
class ParamBuilder:
    """Hands out unique bind-parameter names across one statement."""

    prefix: str = "f"
    params: dict[str, Any] = field(default_factory=dict)

    def add(self, value: Any) -> str:
        name = f"{self.prefix}{len(self.params)}"
        self.params[name] = value
        return f":{name}"


@dataclass
class CompiledFilter:
    sql: str
    params: dict[str, Any]
    predicate: Predicate

    def matches(self, record: dict[str, Any]) -> bool:
        return self.predicate(record)


MATCH_ALL = CompiledFilter("1 = 1", {}, lambda record: True)


def quote_identifier(name: str) -> str:
    """Quote a table/column name after checking it is a plain identifier."""
    if not _IDENTIFIER.match(name):
        raise invalid_payload(f"invalid identifier: {name!r}")
    return f'"{name}"'


def normalize_conditions(raw: Any) -> list[Condition]:
    """Turn any accepted condition shape into a list of Conditions."""
    if not raw:
        return []

    conditions: list[Condition] = []
    if isinstance(raw, dict):
        for name, spec in raw.items():
            if isinstance(spec, dict):
                for op, value in spec.items():
                    conditions.append(Condition(name, op, value))
            elif isinstance(spec, (list, tuple)):
                conditions.append(Condition(name, "in", list(spec)))
            else:
                conditions.append(Condition(name, "eq", spec))
    elif isinstance(raw, (list, tuple)):
        for item in raw:
            if isinstance(item, Condition):
                conditions.append(item)
            elif isinstance(item, dict) and "field" in item:
                conditions.append(
                    Condition(item["field"], item.get("operator", item.get("op", "eq")), item.get("value"))
                )
            else:
                raise invalid_payload(f"malformed condition: {item!r}")
    else:
        raise invalid_payload(f"malformed conditions: {raw!r}")

    for condition in conditions:
        if condition.operator not in OPERATORS:
            raise invalid_payload(
                f"unknown filter operator '{condition.operator}' on field '{condition.field}'"
            )
        if condition.operator in ("in", "not_in") and not isinstance(condition.value, (list, tuple)):
            raise invalid_payload(f"operator '{condition.operator}' requires a list value")
    return conditions


def compile_conditions(
    raw: Any,
    entity: EntityDefinition | None = None,
    params: ParamBuilder | None = None,
    alias: str | None = None,
) -> CompiledFilter:
    """Compile conditions; top-level conditions are ANDed.

    Args:
        raw: Conditions in any accepted shape
        entity: When given, field names are checked and values encoded
            with the field's storage codec
        params: Shared ParamBuilder when the fragment joins a larger statement
        alias: Optional table alias to qualify column references

    Raises:
        EngineError: INVALID_PAYLOAD for bad operators/shapes or an operator
            the field type does not support,
            UNKNOWN_FIELD for fields missing from ``entity``
    """
    conditions = normalize_conditions(raw)
    if not conditions:
        return MATCH_ALL

    if entity is not None:
        missing = [c.field for c in conditions if not entity.has_field(c.field)]
        if missing:
            raise unknown_fields(missing)
        for c in conditions:
            if c.operator in ("eq", "neq") and c.value is None:
                continue
            field_type = get_field_type(entity.get_field(c.field).type)
            if c.operator not in field_type.query_operators:
                raise invalid_payload(
                    f"operator '{c.operator}' is not supported on {field_type.name} field '{c.field}'"
                )

    builder = params or ParamBuilder()
    start = len(builder.params)
    fragments = [_sql(c, entity, builder, alias) for c in conditions]
    predicates = [_memory(c) for c in conditions]

    return CompiledFilter(
        sql=" AND ".join(fragments),
        params={k: v for i, (k, v) in enumerate(builder.params.items()) if i >= start},
        predicate=lambda record: all(p(record) for p in predicates),
    )


def any_of(filters: list[CompiledFilter]) -> CompiledFilter:
    """OR several compiled filters (e.g. alternative permission policies).

    The filters must have been compiled against one shared ParamBuilder.
    """
    if not filters:
        return CompiledFilter("1 = 0", {}, lambda record: False)
    if len(filters) == 1:
        return filters[0]

    params: dict[str, Any] = {}
    for f in filters:
        params.update(f.params)
    predicates = [f.predicate for f in filters]
    return CompiledFilter(
        sql=" OR ".join(f"({f.sql})" for f in filters),
        params=params,
        predicate=lambda record: any(p(record) for p in predicates),
    )


def all_of(filters: list[CompiledFilter]) -> CompiledFilter:
    """AND several compiled filters."""
    filters = [f for f in filters if f is not MATCH_ALL]
    if not filters:
        return MATCH_ALL
    if len(filters) == 1:
        return filters[0]

    params: dict[str, Any] = {}
    for f in filters:
        params.update(f.params)
    predicates = [f.predicate for f in filters]
    return CompiledFilter(
        sql=" AND ".join(f"({f.sql})" for f in filters),
        params=params,
        predicate=lambda record: all(p(record) for p in predicates),
    )


# -----------------------------------------------------------------------------
# SQL rendering
# -----------------------------------------------------------------------------


def _sql(
    condition: Condition,
    entity: EntityDefinition | None,
    builder: ParamBuilder,
    alias: str | None,
) -> str:
    column = quote_identifier(condition.field)
    if alias:
        column = f"{quote_identifier(alias)}.{column}"

    def bind(value: Any) -> str:
        if entity is not None:
            field_def = entity.get_field(condition.field)
            if field_def is not None:
                value = encode_value(field_def.type, value)
        elif isinstance(value, Decimal):
            value = float(value)
        return builder.add(value)

    op, value = condition.operator, condition.value

    if op in ("eq", "neq") and value is None:
        return f"{column} IS NULL" if op == "eq" else f"{column} IS NOT NULL"
    if op in _SQL_OPERATORS:
        return f"{column} {_SQL_OPERATORS[op]} {bind(value)}"
    if op == "like":
        return f"LOWER({column}) LIKE LOWER({bind(value)})"
    if op == "in":
        if not value:
            return "1 = 0"
        return f"{column} IN ({', '.join(bind(v) for v in value)})"
    # not_in
    if not value:
        return "1 = 1"
    return f"{column} NOT IN ({', '.join(bind(v) for v in value)})"


# -----------------------------------------------------------------------------
# In-memory predicates
# -----------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _same(actual: Any, expected: Any) -> bool:
    if _is_number(actual) and _is_number(expected):
        return float(actual) == float(expected)
    return actual == expected


def _order(actual: Any, expected: Any) -> int:
    if _is_number(actual) and _is_number(expected):
        a, b = float(actual), float(expected)
    else:
        a, b = str(actual), str(expected)
    return (a > b) - (a < b)


def like_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a LIKE pattern (``%`` and ``_`` wildcards) to a case-insensitive regex."""
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.DOTALL | re.IGNORECASE)


def _memory(condition: Condition) -> Predicate:
    name, op, expected = condition.field, condition.operator, condition.value

    if op in ("eq", "neq") and expected is None:
        if op == "eq":
            return lambda record: record.get(name) is None
        return lambda record: record.get(name) is not None

    if op == "not_in" and not expected:
        return lambda record: True

    if op == "like":
        regex = like_to_regex(str(expected))

        def like(record: dict[str, Any]) -> bool:
            actual = record.get(name)
            return actual is not None and regex.fullmatch(str(actual)) is not None

        return like

    def predicate(record: dict[str, Any]) -> bool:
        actual = record.get(name)
        # SQL comparisons against NULL are never true
        if actual is None:
            return False
        if op == "eq":
            return _same(actual, expected)
        if op == "neq":
            return not _same(actual, expected)
        if op == "in":
            return any(_same(actual, v) for v in expected)
        if op == "not_in":
            return not any(_same(actual, v) for v in expected)
        cmp = _order(actual, expected)
        if op == "gt":
            return cmp > 0
        if op == "gte":
            return cmp >= 0
        if op == "lt":
            return cmp < 0
        return cmp <= 0

    return predicate
