"""Metadata definitions: entities, relations, rules, state machines,
permission policies and webhooks.

Each definition is a dataclass built from its YAML/JSON dict form with
``from_dict``. Definitions are never mutated after the registry that
holds them has been published.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any

from entityforge.core.types import FIELD_TYPES


class MetadataError(ValueError):
    """Invalid or inconsistent metadata."""


RELATION_TYPES = ("one_to_one", "one_to_many", "many_to_many")
WRITE_MODES = ("diff", "replace", "append")
ON_DELETE_POLICIES = ("cascade", "set_null", "restrict", "detach")
RULE_TYPES = ("field", "expression", "computed")
RULE_HOOKS = ("before_write", "before_delete")
FIELD_OPERATORS = ("required", "min", "max", "min_length", "max_length", "pattern", "in", "not_in")
PERMISSION_ACTIONS = ("read", "create", "update", "delete")
WEBHOOK_HOOKS = ("before_write", "after_write", "before_delete", "after_delete")
ACTION_TYPES = ("set_field", "webhook", "create_record", "send_event")
PRIMARY_KEY_TYPES = ("uuid", "int", "bigint", "string")

SOFT_DELETE_COLUMN = "deleted_at"


def _require(data: dict[str, Any], key: str, kind: str) -> Any:
    if key not in data or data[key] in (None, ""):
        raise MetadataError(f"{kind} is missing required key '{key}'")
    return data[key]


def _choice(value: str, allowed: tuple[str, ...], what: str) -> str:
    if value not in allowed:
        raise MetadataError(f"invalid {what} '{value}', expected one of: {', '.join(allowed)}")
    return value


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


@dataclass
class FieldDefinition:
    name: str
    type: str
    required: bool = False
    nullable: bool = True
    unique: bool = False
    default: Any = None
    enum: list[Any] | None = None
    precision: int | None = None
    auto: str | None = None  # "create" | "update"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldDefinition":
        name = _require(data, "name", "field")
        type_name = data.get("type", "string")
        if type_name not in FIELD_TYPES:
            raise MetadataError(f"field '{name}' has unknown type '{type_name}'")
        auto = data.get("auto")
        if auto is not None:
            _choice(auto, ("create", "update"), f"auto value for field '{name}'")
        return cls(
            name=name,
            type=type_name,
            required=bool(data.get("required", False)),
            nullable=bool(data.get("nullable", True)),
            unique=bool(data.get("unique", False)),
            default=data.get("default"),
            enum=list(data["enum"]) if data.get("enum") else None,
            precision=data.get("precision"),
            auto=auto,
        )


@dataclass
class PrimaryKey:
    field: str = "id"
    type: str = "uuid"
    generated: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PrimaryKey":
        if not data:
            return cls()
        return cls(
            field=data.get("field", "id"),
            type=_choice(data.get("type", "uuid"), PRIMARY_KEY_TYPES, "primary key type"),
            generated=bool(data.get("generated", True)),
        )


@dataclass
class EntityDefinition:
    """A declared record type backed by one table."""

    name: str
    table: str
    primary_key: PrimaryKey
    fields: list[FieldDefinition]
    soft_delete: bool = False

    def __post_init__(self) -> None:
        self._by_name = {f.name: f for f in self.fields}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityDefinition":
        name = _require(data, "name", "entity")
        pk = PrimaryKey.from_dict(data.get("primary_key"))
        fields = [FieldDefinition.from_dict(f) for f in data.get("fields", [])]

        names = [f.name for f in fields]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise MetadataError(f"entity '{name}' declares duplicate fields: {', '.join(duplicates)}")

        # The key column is always addressable as a field
        if pk.field not in names:
            fields.insert(0, FieldDefinition(name=pk.field, type=pk.type, nullable=False))

        soft_delete = bool(data.get("soft_delete", False))
        if soft_delete and SOFT_DELETE_COLUMN not in names:
            fields.append(FieldDefinition(name=SOFT_DELETE_COLUMN, type="timestamp"))

        return cls(
            name=name,
            table=data.get("table", name),
            primary_key=pk,
            fields=fields,
            soft_delete=soft_delete,
        )

    @property
    def pk(self) -> str:
        return self.primary_key.field

    def get_field(self, name: str) -> FieldDefinition | None:
        return self._by_name.get(name)

    def has_field(self, name: str) -> bool:
        return name in self._by_name

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def writable_fields(self) -> list[FieldDefinition]:
        """Fields a client may supply (auto timestamps and soft-delete marker excluded)."""
        return [
            f
            for f in self.fields
            if f.auto is None and not (self.soft_delete and f.name == SOFT_DELETE_COLUMN)
        ]


@dataclass
class RelationDefinition:
    name: str
    type: str
    source: str
    target: str
    source_key: str = "id"
    target_key: str | None = None
    join_table: str | None = None
    source_join_key: str | None = None
    target_join_key: str | None = None
    ownership: str = "source"
    on_delete: str = "restrict"
    write_mode: str = "diff"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelationDefinition":
        name = _require(data, "name", "relation")
        rel_type = _choice(_require(data, "type", "relation"), RELATION_TYPES, "relation type")
        relation = cls(
            name=name,
            type=rel_type,
            source=_require(data, "source", f"relation '{name}'"),
            target=_require(data, "target", f"relation '{name}'"),
            source_key=data.get("source_key", "id"),
            target_key=data.get("target_key"),
            join_table=data.get("join_table"),
            source_join_key=data.get("source_join_key"),
            target_join_key=data.get("target_join_key"),
            ownership=_choice(data.get("ownership", "source"), ("source", "target", "none"), "ownership"),
            on_delete=_choice(data.get("on_delete", "restrict"), ON_DELETE_POLICIES, "on_delete policy"),
            write_mode=_choice(data.get("write_mode", "diff"), WRITE_MODES, "write mode"),
        )
        if relation.is_many_to_many:
            for key in ("join_table", "source_join_key", "target_join_key"):
                if not getattr(relation, key):
                    raise MetadataError(f"many_to_many relation '{name}' requires '{key}'")
        elif not relation.target_key:
            raise MetadataError(f"relation '{name}' requires 'target_key'")
        return relation

    @property
    def is_many_to_many(self) -> bool:
        return self.type == "many_to_many"


@dataclass
class RelatedLoad:
    relation: str
    filter: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | str) -> "RelatedLoad":
        if isinstance(data, str):
            return cls(relation=data)
        return cls(relation=_require(data, "relation", "related_load"), filter=data.get("filter"))


@dataclass
class RuleDefinition:
    field: str | None = None
    operator: str | None = None
    value: Any = None
    expression: str | None = None
    message: str | None = None
    stop_on_fail: bool = False
    related_load: list[RelatedLoad] = dataclasses.field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuleDefinition":
        return cls(
            field=data.get("field"),
            operator=data.get("operator"),
            value=data.get("value"),
            expression=data.get("expression"),
            message=data.get("message"),
            stop_on_fail=bool(data.get("stop_on_fail", False)),
            related_load=[RelatedLoad.from_dict(r) for r in _as_list(data.get("related_load"))],
        )


@dataclass
class Rule:
    id: str
    entity: str
    hook: str
    type: str
    definition: RuleDefinition
    priority: int = 0
    active: bool = True
    order: int = 0  # declaration index, breaks priority ties

    @classmethod
    def from_dict(cls, data: dict[str, Any], order: int = 0) -> "Rule":
        rule_id = str(_require(data, "id", "rule"))
        rule_type = _choice(_require(data, "type", f"rule '{rule_id}'"), RULE_TYPES, "rule type")
        definition = RuleDefinition.from_dict(data.get("definition") or {})

        if rule_type == "field":
            if not definition.field:
                raise MetadataError(f"field rule '{rule_id}' requires definition.field")
            _choice(definition.operator or "", FIELD_OPERATORS, f"operator for rule '{rule_id}'")
        else:
            if not definition.expression:
                raise MetadataError(f"{rule_type} rule '{rule_id}' requires definition.expression")
            if rule_type == "computed" and not definition.field:
                raise MetadataError(f"computed rule '{rule_id}' requires definition.field")

        return cls(
            id=rule_id,
            entity=_require(data, "entity", f"rule '{rule_id}'"),
            hook=_choice(data.get("hook", "before_write"), RULE_HOOKS, "rule hook"),
            type=rule_type,
            definition=definition,
            priority=int(data.get("priority", 0)),
            active=bool(data.get("active", True)),
            order=order,
        )


@dataclass
class TransitionAction:
    type: str
    field: str | None = None
    value: Any = None
    config: dict[str, Any] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransitionAction":
        action_type = _choice(_require(data, "type", "transition action"), ACTION_TYPES, "action type")
        config = {k: v for k, v in data.items() if k not in ("type", "field", "value")}
        if action_type == "set_field" and not data.get("field"):
            raise MetadataError("set_field action requires 'field'")
        return cls(type=action_type, field=data.get("field"), value=data.get("value"), config=config)


@dataclass
class Transition:
    from_states: list[str]
    to: str
    roles: list[str] = field(default_factory=list)
    guard: str | None = None
    actions: list[TransitionAction] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transition":
        if "from" not in data:
            raise MetadataError("transition is missing required key 'from'")
        return cls(
            from_states=[str(s) for s in _as_list(data["from"])],
            to=str(_require(data, "to", "transition")),
            roles=[str(r) for r in _as_list(data.get("roles"))],
            guard=data.get("guard") or None,
            actions=[TransitionAction.from_dict(a) for a in data.get("actions") or []],
        )

    def leaves(self, state: Any) -> bool:
        return state is not None and str(state) in self.from_states


@dataclass
class StateMachineDefinition:
    id: str
    entity: str
    field: str
    initial: str
    transitions: list[Transition]
    active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateMachineDefinition":
        entity = _require(data, "entity", "state machine")
        state_field = _require(data, "field", "state machine")
        return cls(
            id=str(data.get("id") or f"{entity}.{state_field}"),
            entity=entity,
            field=state_field,
            initial=str(_require(data, "initial", "state machine")),
            transitions=[Transition.from_dict(t) for t in data.get("transitions") or []],
            active=bool(data.get("active", True)),
        )


@dataclass
class PermissionPolicy:
    entity: str
    action: str
    roles: list[str]
    conditions: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PermissionPolicy":
        return cls(
            entity=_require(data, "entity", "permission policy"),
            action=_choice(_require(data, "action", "permission policy"), PERMISSION_ACTIONS, "permission action"),
            roles=[str(r) for r in _as_list(data.get("roles"))],
            conditions=data.get("conditions") or None,
        )


@dataclass
class WebhookDefinition:
    id: str
    entity: str
    hook: str
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    condition: str | None = None
    active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebhookDefinition":
        hook_id = str(_require(data, "id", "webhook"))
        return cls(
            id=hook_id,
            entity=_require(data, "entity", f"webhook '{hook_id}'"),
            hook=_choice(_require(data, "hook", f"webhook '{hook_id}'"), WEBHOOK_HOOKS, "webhook hook"),
            url=_require(data, "url", f"webhook '{hook_id}'"),
            method=str(data.get("method", "POST")).upper(),
            headers=dict(data.get("headers") or {}),
            condition=data.get("condition") or None,
            active=bool(data.get("active", True)),
        )
