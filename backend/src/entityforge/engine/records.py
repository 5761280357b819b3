"""Record shape handling against an EntityDefinition.

Records are plain ordered dicts. Before any statement is issued their
values are checked here: type, nullability, enum membership and (for
inserts) required fields.
"""

import logging
from decimal import Decimal
from typing import Any, Iterable

from entityforge.core.types import is_valid_value
from entityforge.errors import ErrorDetail
from entityforge.metadata.types import SOFT_DELETE_COLUMN, EntityDefinition

logger = logging.getLogger(__name__)


def read_only_fields(entity: EntityDefinition, action: str) -> set[str]:
    """Fields a client may not write for ``action``."""
    names = {f.name for f in entity.fields if f.auto is not None}
    if entity.soft_delete:
        names.add(SOFT_DELETE_COLUMN)
    if action == "update" or entity.primary_key.generated:
        names.add(entity.pk)
    return names


def strip_read_only(entity: EntityDefinition, values: dict[str, Any], action: str) -> dict[str, Any]:
    """Drop read-only fields from client-supplied values."""
    blocked = read_only_fields(entity, action)
    dropped = [name for name in values if name in blocked]
    if dropped:
        logger.debug("Ignoring read-only fields on %s: %s", entity.name, ", ".join(dropped))
    return {k: v for k, v in values.items() if k not in blocked}


def apply_defaults(entity: EntityDefinition, values: dict[str, Any]) -> dict[str, Any]:
    """Fill declared defaults for fields absent from ``values``."""
    result = dict(values)
    for field_def in entity.fields:
        if field_def.default is not None and field_def.name not in result:
            result[field_def.name] = field_def.default
    return result


def apply_auto_timestamps(
    entity: EntityDefinition,
    values: dict[str, Any],
    action: str,
    now_iso: str,
) -> dict[str, Any]:
    """Set ``auto: create`` fields on insert and ``auto: update`` fields on every write."""
    result = dict(values)
    for field_def in entity.fields:
        if field_def.auto == "update" or (field_def.auto == "create" and action == "create"):
            result[field_def.name] = now_iso
    return result


def normalize_values(entity: EntityDefinition, values: dict[str, Any]) -> dict[str, Any]:
    """Round decimals to their declared precision."""
    result = dict(values)
    for name, value in values.items():
        field_def = entity.get_field(name)
        if (
            field_def is not None
            and field_def.type == "decimal"
            and field_def.precision is not None
            and value is not None
            and is_valid_value("decimal", value)
        ):
            result[name] = float(round(Decimal(str(value)), field_def.precision))
    return result


def validate_values(
    entity: EntityDefinition,
    values: dict[str, Any],
    partial: bool,
    path: str = "",
    exempt: Iterable[str] = (),
) -> list[ErrorDetail]:
    """Check values against field definitions.

    Args:
        entity: The definition to validate against
        values: Field values (relation keys already split off)
        partial: True for updates; required fields are then only
            checked when present
        path: Prefix for detail field names (e.g. "items[0].")
        exempt: Fields filled in later (generated keys, foreign keys)

    Returns:
        One ErrorDetail per problem; empty when the values are valid
    """
    errors: list[ErrorDetail] = []
    skip = set(exempt)

    for name, value in values.items():
        field_def = entity.get_field(name)
        if field_def is None:
            errors.append(ErrorDetail(f"{path}{name}", "unknown", f"unknown field: {name}"))
            continue
        if value is None:
            if (field_def.required or not field_def.nullable) and name not in skip:
                errors.append(ErrorDetail(f"{path}{name}", "required", f"field {name} is required"))
            continue
        if not is_valid_value(field_def.type, value):
            errors.append(
                ErrorDetail(f"{path}{name}", "type", f"field {name} must be of type {field_def.type}")
            )
            continue
        if field_def.enum and value not in field_def.enum:
            allowed = ", ".join(str(v) for v in field_def.enum)
            errors.append(
                ErrorDetail(f"{path}{name}", "enum", f"field {name} must be one of: {allowed}")
            )

    if not partial:
        for field_def in entity.fields:
            if (
                field_def.required
                and field_def.name not in skip
                and field_def.name not in values
            ):
                errors.append(
                    ErrorDetail(f"{path}{field_def.name}", "required", f"field {field_def.name} is required")
                )

    return errors
