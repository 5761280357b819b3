"""Field type registry with value checks and storage codecs."""

import json
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_decimal(value: Any) -> bool:
    if _is_number(value):
        return True
    if isinstance(value, str):
        try:
            Decimal(value)
        except InvalidOperation:
            return False
        return True
    return False


def _is_uuid(value: Any) -> bool:
    if isinstance(value, uuid.UUID):
        return True
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _is_timestamp(value: Any) -> bool:
    if isinstance(value, datetime):
        return True
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def _is_date(value: Any) -> bool:
    if isinstance(value, date):
        return True
    if not isinstance(value, str):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _is_json(value: Any) -> bool:
    return isinstance(value, (dict, list, str, int, float, bool))


def _identity(value: Any) -> Any:
    return value


def _encode_decimal(value: Any) -> Any:
    return float(value)


def _encode_uuid(value: Any) -> Any:
    return str(value)


def _encode_timestamp(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _encode_date(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    return value


def _encode_json(value: Any) -> Any:
    return json.dumps(value)


def _decode_bool(value: Any) -> Any:
    if isinstance(value, int):
        return bool(value)
    return value


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _decode_decimal(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


def _decode_temporal(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


@dataclass
class FieldType:
    name: str
    check: Callable[[Any], bool]
    encode: Callable[[Any], Any] = _identity
    decode: Callable[[Any], Any] = _identity
    query_operators: tuple[str, ...] = ("eq", "neq", "in", "not_in")


_ORDERED = ("eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in")
_TEXT = ("eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in", "like")

# Built-in field types
FIELD_TYPES: dict[str, FieldType] = {
    "string": FieldType("string", lambda v: isinstance(v, str), query_operators=_TEXT),
    "text": FieldType("text", lambda v: isinstance(v, str), query_operators=_TEXT),
    "int": FieldType("int", _is_int, query_operators=_ORDERED),
    "bigint": FieldType("bigint", _is_int, query_operators=_ORDERED),
    "float": FieldType("float", _is_number, query_operators=_ORDERED),
    "decimal": FieldType(
        "decimal",
        _is_decimal,
        encode=_encode_decimal,
        decode=_decode_decimal,
        query_operators=_ORDERED,
    ),
    "boolean": FieldType("boolean", lambda v: isinstance(v, bool), decode=_decode_bool),
    "uuid": FieldType("uuid", _is_uuid, encode=_encode_uuid, decode=_encode_uuid),
    "timestamp": FieldType(
        "timestamp",
        _is_timestamp,
        encode=_encode_timestamp,
        decode=_decode_temporal,
        query_operators=_ORDERED,
    ),
    "date": FieldType(
        "date",
        _is_date,
        encode=_encode_date,
        decode=_decode_temporal,
        query_operators=_ORDERED,
    ),
    "json": FieldType("json", _is_json, encode=_encode_json, decode=_decode_json, query_operators=()),
    "file": FieldType("file", _is_json, encode=_encode_json, decode=_decode_json, query_operators=()),
}


def get_field_type(type_name: str) -> FieldType:
    """Return the FieldType for a type name.

    Raises:
        ValueError: If the type is not registered
    """
    if type_name not in FIELD_TYPES:
        raise ValueError(f"Unknown field type: {type_name}")
    return FIELD_TYPES[type_name]


def is_valid_value(type_name: str, value: Any) -> bool:
    """Check that a non-null value has the shape its field type expects."""
    return get_field_type(type_name).check(value)


def encode_value(type_name: str, value: Any) -> Any:
    """Convert a Python value into a bind parameter for the store."""
    if value is None:
        return None
    return get_field_type(type_name).encode(value)


def decode_value(type_name: str, value: Any) -> Any:
    """Convert a raw column value back into its record representation."""
    if value is None:
        return None
    return get_field_type(type_name).decode(value)
