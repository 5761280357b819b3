"""Built-in functions for the expression language.

Categories:
- String: len, isEmpty, concat, trim, upper, lower, matches, startsWith, endsWith
- Date: now, today, daysBetween
- Math: abs, round, min, max
- Collection: size, contains, sum, pluck
- Logic: coalesce, if
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from entityforge.expressions.functions import (
    FunctionCategory,
    FunctionDefinition,
    FunctionRegistry,
)


def register_all_builtins() -> None:
    """Register all built-in functions with the FunctionRegistry."""
    for func_def in _BUILTINS:
        FunctionRegistry.register(func_def)


def to_date(value: Any) -> date | None:
    """Coerce a date, datetime or ISO string to a date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return date.fromisoformat(value)
    raise TypeError(f"expected a date, got {type(value).__name__}")


# -----------------------------------------------------------------------------
# String Functions
# -----------------------------------------------------------------------------


def _len(value: Any) -> int:
    """Return length of string or array, 0 for None."""
    if isinstance(value, (str, list, tuple, dict)):
        return len(value)
    return 0


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _concat(*args: Any) -> str:
    return "".join(str(a) for a in args if a is not None)


def _trim(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _upper(value: Any) -> str:
    return "" if value is None else str(value).upper()


def _lower(value: Any) -> str:
    return "" if value is None else str(value).lower()


def _matches(value: Any, pattern: str) -> bool:
    if value is None:
        return False
    return re.search(pattern, str(value)) is not None


def _starts_with(value: Any, prefix: str) -> bool:
    return value is not None and str(value).startswith(prefix)


def _ends_with(value: Any, suffix: str) -> bool:
    return value is not None and str(value).endswith(suffix)


# -----------------------------------------------------------------------------
# Date Functions
# -----------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _days_between(start: Any, end: Any) -> int | None:
    start_date, end_date = to_date(start), to_date(end)
    if start_date is None or end_date is None:
        return None
    return (end_date - start_date).days


# -----------------------------------------------------------------------------
# Math Functions
# -----------------------------------------------------------------------------


def _abs(value: Any) -> Any:
    return None if value is None else abs(value)


def _round(value: Any, digits: int = 0) -> Any:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return round(value, digits)
    result = round(float(value), int(digits))
    return int(result) if digits == 0 else result


def _min(*values: Any) -> Any:
    present = [v for v in _flatten(values) if v is not None]
    return min(present) if present else None


def _max(*values: Any) -> Any:
    present = [v for v in _flatten(values) if v is not None]
    return max(present) if present else None


def _flatten(values: tuple[Any, ...]) -> list[Any]:
    if len(values) == 1 and isinstance(values[0], (list, tuple)):
        return list(values[0])
    return list(values)


# -----------------------------------------------------------------------------
# Collection Functions
# -----------------------------------------------------------------------------


def _size(value: Any) -> int:
    if isinstance(value, (list, tuple, dict, str)):
        return len(value)
    return 0


def _contains(collection: Any, item: Any) -> bool:
    if collection is None:
        return False
    if isinstance(collection, str):
        return item is not None and str(item) in collection
    return item in collection


def _sum(values: Any, field: str | None = None) -> Any:
    """Sum an array of numbers, or of ``field`` across an array of records."""
    if values is None:
        return 0
    if field is not None:
        values = _pluck(values, field)
    return sum(v for v in values if v is not None)


def _pluck(values: Any, field: str) -> list[Any]:
    if values is None:
        return []
    return [v.get(field) if isinstance(v, dict) else None for v in values]


# -----------------------------------------------------------------------------
# Logic Functions
# -----------------------------------------------------------------------------


def _coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _if(condition: Any, then_value: Any, else_value: Any = None) -> Any:
    return then_value if condition else else_value


_BUILTINS = [
    FunctionDefinition("len", "Length of a string or array", FunctionCategory.STRING, _len, 1, 1),
    FunctionDefinition("isEmpty", "True for null, blank string or empty array", FunctionCategory.STRING, _is_empty, 1, 1),
    FunctionDefinition("concat", "Concatenate arguments as strings", FunctionCategory.STRING, _concat, 0, None),
    FunctionDefinition("trim", "Strip surrounding whitespace", FunctionCategory.STRING, _trim, 1, 1),
    FunctionDefinition("upper", "Uppercase a string", FunctionCategory.STRING, _upper, 1, 1),
    FunctionDefinition("lower", "Lowercase a string", FunctionCategory.STRING, _lower, 1, 1),
    FunctionDefinition("matches", "Regex search", FunctionCategory.STRING, _matches, 2, 2),
    FunctionDefinition("startsWith", "Prefix test", FunctionCategory.STRING, _starts_with, 2, 2),
    FunctionDefinition("endsWith", "Suffix test", FunctionCategory.STRING, _ends_with, 2, 2),
    FunctionDefinition("now", "Current UTC datetime", FunctionCategory.DATE, _now, 0, 0),
    FunctionDefinition("today", "Current UTC date", FunctionCategory.DATE, _today, 0, 0),
    FunctionDefinition("daysBetween", "Days from start to end", FunctionCategory.DATE, _days_between, 2, 2),
    FunctionDefinition("abs", "Absolute value", FunctionCategory.MATH, _abs, 1, 1),
    FunctionDefinition("round", "Round to N digits", FunctionCategory.MATH, _round, 1, 2),
    FunctionDefinition("min", "Smallest non-null argument", FunctionCategory.MATH, _min, 1, None),
    FunctionDefinition("max", "Largest non-null argument", FunctionCategory.MATH, _max, 1, None),
    FunctionDefinition("size", "Number of elements", FunctionCategory.COLLECTION, _size, 1, 1),
    FunctionDefinition("contains", "Membership test", FunctionCategory.COLLECTION, _contains, 2, 2),
    FunctionDefinition("sum", "Sum of numbers or of a field across records", FunctionCategory.COLLECTION, _sum, 1, 2),
    FunctionDefinition("pluck", "Extract one field from each record", FunctionCategory.COLLECTION, _pluck, 2, 2),
    FunctionDefinition("coalesce", "First non-null argument", FunctionCategory.LOGIC, _coalesce, 1, None),
    FunctionDefinition("if", "Conditional value", FunctionCategory.LOGIC, _if, 2, 3),
]
