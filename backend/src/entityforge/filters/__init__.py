"""Condition/filter compiler."""

from entityforge.filters.compiler import (
    MATCH_ALL,
    OPERATORS,
    CompiledFilter,
    Condition,
    ParamBuilder,
    all_of,
    any_of,
    compile_conditions,
    like_to_regex,
    normalize_conditions,
    quote_identifier,
)

__all__ = [
    "MATCH_ALL",
    "OPERATORS",
    "CompiledFilter",
    "Condition",
    "ParamBuilder",
    "all_of",
    "any_of",
    "compile_conditions",
    "like_to_regex",
    "normalize_conditions",
    "quote_identifier",
]
