"""Rule engine."""

from entityforge.rules.engine import (
    PHASES,
    RelatedLoader,
    RuleEngine,
    RuleOutcome,
    check_field_rule,
    ordered,
)

__all__ = [
    "PHASES",
    "RelatedLoader",
    "RuleEngine",
    "RuleOutcome",
    "check_field_rule",
    "ordered",
]
