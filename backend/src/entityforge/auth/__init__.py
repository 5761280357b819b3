"""Caller identity and permission evaluation."""

from entityforge.auth.permissions import Decision, PermissionEvaluator, ReadScope
from entityforge.auth.types import ADMIN_ROLE, UserContext

__all__ = [
    "ADMIN_ROLE",
    "Decision",
    "PermissionEvaluator",
    "ReadScope",
    "UserContext",
]
