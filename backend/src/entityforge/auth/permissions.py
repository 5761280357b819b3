"""Whitelist permission evaluation for entity access.

Access exists only where an explicit policy grants it. The ``admin`` role
bypasses every check. For a non-admin caller:

- create: allowed if any policy for (entity, create) shares a role.
- update/delete: allowed if a matching policy has no conditions, or its
  conditions hold for the record as currently stored.
- read: the conditions of every matching policy are ORed into a row
  filter; rows outside it are invisible rather than rejected.

No matching policy at all is an unconditional deny.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from entityforge.auth.types import UserContext
from entityforge.errors import forbidden
from entityforge.filters import CompiledFilter, ParamBuilder, any_of, compile_conditions
from entityforge.metadata.registry import Registry
from entityforge.metadata.types import PermissionPolicy

logger = logging.getLogger(__name__)


class Decision(Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass
class ReadScope:
    """Row-level visibility for reads.

    Attributes:
        filter: None when every row is visible, otherwise the ORed
            predicate of the caller's matching read policies
    """

    filter: CompiledFilter | None = None

    @property
    def unrestricted(self) -> bool:
        return self.filter is None

    def allows(self, record: dict[str, Any]) -> bool:
        return self.filter is None or self.filter.matches(record)


class PermissionEvaluator:
    """Evaluates permission policies from one registry snapshot."""

    def __init__(self, registry: Registry):
        self.registry = registry

    def _matching(self, user: UserContext | None, entity: str, action: str) -> list[PermissionPolicy]:
        if user is None:
            return []
        return [
            p for p in self.registry.policies_for(entity, action)
            if user.has_any_role(p.roles)
        ]

    def authorize(
        self,
        user: UserContext | None,
        entity: str,
        action: str,
        record: dict[str, Any] | None = None,
    ) -> Decision:
        """Decide whether ``user`` may perform ``action`` on ``entity``.

        Args:
            user: The caller (None is treated as having no roles)
            entity: Entity name
            action: "read", "create", "update" or "delete"
            record: The currently stored record for update/delete;
                when None only role membership is checked
        """
        if user is not None and user.is_admin:
            return Decision.ALLOW

        policies = self._matching(user, entity, action)
        if not policies:
            return Decision.DENY

        if action == "create" or record is None:
            return Decision.ALLOW

        entity_def = self.registry.entity(entity)
        for policy in policies:
            if not policy.conditions:
                return Decision.ALLOW
            if compile_conditions(policy.conditions, entity_def).matches(record):
                return Decision.ALLOW
        return Decision.DENY

    def require(
        self,
        user: UserContext | None,
        entity: str,
        action: str,
        record: dict[str, Any] | None = None,
    ) -> None:
        """Raise FORBIDDEN unless ``authorize`` allows."""
        if self.authorize(user, entity, action, record) is Decision.DENY:
            logger.debug(
                "Denied %s on %s for user %s",
                action,
                entity,
                user.user_id if user else None,
            )
            raise forbidden(f"not permitted to {action} {entity}")

    def read_scope(
        self,
        user: UserContext | None,
        entity: str,
        params: ParamBuilder | None = None,
    ) -> ReadScope:
        """Return the row filter for reads of ``entity``.

        Raises:
            EngineError: FORBIDDEN when no read policy matches the caller
        """
        if user is not None and user.is_admin:
            return ReadScope()

        policies = self._matching(user, entity, "read")
        if not policies:
            raise forbidden(f"not permitted to read {entity}")

        if any(not p.conditions for p in policies):
            return ReadScope()

        entity_def = self.registry.entity(entity)
        builder = params or ParamBuilder(prefix="rls")
        return ReadScope(
            any_of([compile_conditions(p.conditions, entity_def, builder) for p in policies])
        )
