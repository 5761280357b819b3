"""Caller identity."""

from dataclasses import dataclass, field
from typing import Any

ADMIN_ROLE = "admin"


@dataclass
class UserContext:
    """Identity of the caller, supplied by the upstream auth layer.

    Attributes:
        user_id: The authenticated user's ID
        roles: Role names held by the user (compared case-insensitively)
    """

    user_id: str | None = None
    roles: list[str] = field(default_factory=list)

    @property
    def role_set(self) -> set[str]:
        return {r.lower() for r in self.roles}

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.role_set

    def has_any_role(self, roles: list[str]) -> bool:
        return bool(self.role_set & {r.lower() for r in roles})

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.user_id, "roles": list(self.roles)}
