"""
Acting principal passed explicitly into every engine call.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"


# Roles that satisfy a check for the key role.
_ROLE_GRANTS: dict[Role, frozenset[Role]] = {
    Role.ADMIN: frozenset({Role.ADMIN}),
    Role.MODERATOR: frozenset({Role.ADMIN, Role.MODERATOR}),
    Role.MEMBER: frozenset({Role.ADMIN, Role.MODERATOR, Role.MEMBER}),
}


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role

    def satisfies(self, required: Role) -> bool:
        return self.role in _ROLE_GRANTS[required]

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "role": self.role.value}


def parse_role(value: str | None) -> Role | None:
    if not value:
        return None
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None


SYSTEM_PRINCIPAL = Principal(id="system", role=Role.ADMIN)
