"""Role and permission table.

Roles map to a fixed set of permissions. An authority is either a permission
identifier (``manager:read``) or a role marker (``ROLE_MANAGER``); callers
that guard resources check a principal's authorities with
``has_any_authority`` and never consult roles directly.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Protocol, Set


class Permission(str, Enum):
    ADMIN_READ = "admin:read"
    ADMIN_UPDATE = "admin:update"
    ADMIN_DELETE = "admin:delete"
    ADMIN_CREATE = "admin:create"
    MANAGER_READ = "manager:read"
    MANAGER_UPDATE = "manager:update"
    MANAGER_DELETE = "manager:delete"
    MANAGER_CREATE = "manager:create"


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"


_MANAGER_PERMISSIONS = frozenset(
    {
        Permission.MANAGER_READ,
        Permission.MANAGER_UPDATE,
        Permission.MANAGER_DELETE,
        Permission.MANAGER_CREATE,
    }
)

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.USER: frozenset(),
    Role.MANAGER: _MANAGER_PERMISSIONS,
    Role.ADMIN: _MANAGER_PERMISSIONS
    | {
        Permission.ADMIN_READ,
        Permission.ADMIN_UPDATE,
        Permission.ADMIN_DELETE,
        Permission.ADMIN_CREATE,
    },
}


def parse_role(value: str | Role) -> Role:
    """Resolve a role name case-insensitively; raises ``ValueError`` if unknown."""
    if isinstance(value, Role):
        return value
    return Role(str(value).strip().upper())


def authorities(role: str | Role) -> Set[str]:
    resolved = parse_role(role)
    granted = {permission.value for permission in ROLE_PERMISSIONS[resolved]}
    granted.add(f"ROLE_{resolved.value}")
    return granted


def authorities_for(roles: Iterable[str | Role]) -> Set[str]:
    granted: Set[str] = set()
    for role in roles:
        granted |= authorities(role)
    return granted


class _HasAuthorities(Protocol):
    authorities: FrozenSet[str] | Set[str]


def has_any_authority(principal: _HasAuthorities | None, *required: str) -> bool:
    """True when ``principal`` holds at least one of ``required``.

    With no ``required`` authorities any authenticated principal passes.
    """
    if principal is None:
        return False
    if not required:
        return True
    held = set(principal.authorities)
    return any(
        (item.value if isinstance(item, Enum) else item) in held for item in required
    )


__all__ = [
    "Permission",
    "Role",
    "ROLE_PERMISSIONS",
    "parse_role",
    "authorities",
    "authorities_for",
    "has_any_authority",
]
