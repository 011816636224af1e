"""Collaborator interfaces consumed by the engine, plus in-memory implementations.

The relational layer lives outside this package. Anything that answers the
two protocols below can back the permission cache and the evaluator.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable


class RoleLevel(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


# Highest privilege first; a user holding several roles gets the first match.
ROLE_PRECEDENCE: tuple[RoleLevel, ...] = (RoleLevel.ADMIN, RoleLevel.MANAGER, RoleLevel.USER)

ROLE_ALIASES: dict[str, RoleLevel] = {
    "admin": RoleLevel.ADMIN,
    "administrator": RoleLevel.ADMIN,
    "manager": RoleLevel.MANAGER,
    "supervisor": RoleLevel.MANAGER,
}


def resolve_role_level(role_names: Iterable[str]) -> RoleLevel:
    """Map role names to the single role level used for data scoping.

    Matching is case-insensitive. Unknown roles and users without roles
    resolve to ``RoleLevel.USER``.
    """
    levels = {ROLE_ALIASES.get(name.lower(), RoleLevel.USER) for name in role_names}
    for level in ROLE_PRECEDENCE:
        if level in levels:
            return level
    return RoleLevel.USER


@dataclass(frozen=True, slots=True)
class PermissionRow:
    """A permission as stored, with its parent linkage."""

    name: str
    category: str | None = None
    parent_name: str | None = None


@runtime_checkable
class PermissionStore(Protocol):
    async def fetch_user_permission_names(self, user_id: Any) -> list[str]:
        """Return every permission name reachable through the user's roles."""
        ...

    async def fetch_hierarchy(self) -> list[PermissionRow]:
        """Return all permissions with their parent linkage."""
        ...


@runtime_checkable
class RoleDirectory(Protocol):
    async def fetch_user_role_level(self, user_id: Any) -> RoleLevel:
        """Return the user's highest-privilege role level."""
        ...

    async def fetch_manager_team_ids(self, user_id: Any) -> list[Any]:
        """Return ids of the teams the user manages (empty when none)."""
        ...

    async def fetch_user_team_ids(self, user_id: Any) -> list[Any]:
        """Return ids of every team the user is a member of."""
        ...


class InMemoryPermissionStore:
    """Permission store backed by plain mappings.

    Args:
        role_permissions: Mapping of role name to the permission names it grants.
        user_roles: Mapping of user id to role names.
        permissions: Rows describing the permission hierarchy.
    """

    def __init__(
        self,
        role_permissions: Mapping[str, Iterable[str]],
        user_roles: Mapping[Any, Iterable[str]],
        permissions: Iterable[PermissionRow] = (),
    ) -> None:
        self.role_permissions = {role: list(names) for role, names in role_permissions.items()}
        self.user_roles = {user_id: list(roles) for user_id, roles in user_roles.items()}
        self.permissions = list(permissions)

    async def fetch_user_permission_names(self, user_id: Any) -> list[str]:
        names: set[str] = set()
        for role in self.user_roles.get(user_id, []):
            names.update(self.role_permissions.get(role, []))
        return sorted(names)

    async def fetch_hierarchy(self) -> list[PermissionRow]:
        return sorted(self.permissions, key=lambda row: row.name)


@dataclass
class TeamMembership:
    user_id: Any
    team_id: Any
    is_manager: bool = False


@dataclass
class InMemoryRoleDirectory:
    """Role/team directory backed by plain mappings."""

    user_roles: dict[Any, list[str]] = field(default_factory=dict)
    memberships: list[TeamMembership] = field(default_factory=list)

    async def fetch_user_role_level(self, user_id: Any) -> RoleLevel:
        return resolve_role_level(self.user_roles.get(user_id, []))

    async def fetch_manager_team_ids(self, user_id: Any) -> list[Any]:
        team_ids: list[Any] = []
        for membership in self.memberships:
            if membership.user_id == user_id and membership.is_manager and membership.team_id not in team_ids:
                team_ids.append(membership.team_id)
        return team_ids

    async def fetch_user_team_ids(self, user_id: Any) -> list[Any]:
        team_ids: list[Any] = []
        for membership in self.memberships:
            if membership.user_id == user_id and membership.team_id not in team_ids:
                team_ids.append(membership.team_id)
        return team_ids
