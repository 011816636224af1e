"""Static permission declarations for operations.

Every protected operation is described by a :class:`PermissionRequirement`
declared up front, usually collected in a :class:`PermissionMap` keyed by
operation id, and validated when the map is built.
"""

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from enum import StrEnum

from fastapi_permguard.permissions import contains_wildcard, is_valid_permission_name


class PermissionMode(StrEnum):
    ANY = "any"
    ALL = "all"


@dataclass(frozen=True, slots=True)
class ScopeRequirement:
    """Row-level scoping to compute for an operation."""

    table: str = ""
    user_id_column: str = "user_id"
    include_own_in_team_scope: bool = True


@dataclass(frozen=True, slots=True)
class ResourceRequirement:
    """'<resource>.<action>' grants on any row; '<resource>.<action>.own' only on the caller's."""

    resource_type: str
    action: str
    owner_param: str = "id"

    @property
    def general_permission(self) -> str:
        return f"{self.resource_type}.{self.action}"

    @property
    def own_permission(self) -> str:
        return f"{self.resource_type}.{self.action}.own"


class PermissionRequirement:
    """Permissions an operation requires and how they combine."""

    __slots__ = ("permissions", "mode", "scope", "resource", "public")

    def __init__(
        self,
        permissions: Iterable[str],
        mode: PermissionMode = PermissionMode.ANY,
        *,
        scope: ScopeRequirement | None = None,
        resource: ResourceRequirement | None = None,
        public: bool = False,
    ) -> None:
        self.permissions = tuple(permissions)
        self.mode = mode
        self.scope = scope
        self.resource = resource
        self.public = public

    def _key(self) -> tuple[object, ...]:
        return (self.permissions, self.mode, self.scope, self.resource, self.public)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PermissionRequirement):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({', '.join(map(repr, self.permissions))}, mode={self.mode.value!r})"


class Require(PermissionRequirement):
    """A single required permission."""

    def __init__(self, permission: str, *, scope: ScopeRequirement | None = None) -> None:
        super().__init__((permission,), PermissionMode.ANY, scope=scope)


class RequireAny(PermissionRequirement):
    """At least one of the permissions is required (OR-check)."""

    def __init__(self, *permissions: str, scope: ScopeRequirement | None = None) -> None:
        super().__init__(permissions, PermissionMode.ANY, scope=scope)


class RequireAll(PermissionRequirement):
    """Every permission is required (AND-check)."""

    def __init__(self, *permissions: str, scope: ScopeRequirement | None = None) -> None:
        super().__init__(permissions, PermissionMode.ALL, scope=scope)


class RequireResource(PermissionRequirement):
    """General or own-resource permission, with the owner id taken from a path parameter."""

    def __init__(
        self,
        resource_type: str,
        action: str,
        *,
        owner_param: str = "id",
        scope: ScopeRequirement | None = None,
    ) -> None:
        resource = ResourceRequirement(resource_type, action, owner_param)
        super().__init__((resource.general_permission,), PermissionMode.ANY, scope=scope, resource=resource)


class Public(PermissionRequirement):
    """No permission check. A declared scope still requires an authenticated user."""

    def __init__(self, *, scope: ScopeRequirement | None = None) -> None:
        super().__init__((), PermissionMode.ANY, scope=scope, public=True)


def validate_requirement(requirement: PermissionRequirement, location: str) -> None:
    """Validate a requirement declaration.

    Raises:
        RuntimeError: If the requirement names no permissions without being public,
            or names a malformed or wildcard permission.
    """
    if requirement.public:
        return
    if not requirement.permissions:
        raise RuntimeError(f"Requirement for {location} must name permissions or be declared Public()")
    for permission in requirement.permissions:
        if contains_wildcard(permission):
            raise RuntimeError(
                f"Wildcard permissions are not allowed in {location}. "
                f"Found '{permission}'. Wildcards should only be used in role grants."
            )
        if not is_valid_permission_name(permission):
            raise RuntimeError(
                f"Invalid permission '{permission}' in {location}. Expected 'resource.action[.qualifier]'."
            )


class PermissionMap(Mapping[str, PermissionRequirement]):
    """Operation id to requirement mapping, validated once at construction.

    Example:
        PERMISSIONS = PermissionMap({
            "users.list": RequireAny("users.read", "users.admin", scope=ScopeRequirement(table="u")),
            "users.update": RequireAll("users.read", "users.update"),
            "health": Public(),
        })
    """

    def __init__(self, requirements: Mapping[str, PermissionRequirement]) -> None:
        for operation_id, requirement in requirements.items():
            validate_requirement(requirement, f"operation '{operation_id}'")
        self._requirements = dict(requirements)

    def resolve(self, operation_id: str) -> PermissionRequirement:
        try:
            return self._requirements[operation_id]
        except KeyError:
            raise RuntimeError(f"No permission requirement declared for operation '{operation_id}'") from None

    def __getitem__(self, operation_id: str) -> PermissionRequirement:
        return self._requirements[operation_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._requirements)

    def __len__(self) -> int:
        return len(self._requirements)
