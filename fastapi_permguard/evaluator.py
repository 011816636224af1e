"""Permission evaluation: single checks, OR-checks, AND-checks and requirement enforcement."""

from collections.abc import Sequence
from typing import Any

from loguru import logger

from fastapi_permguard.cache import PermissionCache, call_store
from fastapi_permguard.exceptions import Forbidden, StoreUnavailable
from fastapi_permguard.hierarchy import resolve_via_hierarchy
from fastapi_permguard.permissions import (
    AllCheckResult,
    MatchType,
    PermissionCheckResult,
    admin_override,
    match_wildcard,
)
from fastapi_permguard.requirements import PermissionMode, PermissionRequirement
from fastapi_permguard.scope import DataLevelContext, DataScope, ScopeKind, build_scope
from fastapi_permguard.stores import RoleDirectory, RoleLevel


class PermissionEvaluator:
    """Decides whether a user holds a permission, and how.

    Args:
        cache: Cached view over the permission store.
        directory: Role/team directory used for data scoping. Only needed for
            the data-scope helpers.
    """

    def __init__(self, cache: PermissionCache, directory: RoleDirectory | None = None) -> None:
        self.cache = cache
        self.directory = directory

    async def check(self, user_id: Any, permission: str) -> PermissionCheckResult:
        """Check a single permission.

        Grant paths are tried in a fixed order and the first hit is reported:
        exact, admin override, wildcard, hierarchy.

        Raises:
            StoreUnavailable: If the user's permissions or the hierarchy cannot be loaded.
        """
        permissions = await self.cache.get_user_permissions(user_id)

        if permission in permissions:
            return PermissionCheckResult(granted=True, matched_permission=permission, match_type=MatchType.EXACT)

        override = admin_override(permissions)
        if override is not None:
            return PermissionCheckResult(granted=True, matched_permission=override, match_type=MatchType.ADMIN)

        wildcard = match_wildcard(permissions, permission)
        if wildcard is not None:
            return PermissionCheckResult(granted=True, matched_permission=wildcard, match_type=MatchType.WILDCARD)

        hierarchy = await self.cache.get_hierarchy()
        ancestor = resolve_via_hierarchy(
            hierarchy,
            permissions,
            permission,
            max_hops=self.cache.settings.max_hierarchy_depth,
        )
        if ancestor is not None:
            return PermissionCheckResult(granted=True, matched_permission=ancestor, match_type=MatchType.HIERARCHY)

        return PermissionCheckResult(granted=False, missing_permissions=(permission,))

    async def has_any(self, user_id: Any, names: Sequence[str]) -> bool:
        """OR-check. Stops at the first granted permission; an empty list is granted."""
        if not names:
            return True

        for name in names:
            result = await self.check(user_id, name)
            if result.granted:
                logger.debug(f"OR-check passed: user {user_id} has permission {result.matched_permission}")
                return True

        logger.debug(f"OR-check failed: user {user_id} has none of [{', '.join(names)}]")
        return False

    async def has_all(self, user_id: Any, names: Sequence[str]) -> AllCheckResult:
        """AND-check. Evaluates every name so the full missing set is reported."""
        missing: list[str] = []
        for name in names:
            result = await self.check(user_id, name)
            if not result.granted:
                missing.append(name)

        if missing:
            logger.debug(f"AND-check failed: user {user_id} missing [{', '.join(missing)}]")
            return AllCheckResult(granted=False, missing_permissions=missing)

        logger.debug(f"AND-check passed: user {user_id} has all permissions")
        return AllCheckResult(granted=True, missing_permissions=[])

    async def check_resource(
        self,
        user_id: Any,
        resource_type: str,
        action: str,
        owner_id: Any | None = None,
    ) -> bool:
        """Check '<resource>.<action>', or '<resource>.<action>.own' when the caller owns the row."""
        general = await self.check(user_id, f"{resource_type}.{action}")
        if general.granted:
            return True

        if owner_id is None or str(owner_id) != str(user_id):
            return False

        own = await self.check(user_id, f"{resource_type}.{action}.own")
        return own.granted

    async def check_requirement(
        self,
        user_id: Any,
        requirement: PermissionRequirement,
        owner_id: Any | None = None,
    ) -> None:
        """Enforce a declared requirement.

        Raises:
            Forbidden: With the required permissions, the mode and, for
                AND-checks, the missing subset.
            StoreUnavailable: If permissions cannot be loaded.
        """
        if requirement.public:
            return

        names = list(requirement.permissions)

        if requirement.resource is not None:
            resource = requirement.resource
            if not await self.check_resource(user_id, resource.resource_type, resource.action, owner_id):
                required = [resource.general_permission, resource.own_permission]
                logger.warning(f"Permission denied for user {user_id}. Required: {' or '.join(required)}")
                raise Forbidden(
                    f"Access denied. Required permission: {' or '.join(required)}",
                    required_permissions=required,
                    permission_mode=PermissionMode.ANY.value,
                )
            return

        if requirement.mode == PermissionMode.ALL:
            result = await self.has_all(user_id, names)
            if not result.granted:
                logger.warning(
                    f"Permission denied for user {user_id}. Missing: {', '.join(result.missing_permissions)}"
                )
                raise Forbidden(
                    f"Access denied. Missing permissions: {', '.join(result.missing_permissions)}",
                    required_permissions=names,
                    permission_mode=PermissionMode.ALL.value,
                    missing_permissions=result.missing_permissions,
                )
            return

        if not await self.has_any(user_id, names):
            logger.warning(f"Permission denied for user {user_id}. Required: {' or '.join(names)}")
            raise Forbidden(
                f"Access denied. Required permission: {' or '.join(names)}",
                required_permissions=names,
                permission_mode=PermissionMode.ANY.value,
            )

    def _require_directory(self) -> RoleDirectory:
        if self.directory is None:
            raise StoreUnavailable("Role directory not configured")
        return self.directory

    async def build_data_level_context(self, user_id: Any) -> DataLevelContext:
        """Resolve the caller's role level and, for managers, the teams they manage.

        Never cached: a stale scope is worse than an extra directory call.
        """
        directory = self._require_directory()
        timeout = self.cache.settings.store_timeout_seconds

        raw_level = await call_store(
            f"role level for user {user_id}",
            lambda: directory.fetch_user_role_level(user_id),
            timeout,
        )
        try:
            level = RoleLevel(raw_level)
        except ValueError:
            logger.warning(f"Role directory returned an unexpected role level for user {user_id}: {raw_level!r}")
            raise StoreUnavailable(f"Role directory returned an unexpected role level for user {user_id}") from None

        team_ids: tuple[Any, ...] = ()
        if level == RoleLevel.MANAGER:
            teams = await call_store(
                f"managed teams for user {user_id}",
                lambda: directory.fetch_manager_team_ids(user_id),
                timeout,
            )
            team_ids = _team_ids(f"managed teams for user {user_id}", teams)

        return DataLevelContext(user_id=user_id, user_role=level, team_ids=team_ids)

    async def build_scope(
        self,
        user_id: Any,
        target_table: str = "",
        user_id_column: str = "user_id",
        include_own_in_team_scope: bool = True,
    ) -> DataScope:
        context = await self.build_data_level_context(user_id)
        return build_scope(context, target_table, user_id_column, include_own_in_team_scope)

    async def can_access_resource(
        self,
        user_id: Any,
        resource_owner_id: Any,
        resource_team_id: Any | None = None,
    ) -> bool:
        """Check whether a single row falls inside the caller's data scope."""
        scope = await self.build_scope(user_id)
        if scope.kind != ScopeKind.TEAM:
            return scope.condition.matches(resource_owner_id)

        if resource_team_id is not None and resource_team_id in scope.team_ids:
            return True

        directory = self._require_directory()
        owner_teams = await call_store(
            f"teams for user {resource_owner_id}",
            lambda: directory.fetch_user_team_ids(resource_owner_id),
            self.cache.settings.store_timeout_seconds,
        )
        owner_team_ids = _team_ids(f"teams for user {resource_owner_id}", owner_teams)
        return scope.condition.matches(resource_owner_id, owner_team_ids)


def _team_ids(what: str, value: Any) -> tuple[Any, ...]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        logger.warning(f"Role directory returned unexpected {what}: {value!r}")
        raise StoreUnavailable(f"Role directory returned an unexpected shape for {what}")
    return tuple(value)
