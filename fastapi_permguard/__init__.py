"""FastAPI Permission Guard - dotted-permission resolution with role-based data scoping."""

__version__ = "0.1.0"

from fastapi_permguard.cache import PermissionCache
from fastapi_permguard.config import PermissionSettings
from fastapi_permguard.core import PermissionAuthz, permission_lifespan
from fastapi_permguard.dependencies import (
    RequestDataScope,
    create_permission_dependency,
    current_user_id,
    evaluate_requirement,
)
from fastapi_permguard.evaluator import PermissionEvaluator
from fastapi_permguard.exceptions import Forbidden, StoreTimeout, StoreUnavailable, Unauthenticated
from fastapi_permguard.permissions import MatchType, PermissionCheckResult, implies, match_wildcard
from fastapi_permguard.requirements import (
    PermissionMap,
    PermissionMode,
    PermissionRequirement,
    Public,
    Require,
    RequireAll,
    RequireAny,
    RequireResource,
    ScopeRequirement,
)
from fastapi_permguard.router import PermissionRouter
from fastapi_permguard.scope import DataLevelContext, DataScope, ScopeCondition, ScopeKind, build_scope
from fastapi_permguard.stores import (
    InMemoryPermissionStore,
    InMemoryRoleDirectory,
    PermissionRow,
    PermissionStore,
    RoleDirectory,
    RoleLevel,
    TeamMembership,
)

__all__ = [
    "PermissionAuthz",
    "PermissionRouter",
    "PermissionEvaluator",
    "PermissionCache",
    "PermissionSettings",
    "permission_lifespan",
    "PermissionMap",
    "PermissionMode",
    "PermissionRequirement",
    "Require",
    "RequireAny",
    "RequireAll",
    "RequireResource",
    "Public",
    "ScopeRequirement",
    "DataScope",
    "DataLevelContext",
    "ScopeCondition",
    "ScopeKind",
    "build_scope",
    "PermissionStore",
    "RoleDirectory",
    "RoleLevel",
    "PermissionRow",
    "InMemoryPermissionStore",
    "InMemoryRoleDirectory",
    "TeamMembership",
    "MatchType",
    "PermissionCheckResult",
    "match_wildcard",
    "implies",
    "Forbidden",
    "Unauthenticated",
    "StoreUnavailable",
    "StoreTimeout",
    "RequestDataScope",
    "current_user_id",
    "create_permission_dependency",
    "evaluate_requirement",
]
