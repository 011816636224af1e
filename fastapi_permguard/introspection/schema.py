"""Schema introspection of permission declarations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi.routing import APIRoute
from pydantic import BaseModel

from fastapi_permguard.requirements import PermissionRequirement

if TYPE_CHECKING:
    from fastapi import FastAPI

    from fastapi_permguard.core import PermissionAuthz
    from fastapi_permguard.hierarchy import Hierarchy


class ScopeSchema(BaseModel):
    """Schema for a declared data scope."""

    table: str
    user_id_column: str
    include_own_in_team_scope: bool


class EndpointSchema(BaseModel):
    """Schema for an endpoint with its permission requirement."""

    path: str
    method: str
    operation: str | None
    summary: str | None
    tags: list[str]
    permissions: list[str]
    mode: str  # "any" or "all"
    public: bool
    resource: str | None
    scope: ScopeSchema | None


class HierarchyNodeSchema(BaseModel):
    """Schema for a permission in the hierarchy."""

    name: str
    category: str | None
    parent_permission: str | None
    children: list[str]


class CacheStatsSchema(BaseModel):
    user_entries: int
    hierarchy_size: int


class IntrospectionSchema(BaseModel):
    """Complete schema of permission declarations and cached state."""

    endpoints: list[EndpointSchema]
    hierarchy: list[HierarchyNodeSchema]
    cache: CacheStatsSchema


def _endpoint_schema(path: str, method: str, meta: dict[str, Any]) -> EndpointSchema:
    requirement: PermissionRequirement = meta["requirement"]
    scope = requirement.scope
    return EndpointSchema(
        path=path,
        method=method,
        operation=meta.get("operation"),
        summary=meta.get("summary"),
        tags=list(meta.get("tags") or []),
        permissions=list(requirement.permissions),
        mode=requirement.mode.value,
        public=requirement.public,
        resource=requirement.resource.general_permission if requirement.resource else None,
        scope=ScopeSchema(
            table=scope.table,
            user_id_column=scope.user_id_column,
            include_own_in_team_scope=scope.include_own_in_team_scope,
        )
        if scope
        else None,
    )


def _build_endpoints_schema(app: FastAPI, authz: PermissionAuthz) -> list[EndpointSchema]:
    """Build endpoint schemas from the declarations recorded by PermissionRouters.

    Included routers are not flattened into ``app.routes`` on every FastAPI
    version, so tracked routers are the primary source. Routes that sit
    directly on ``app.routes`` and carry their own metadata are added after.
    """
    endpoints: list[EndpointSchema] = []
    seen: set[tuple[str, str]] = set()

    for prefix, router in authz.routers:
        for (path, method), meta in router.endpoint_metadata.items():
            key = (prefix + path, method)
            if key in seen:
                continue
            seen.add(key)
            endpoints.append(_endpoint_schema(key[0], method, meta))

    for route in app.routes:
        if not isinstance(route, APIRoute):
            continue
        meta = getattr(route.endpoint, "_permguard_metadata_", None)
        if not meta:
            continue
        for method in sorted(route.methods or {"GET"}):
            key = (route.path, method)
            if key in seen:
                continue
            seen.add(key)
            endpoints.append(_endpoint_schema(route.path, method, meta))

    return endpoints


def _build_hierarchy_schema(hierarchy: Hierarchy) -> list[HierarchyNodeSchema]:
    return [
        HierarchyNodeSchema(
            name=node.name,
            category=node.category,
            parent_permission=node.parent_permission,
            children=sorted(node.children),
        )
        for _, node in sorted(hierarchy.items())
    ]


async def build_introspection_schema(app: FastAPI, authz: PermissionAuthz) -> IntrospectionSchema:
    """Build the introspection schema.

    Args:
        app: The FastAPI application instance.
        authz: The PermissionAuthz configuration.

    Returns:
        IntrospectionSchema with declared endpoints, the hierarchy and cache stats.
    """
    hierarchy = await authz.cache.get_hierarchy()
    stats = authz.cache.stats()

    return IntrospectionSchema(
        endpoints=_build_endpoints_schema(app, authz),
        hierarchy=_build_hierarchy_schema(hierarchy),
        cache=CacheStatsSchema(user_entries=stats.user_entries, hierarchy_size=stats.hierarchy_size),
    )
