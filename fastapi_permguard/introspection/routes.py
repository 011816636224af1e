"""Routes for permission introspection."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request
from fastapi.responses import JSONResponse

from fastapi_permguard.introspection.schema import build_introspection_schema
from fastapi_permguard.requirements import PermissionRequirement
from fastapi_permguard.router import PermissionRouter

if TYPE_CHECKING:
    from fastapi_permguard.core import PermissionAuthz


def create_introspection_router(requirement: PermissionRequirement) -> PermissionRouter:
    """Create a router exposing the permission introspection schema.

    Args:
        requirement: Requirement guarding the schema endpoint.

    Returns:
        A PermissionRouter with a single GET /schema route.
    """
    router = PermissionRouter(tags=["permissions"])

    @router.get(
        "/schema",
        requirement=requirement,
        response_class=JSONResponse,
        summary="Permission schema",
        description="Declared endpoint requirements, the permission hierarchy and cache statistics.",
        include_in_schema=False,
    )
    async def get_schema(request: Request) -> JSONResponse:
        """Return the permission schema as JSON."""
        authz: PermissionAuthz = request.app.state.permission_authz
        schema = await build_introspection_schema(request.app, authz)
        return JSONResponse(content=schema.model_dump())

    return router
