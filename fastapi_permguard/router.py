"""PermissionRouter - FastAPI router whose routes must declare their permission requirement."""

import contextlib
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from fastapi import APIRouter, Depends, params
from fastapi.routing import APIRoute

from fastapi_permguard.dependencies import create_permission_dependency
from fastapi_permguard.requirements import PermissionMap, PermissionRequirement, validate_requirement


class PermissionRouter(APIRouter):
    """FastAPI router with declared permission requirements.

    Every route resolves to a requirement when it is registered, so a route
    cannot silently end up unprotected. The requirement comes from, in order:
    the route's ``requirement=``, its ``operation=`` id looked up in the
    router's permission map, or the router-wide ``requirement``. A route
    that resolves to none raises RuntimeError at declaration time. This
    holds for ``api_route``, ``add_api_route`` and every verb decorator, and
    for plain APIRouters included into this one.

    Args:
        permission_map: Operation id to requirement mapping.
        requirement: Default requirement for routes without their own.
        **kwargs: Additional arguments passed to APIRouter.

    Example:
        PERMISSIONS = PermissionMap({
            "users.list": RequireAny("users.read", "users.admin", scope=ScopeRequirement()),
            "users.delete": Require("users.delete"),
        })
        router = PermissionRouter(prefix="/users", permission_map=PERMISSIONS)

        @router.get("", operation="users.list")
        async def list_users(scope: Annotated[DataScope, Depends(RequestDataScope)]):
            ...

        @router.delete("/{id}", operation="users.delete")
        async def delete_user(id: int):
            ...
    """

    def __init__(
        self,
        *,
        permission_map: Mapping[str, PermissionRequirement] | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> None:
        if requirement is not None:
            validate_requirement(requirement, "router requirement")

        self._including = False
        super().__init__(**kwargs)
        if permission_map is None or isinstance(permission_map, PermissionMap):
            self.permission_map = permission_map or PermissionMap({})
        else:
            self.permission_map = PermissionMap(permission_map)
        self.default_requirement = requirement
        self.endpoint_metadata: dict[tuple[str, str], dict[str, Any]] = {}

    def _resolve_requirement(
        self,
        path: str,
        methods: list[str],
        operation: str | None,
        requirement: PermissionRequirement | None,
    ) -> PermissionRequirement:
        """Resolve the requirement for an endpoint.

        Raises:
            RuntimeError: If the route resolves to no requirement, names an
                unknown operation, or declares an invalid requirement.
        """
        location = f"endpoint {','.join(methods)} {self.prefix}{path}"

        if requirement is not None:
            validate_requirement(requirement, location)
            return requirement
        if operation is not None:
            return self.permission_map.resolve(operation)
        if self.default_requirement is not None:
            return self.default_requirement
        raise RuntimeError(
            f"No permission requirement for {location}. "
            "Pass operation=, requirement=, or a router-wide requirement (use Public() for open endpoints)."
        )

    def _record(
        self,
        path: str,
        methods: Iterable[str],
        operation: str | None,
        requirement: PermissionRequirement,
        summary: str | None,
        tags: Iterable[Any],
    ) -> dict[str, Any]:
        meta = {
            "operation": operation,
            "requirement": requirement,
            "summary": summary,
            "tags": [str(tag) for tag in tags],
        }
        for method in methods:
            self.endpoint_metadata[(path, method)] = meta
        return meta

    def add_api_route(  # type: ignore[override]
        self,
        path: str,
        endpoint: Callable[..., Any],
        *,
        operation: str | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> None:
        """Add a route whose permission dependency runs before any endpoint dependency.

        Every way of adding a route ends up here: the verb decorators,
        ``api_route`` and direct calls.

        Args:
            path: The endpoint path.
            endpoint: The endpoint function.
            operation: Operation id looked up in the permission map.
            requirement: Inline requirement (overrides the operation lookup).
            **kwargs: Additional APIRouter.add_api_route arguments.
        """
        # Routes copied in by include_router keep the guard they were declared with
        if self._including:
            super().add_api_route(path, endpoint, **kwargs)
            return

        methods = sorted({method.upper() for method in kwargs.get("methods") or ["GET"]})
        final = self._resolve_requirement(path, methods, operation, requirement)

        dependencies = list(kwargs.pop("dependencies", None) or [])
        # Public endpoints without scoping need no identity at all
        if not final.public or final.scope is not None:
            dependencies.insert(0, Depends(create_permission_dependency(final)))

        meta = self._record(
            self.prefix + path,
            methods,
            operation,
            final,
            kwargs.get("summary"),
            [*self.tags, *(kwargs.get("tags") or [])],
        )
        # Kept on the endpoint for introspection of routers included before
        # PermissionAuthz started tracking them
        with contextlib.suppress(AttributeError):
            endpoint._permguard_metadata_ = meta  # type: ignore[attr-defined]

        super().add_api_route(path, endpoint, dependencies=dependencies, **kwargs)

    def api_route(  # type: ignore[override]
        self,
        path: str,
        *,
        operation: str | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register an endpoint for the given ``methods`` with its permission requirement."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.add_api_route(path, func, operation=operation, requirement=requirement, **kwargs)
            return func

        return decorator

    def include_router(  # type: ignore[override]
        self,
        router: APIRouter,
        *,
        prefix: str = "",
        dependencies: Sequence[params.Depends] | None = None,
        **kwargs: Any,
    ) -> None:
        """Include another router.

        A PermissionRouter keeps its own declarations. A plain APIRouter has
        none, so all of its routes get this router's router-wide requirement.

        Raises:
            RuntimeError: If a plain APIRouter is included into a router
                without a router-wide requirement.
        """
        include_prefix = self.prefix + prefix
        dependencies = list(dependencies or [])

        if isinstance(router, PermissionRouter):
            for (path, method), meta in router.endpoint_metadata.items():
                self.endpoint_metadata[(include_prefix + path, method)] = meta
        else:
            final = self.default_requirement
            if final is None:
                raise RuntimeError(
                    f"No permission requirement for routes included at {include_prefix or '/'}. "
                    "Include a PermissionRouter, or give this router a router-wide requirement."
                )
            if not final.public or final.scope is not None:
                dependencies.insert(0, Depends(create_permission_dependency(final)))
            for route in router.routes:
                if isinstance(route, APIRoute):
                    self._record(
                        include_prefix + route.path,
                        sorted(route.methods),
                        None,
                        final,
                        route.summary,
                        [*self.tags, *(kwargs.get("tags") or []), *route.tags],
                    )

        self._including = True
        try:
            super().include_router(router, prefix=prefix, dependencies=dependencies, **kwargs)
        finally:
            self._including = False

    def get(  # type: ignore[override]
        self,
        path: str,
        *,
        operation: str | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a GET endpoint with its permission requirement."""
        return self.api_route(path, methods=["GET"], operation=operation, requirement=requirement, **kwargs)

    def post(  # type: ignore[override]
        self,
        path: str,
        *,
        operation: str | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a POST endpoint with its permission requirement."""
        return self.api_route(path, methods=["POST"], operation=operation, requirement=requirement, **kwargs)

    def put(  # type: ignore[override]
        self,
        path: str,
        *,
        operation: str | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a PUT endpoint with its permission requirement."""
        return self.api_route(path, methods=["PUT"], operation=operation, requirement=requirement, **kwargs)

    def patch(  # type: ignore[override]
        self,
        path: str,
        *,
        operation: str | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a PATCH endpoint with its permission requirement."""
        return self.api_route(path, methods=["PATCH"], operation=operation, requirement=requirement, **kwargs)

    def delete(  # type: ignore[override]
        self,
        path: str,
        *,
        operation: str | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a DELETE endpoint with its permission requirement."""
        return self.api_route(path, methods=["DELETE"], operation=operation, requirement=requirement, **kwargs)

    def head(  # type: ignore[override]
        self,
        path: str,
        *,
        operation: str | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a HEAD endpoint with its permission requirement."""
        return self.api_route(path, methods=["HEAD"], operation=operation, requirement=requirement, **kwargs)

    def options(  # type: ignore[override]
        self,
        path: str,
        *,
        operation: str | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register an OPTIONS endpoint with its permission requirement."""
        return self.api_route(path, methods=["OPTIONS"], operation=operation, requirement=requirement, **kwargs)

    def trace(  # type: ignore[override]
        self,
        path: str,
        *,
        operation: str | None = None,
        requirement: PermissionRequirement | None = None,
        **kwargs: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register a TRACE endpoint with its permission requirement."""
        return self.api_route(path, methods=["TRACE"], operation=operation, requirement=requirement, **kwargs)
