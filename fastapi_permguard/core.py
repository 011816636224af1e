from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from fastapi_permguard.cache import PermissionCache
from fastapi_permguard.dependencies import current_user_id
from fastapi_permguard.evaluator import PermissionEvaluator
from fastapi_permguard.exceptions import StoreUnavailable
from fastapi_permguard.requirements import PermissionRequirement, Require


def _wrap_include_router(app: FastAPI, original_include_router: Callable[..., None]) -> Callable[..., None]:
    """Wrap FastAPI's include_router to track PermissionRouters."""

    def wrapped_include_router(
        router: APIRouter,
        *,
        prefix: str = "",
        **kwargs: Any,
    ) -> None:
        # Import here to avoid circular import
        from fastapi_permguard.router import PermissionRouter

        if isinstance(router, PermissionRouter):
            if not hasattr(app.state, "_permguard_routers_"):
                app.state._permguard_routers_ = []
            app.state._permguard_routers_.append((prefix, router))

        return original_include_router(router, prefix=prefix, **kwargs)

    return wrapped_include_router


async def store_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    """Answer 500 for store failures without leaking permission details."""
    logger.error(f"Permission store unavailable during {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


class PermissionAuthz:
    """Main permission configuration.

    Attaches to a FastAPI application and provides the evaluator used by
    PermissionRouter endpoints.

    Args:
        app: The FastAPI application instance.
        evaluator: Permission evaluator backed by the permission cache.
        user_id_dependency: Optional FastAPI dependency returning the
            authenticated user id, or None for anonymous requests. When
            omitted, request.state.user_id is used.
        introspection_path: Optional path to mount the introspection schema
            endpoint (e.g., "/_permissions").
        introspection_requirement: Requirement guarding the introspection
            endpoint. Defaults to 'permissions.read'.
    """

    def __init__(
        self,
        app: FastAPI,
        evaluator: PermissionEvaluator,
        user_id_dependency: Callable[..., Any] | Callable[..., Awaitable[Any]] | None = None,
        introspection_path: str | None = None,
        introspection_requirement: PermissionRequirement | None = None,
    ) -> None:
        self.app = app
        self.evaluator = evaluator
        self.user_id_dependency = user_id_dependency
        self.introspection_path = introspection_path
        self.introspection_requirement = introspection_requirement or Require("permissions.read")

        if not hasattr(app.state, "_permguard_routers_"):
            app.state._permguard_routers_ = []

        app.state.permission_authz = self

        # Inject the application's auth into every protected endpoint
        if user_id_dependency is not None:
            app.dependency_overrides[current_user_id] = user_id_dependency

        app.add_exception_handler(StoreUnavailable, store_unavailable_handler)

        self._wrap_app_include_router()

        if introspection_path:
            self._mount_introspection()

    @property
    def cache(self) -> PermissionCache:
        return self.evaluator.cache

    @property
    def routers(self) -> list[tuple[str, Any]]:
        """PermissionRouters included in the app, with their include prefixes."""
        return list(getattr(self.app.state, "_permguard_routers_", []))

    def _wrap_app_include_router(self) -> None:
        if hasattr(self.app, "_permguard_include_router_wrapped_"):
            return

        original_include_router = self.app.include_router
        self.app.include_router = _wrap_include_router(self.app, original_include_router)  # type: ignore[method-assign]
        self.app._permguard_include_router_wrapped_ = True  # type: ignore[attr-defined]

    def _mount_introspection(self) -> None:
        if not self.introspection_path:
            return

        # Import here to avoid circular import
        from fastapi_permguard.introspection.routes import create_introspection_router

        router = create_introspection_router(self.introspection_requirement)
        self.app.include_router(router, prefix=self.introspection_path)


@asynccontextmanager
async def permission_lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan that runs the permission cache eviction sweep.

    Usage:
        app = FastAPI(lifespan=permission_lifespan)
        PermissionAuthz(app, evaluator)
    """
    authz: PermissionAuthz | None = getattr(app.state, "permission_authz", None)
    if authz is None:
        raise RuntimeError("PermissionAuthz not configured. Create it before the application starts.")

    authz.cache.start_eviction_sweep()
    try:
        yield
    finally:
        await authz.cache.stop_eviction_sweep()
