from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Annotated, Any

from fastapi import Depends, Request

from fastapi_permguard.evaluator import PermissionEvaluator
from fastapi_permguard.exceptions import Unauthenticated
from fastapi_permguard.requirements import PermissionRequirement
from fastapi_permguard.scope import DataScope

if TYPE_CHECKING:
    from fastapi_permguard.core import PermissionAuthz


async def current_user_id(request: Request) -> Any:
    """Placeholder dependency for the authenticated user id.

    Replaced at runtime via FastAPI's dependency_overrides when PermissionAuthz
    is initialized with a user_id_dependency. Without one, falls back to
    request.state.user_id, which the application's own auth middleware must set.
    """
    return getattr(request.state, "user_id", None)


def get_authz(request: Request) -> "PermissionAuthz":
    authz = getattr(request.app.state, "permission_authz", None)
    if authz is None:
        raise RuntimeError(
            "PermissionAuthz not configured. Make sure to create a PermissionAuthz instance with your app."
        )
    return authz


def RequestDataScope(request: Request) -> DataScope:
    """Get the data scope computed for the current request.

    Usage:
        @router.get("/feedback", operation="feedback.list")
        async def list_feedback(scope: Annotated[DataScope, Depends(RequestDataScope)]):
            return repository.list(scope.condition)

    Raises:
        RuntimeError: If the endpoint's requirement declares no scope.
    """
    scope = getattr(request.state, "data_scope", None)
    if scope is None:
        raise RuntimeError("No data scope on this request. Declare a ScopeRequirement on the endpoint's requirement.")
    return scope


async def evaluate_requirement(
    evaluator: PermissionEvaluator,
    user_id: Any,
    requirement: PermissionRequirement,
    owner_id: Any | None = None,
) -> DataScope | None:
    """Enforce a requirement and build its data scope without dependency injection.

    Args:
        evaluator: The permission evaluator.
        user_id: Authenticated user id, or None.
        requirement: The declared requirement.
        owner_id: Owner of the addressed row, for resource requirements.

    Returns:
        The data scope when the requirement declares one, otherwise None.

    Raises:
        Unauthenticated: If identity is needed and ``user_id`` is None.
        Forbidden: If the requirement is not met.
        StoreUnavailable: If permissions or role data cannot be loaded.
    """
    if requirement.public and requirement.scope is None:
        return None

    if user_id is None:
        raise Unauthenticated()

    await evaluator.check_requirement(user_id, requirement, owner_id)

    if requirement.scope is None:
        return None

    scope = requirement.scope
    return await evaluator.build_scope(
        user_id,
        target_table=scope.table,
        user_id_column=scope.user_id_column,
        include_own_in_team_scope=scope.include_own_in_team_scope,
    )


def create_permission_dependency(
    requirement: PermissionRequirement,
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Create a dependency that enforces a requirement before the endpoint runs.

    The dependency:
    1. Resolves the user id via the injected user_id_dependency (or placeholder fallback)
    2. Rejects anonymous requests with 401 before any evaluation
    3. Evaluates the requirement, raising 403 with the required/missing permissions
    4. Stores the user id and, if declared, the DataScope on request.state

    Args:
        requirement: The requirement to enforce.

    Returns:
        An async dependency function for use with FastAPI's Depends().
    """

    async def permission_dependency(
        request: Request,
        user_id: Annotated[Any, Depends(current_user_id)],
    ) -> None:
        authz = get_authz(request)

        owner_id = None
        if requirement.resource is not None:
            owner_id = request.path_params.get(requirement.resource.owner_param)

        scope = await evaluate_requirement(authz.evaluator, user_id, requirement, owner_id)

        request.state.user_id = user_id
        if scope is not None:
            request.state.data_scope = scope

    return permission_dependency
