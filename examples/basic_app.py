"""
Basic example demonstrating fastapi-permguard usage.

Run with:
    uvicorn examples.basic_app:app --reload

Then try:
    curl -H "X-User: 42" -X DELETE http://localhost:18000/users/7     # granted by users.*
    curl -H "X-User: 3" http://localhost:18000/feedback                # manager: teams 5, 7 and own rows
    curl -H "X-User: 10" http://localhost:18000/feedback               # user: own rows only
    curl -H "X-User: 1" http://localhost:18000/_permissions/schema     # declared requirements
"""

from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException

from fastapi_permguard import (
    DataScope,
    InMemoryPermissionStore,
    InMemoryRoleDirectory,
    PermissionAuthz,
    PermissionCache,
    PermissionEvaluator,
    PermissionMap,
    PermissionRouter,
    PermissionRow,
    PermissionSettings,
    Public,
    Require,
    RequireAll,
    RequireAny,
    RequireResource,
    RequestDataScope,
    ScopeRequirement,
    TeamMembership,
    permission_lifespan,
)


# =============================================================================
# Fake data
# =============================================================================
USERS = {1: "Ada (admin)", 3: "Grace (manager)", 10: "Linus", 11: "Ken", 12: "Barbara", 42: "Dennis (manager)"}

# feedback_id -> row
FEEDBACK = {
    1: {"author_id": 3, "text": "Onboarding checklist is outdated"},
    2: {"author_id": 10, "text": "Export button does nothing"},
    3: {"author_id": 11, "text": "Add dark mode"},
    4: {"author_id": 12, "text": "Search is slow"},
}


# =============================================================================
# Role grants and hierarchy (normally loaded from the database)
# =============================================================================
store = InMemoryPermissionStore(
    role_permissions={
        "admin": ["system.admin"],  # Everything
        "manager": ["feedback.read", "users.read", "users.*"],
        "user": ["feedback.read", "feedback.create", "feedback.update.own"],
        "auditor": ["permissions.read"],
    },
    user_roles={1: ["admin"], 3: ["manager"], 10: ["user"], 11: ["user"], 12: ["user"], 42: ["manager"]},
    permissions=[
        PermissionRow("feedback.manage", "feedback"),
        PermissionRow("feedback.read", "feedback", "feedback.manage"),
        PermissionRow("feedback.delete", "feedback", "feedback.manage"),
    ],
)

directory = InMemoryRoleDirectory(
    user_roles={1: ["admin"], 3: ["manager"], 10: ["user"], 11: ["user"], 12: ["user"], 42: ["manager"]},
    memberships=[
        TeamMembership(user_id=3, team_id=5, is_manager=True),
        TeamMembership(user_id=3, team_id=7, is_manager=True),
        TeamMembership(user_id=10, team_id=5),
        TeamMembership(user_id=11, team_id=7),
        TeamMembership(user_id=12, team_id=9),
    ],
)


# =============================================================================
# Operation requirements
# =============================================================================
PERMISSIONS = PermissionMap(
    {
        "feedback.list": Require("feedback.read", scope=ScopeRequirement(table="f", user_id_column="author_id")),
        "feedback.create": Require("feedback.create"),
        "feedback.update": RequireResource("feedback", "update", owner_param="author_id"),
        "feedback.merge": RequireAll("feedback.read", "feedback.update", "feedback.delete"),
        "users.remove": RequireAny("users.delete", "users.archive"),
        "health": Public(),
    }
)


# =============================================================================
# Authentication Dependency
# =============================================================================
async def get_current_user_id(x_user: Annotated[int | None, Header()] = None) -> int | None:
    """Simulate authentication via X-User header."""
    if x_user is None:
        return None
    if x_user not in USERS:
        raise HTTPException(status_code=401, detail="Unknown user")
    return x_user


# =============================================================================
# Application Setup
# =============================================================================
app = FastAPI(
    title="Permission Guard Example",
    description="Example app demonstrating fastapi-permguard",
    lifespan=permission_lifespan,
)

authz = PermissionAuthz(
    app,
    PermissionEvaluator(PermissionCache(store, PermissionSettings()), directory),
    user_id_dependency=get_current_user_id,
    introspection_path="/_permissions",
)


# =============================================================================
# Routes
# =============================================================================
router = PermissionRouter(prefix="/feedback", tags=["Feedback"], permission_map=PERMISSIONS)


@router.get("", operation="feedback.list")
async def list_feedback(scope: Annotated[DataScope, Depends(RequestDataScope)]):
    """List the feedback the caller's role may see."""
    rows = []
    for feedback_id, row in FEEDBACK.items():
        owner_teams = await directory.fetch_user_team_ids(row["author_id"])
        if scope.condition.matches(row["author_id"], owner_teams):
            rows.append({"id": feedback_id, **row})
    return {"scope": scope.description, "feedback": rows}


@router.post("", operation="feedback.create")
async def create_feedback(text: str, user_id: Annotated[int, Depends(get_current_user_id)]):
    new_id = max(FEEDBACK) + 1
    FEEDBACK[new_id] = {"author_id": user_id, "text": text}
    return {"id": new_id, **FEEDBACK[new_id]}


@router.put("/by/{author_id}/{feedback_id}", operation="feedback.update")
async def update_feedback(author_id: int, feedback_id: int, text: str):
    """Update feedback. Requires feedback.update, or feedback.update.own on your own rows."""
    row = FEEDBACK.get(feedback_id)
    if not row or row["author_id"] != author_id:
        raise HTTPException(status_code=404, detail="Feedback not found")
    row["text"] = text
    return {"id": feedback_id, **row}


@router.post("/merge", operation="feedback.merge")
async def merge_feedback(source_id: int, target_id: int):
    FEEDBACK.pop(source_id, None)
    return {"merged_into": target_id}


users_router = PermissionRouter(prefix="/users", tags=["Users"], permission_map=PERMISSIONS)


@users_router.delete("/{user_id}", operation="users.remove")
async def remove_user(user_id: int):
    USERS.pop(user_id, None)
    # Role assignments changed; drop the cached permission set
    authz.cache.invalidate_user(user_id)
    return {"removed": user_id}


@users_router.get("/health", operation="health", tags=["Health"])
async def health():
    return {"status": "ok"}


app.include_router(router)
app.include_router(users_router)


if __name__ == "__main__":
    uvicorn.run(app, port=18_000)
