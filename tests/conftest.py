from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from fastapi_permguard import (
    InMemoryPermissionStore,
    InMemoryRoleDirectory,
    PermissionCache,
    PermissionEvaluator,
    PermissionRow,
    PermissionSettings,
    TeamMembership,
)

ROLE_PERMISSIONS: dict[str, list[str]] = {
    "admin": ["system.admin"],
    "manager": ["feedback.read", "users.read", "users.*"],
    "user": ["feedback.read.own", "feedback.create", "users.update.own"],
    "exporter": ["reports.export"],
    "viewer": ["users.*.view"],
}

USER_ROLES: dict[Any, list[str]] = {
    1: ["admin"],
    3: ["manager"],
    10: ["user"],
    11: ["user"],
    20: ["exporter"],
    30: ["viewer"],
    42: ["manager"],
    99: [],
}

HIERARCHY_ROWS: list[PermissionRow] = [
    PermissionRow("reports.*", "reports"),
    PermissionRow("reports.export", "reports", "reports.*"),
    PermissionRow("reports.export.pdf", "reports", "reports.export"),
    PermissionRow("feedback.read", "feedback"),
    PermissionRow("feedback.read.own", "feedback", "feedback.read"),
]

DIRECTORY_ROLES: dict[Any, list[str]] = {
    1: ["Admin"],
    3: ["manager", "user"],
    4: ["supervisor"],
    10: ["user"],
    11: ["user"],
    12: ["user"],
}

MEMBERSHIPS: list[TeamMembership] = [
    TeamMembership(user_id=3, team_id=5, is_manager=True),
    TeamMembership(user_id=3, team_id=7, is_manager=True),
    TeamMembership(user_id=10, team_id=5),
    TeamMembership(user_id=11, team_id=7),
    TeamMembership(user_id=12, team_id=9),
]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingStore(InMemoryPermissionStore):
    """In-memory store that records how often each fetch runs."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.permission_fetches: list[Any] = []
        self.hierarchy_fetches = 0

    async def fetch_user_permission_names(self, user_id: Any) -> list[str]:
        self.permission_fetches.append(user_id)
        return await super().fetch_user_permission_names(user_id)

    async def fetch_hierarchy(self) -> list[PermissionRow]:
        self.hierarchy_fetches += 1
        return await super().fetch_hierarchy()


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def app() -> FastAPI:
    return FastAPI()


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> CountingStore:
    return CountingStore(ROLE_PERMISSIONS, USER_ROLES, HIERARCHY_ROWS)


@pytest.fixture
def directory() -> InMemoryRoleDirectory:
    return InMemoryRoleDirectory(user_roles=dict(DIRECTORY_ROLES), memberships=list(MEMBERSHIPS))


@pytest.fixture
def cache(store: CountingStore, clock: FakeClock) -> PermissionCache:
    return PermissionCache(store, PermissionSettings(), clock=clock)


@pytest.fixture
def evaluator(cache: PermissionCache, directory: InMemoryRoleDirectory) -> PermissionEvaluator:
    return PermissionEvaluator(cache, directory)
