"""Time-expiring, process-local cache of user permissions and the permission hierarchy."""

import asyncio
import contextlib
import threading
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from loguru import logger

from fastapi_permguard.config import PermissionSettings
from fastapi_permguard.exceptions import StoreTimeout, StoreUnavailable
from fastapi_permguard.hierarchy import Hierarchy, build_hierarchy, find_cycles
from fastapi_permguard.stores import PermissionRow, PermissionStore

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class UserPermissionSet:
    permissions: tuple[str, ...]
    expires_at: float


@dataclass(frozen=True, slots=True)
class HierarchySnapshot:
    nodes: Hierarchy
    expires_at: float


@dataclass(frozen=True, slots=True)
class CacheStats:
    user_entries: int
    hierarchy_size: int
    hierarchy_expires_at: float | None


class PermissionCache:
    """Per-user permission lists and the global hierarchy, each with its own TTL.

    All reads and writes of cached state go through a single lock that is
    never held across a store call. Two requests missing on the same user may
    both fetch; the later write wins. A fetch that started before an
    invalidation returns its result but does not store it. Callers get their
    own copy of a user's permission list.

    Args:
        store: Source of permission names and hierarchy rows.
        settings: TTLs, sweep interval and store timeout.
        clock: Monotonic time source in seconds, injectable for tests.
    """

    def __init__(
        self,
        store: PermissionStore | None,
        settings: PermissionSettings | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.store = store
        self.settings = settings or PermissionSettings()
        self.clock = clock

        self._lock = threading.Lock()
        self._users: dict[Any, UserPermissionSet] = {}
        self._hierarchy: HierarchySnapshot | None = None
        # Bumped by every invalidation; fetches begun under an older value are not stored
        self._generation = 0
        self._sweep_task: asyncio.Task[None] | None = None

    async def get_user_permissions(self, user_id: Any, use_cache: bool = True) -> list[str]:
        """Return the permission names granted to a user through their roles.

        Raises:
            StoreUnavailable: If the store is missing, fails, or returns an unexpected shape.
        """
        if use_cache:
            with self._lock:
                cached = self._users.get(user_id)
            if cached is not None and cached.expires_at > self.clock():
                logger.debug(f"Permission cache hit for user {user_id}")
                return list(cached.permissions)

        store = self._require_store()
        with self._lock:
            generation = self._generation
        names = await self._call_store(
            f"permissions for user {user_id}",
            lambda: store.fetch_user_permission_names(user_id),
        )
        if not isinstance(names, (list, tuple, set, frozenset)) or not all(isinstance(name, str) for name in names):
            logger.warning(f"Permission store returned unexpected permissions for user {user_id}: {names!r}")
            raise StoreUnavailable(f"Permission store returned an unexpected shape for user {user_id}")

        permissions = tuple(dict.fromkeys(names))
        entry = UserPermissionSet(
            permissions=permissions,
            expires_at=self.clock() + self.settings.user_cache_ttl_seconds,
        )
        with self._lock:
            stored = generation == self._generation
            if stored:
                self._users[user_id] = entry

        if not stored:
            logger.debug(f"Permissions for user {user_id} were invalidated during the fetch; not cached")
        logger.debug(f"Loaded {len(permissions)} permissions for user {user_id}")
        return list(permissions)

    async def get_hierarchy(self) -> Hierarchy:
        """Return the permission hierarchy, rebuilding it from the store when expired."""
        with self._lock:
            cached = self._hierarchy
        if cached is not None and cached.expires_at > self.clock():
            return cached.nodes

        store = self._require_store()
        with self._lock:
            generation = self._generation
        rows = await self._call_store("permission hierarchy", store.fetch_hierarchy)
        if not isinstance(rows, (list, tuple)):
            logger.warning(f"Permission store returned an unexpected hierarchy: {rows!r}")
            raise StoreUnavailable("Permission store returned an unexpected hierarchy")
        hierarchy = build_hierarchy(self._coerce_row(row) for row in rows)

        for cycle in find_cycles(hierarchy):
            logger.warning(f"Permission hierarchy contains a cycle: {' -> '.join(cycle)}")

        snapshot = HierarchySnapshot(
            nodes=hierarchy,
            expires_at=self.clock() + self.settings.hierarchy_cache_ttl_seconds,
        )
        with self._lock:
            if generation == self._generation:
                self._hierarchy = snapshot

        logger.debug(f"Loaded permission hierarchy with {len(hierarchy)} permissions")
        return hierarchy

    def invalidate_user(self, user_id: Any) -> None:
        """Drop a user's cached permissions. Call after their roles change."""
        with self._lock:
            self._users.pop(user_id, None)
            self._generation += 1
        logger.debug(f"Permission cache invalidated for user {user_id}")

    def invalidate_all(self) -> None:
        """Drop every cached entry. Call after role permissions or the hierarchy change."""
        with self._lock:
            self._users.clear()
            self._hierarchy = None
            self._generation += 1
        logger.debug("All permission caches invalidated")

    def evict_expired(self) -> int:
        """Remove expired entries and return how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [user_id for user_id, entry in self._users.items() if entry.expires_at <= now]
            for user_id in expired:
                del self._users[user_id]
            removed = len(expired)
            if self._hierarchy is not None and self._hierarchy.expires_at <= now:
                self._hierarchy = None
                removed += 1
        return removed

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                user_entries=len(self._users),
                hierarchy_size=len(self._hierarchy.nodes) if self._hierarchy else 0,
                hierarchy_expires_at=self._hierarchy.expires_at if self._hierarchy else None,
            )

    def start_eviction_sweep(self) -> "asyncio.Task[None]":
        """Start the periodic eviction sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep(), name="permission-cache-sweep")
        return self._sweep_task

    async def stop_eviction_sweep(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _sweep(self) -> None:
        interval = self.settings.eviction_interval_seconds
        while True:
            await asyncio.sleep(interval)
            removed = self.evict_expired()
            if removed:
                logger.debug(f"Evicted {removed} expired permission cache entries")

    def _require_store(self) -> PermissionStore:
        if self.store is None:
            raise StoreUnavailable("Permission store not configured")
        return self.store

    async def _call_store(self, what: str, call: Callable[[], Awaitable[T]]) -> T:
        return await call_store(what, call, self.settings.store_timeout_seconds)

    @staticmethod
    def _coerce_row(row: Any) -> PermissionRow:
        if isinstance(row, PermissionRow):
            return row
        if isinstance(row, Mapping) and isinstance(row.get("name"), str):
            return PermissionRow(
                name=row["name"],
                category=row.get("category"),
                parent_name=row.get("parent_name"),
            )
        logger.warning(f"Permission store returned an unexpected hierarchy row: {row!r}")
        raise StoreUnavailable("Permission store returned an unexpected hierarchy row")


async def call_store(what: str, call: Callable[[], Awaitable[T]], timeout: float | None = None) -> T:
    """Await a collaborator call, turning every failure into ``StoreUnavailable``.

    Args:
        what: Description of the data being loaded, for logs and error messages.
        call: Zero-argument callable returning the awaitable store call.
        timeout: Seconds to wait before raising ``StoreTimeout``; None waits indefinitely.
    """
    try:
        if timeout is None:
            return await call()
        async with asyncio.timeout(timeout):
            return await call()
    except TimeoutError as exc:
        logger.error(f"Permission store timed out loading {what}")
        raise StoreTimeout(f"Permission store timed out loading {what}") from exc
    except StoreUnavailable:
        raise
    except Exception as exc:
        logger.error(f"Permission store failed loading {what}: {exc}")
        raise StoreUnavailable(f"Permission store failed loading {what}") from exc
