import asyncio
from typing import Any

import pytest
from conftest import HIERARCHY_ROWS, ROLE_PERMISSIONS, USER_ROLES, CountingStore, FakeClock

from fastapi_permguard import PermissionCache, PermissionRow, PermissionSettings, StoreTimeout, StoreUnavailable


class BrokenStore:
    async def fetch_user_permission_names(self, user_id: Any) -> list[str]:
        raise ConnectionError("database is down")

    async def fetch_hierarchy(self) -> list[PermissionRow]:
        raise ConnectionError("database is down")


class SlowStore:
    async def fetch_user_permission_names(self, user_id: Any) -> list[str]:
        await asyncio.sleep(1)
        return ["users.read"]

    async def fetch_hierarchy(self) -> list[PermissionRow]:
        await asyncio.sleep(1)
        return []


class StaticStore:
    def __init__(self, names: Any = None, rows: Any = None) -> None:
        self.names = names
        self.rows = rows

    async def fetch_user_permission_names(self, user_id: Any) -> Any:
        return self.names

    async def fetch_hierarchy(self) -> Any:
        return self.rows


class YieldingStore(CountingStore):
    """Counting store that hands control back to the loop mid-fetch."""

    async def fetch_user_permission_names(self, user_id: Any) -> list[str]:
        await asyncio.sleep(0)
        return await super().fetch_user_permission_names(user_id)


class GatedStore:
    """Each fetch blocks on its own gate and then returns the next answer."""

    def __init__(self, answers: list[list[str]]) -> None:
        self.answers = answers
        self.gates: list[asyncio.Event] = []

    async def _wait(self) -> int:
        index = len(self.gates)
        gate = asyncio.Event()
        self.gates.append(gate)
        await gate.wait()
        return index

    async def fetch_user_permission_names(self, user_id: Any) -> list[str]:
        return self.answers[await self._wait()]

    async def fetch_hierarchy(self) -> list[PermissionRow]:
        await self._wait()
        return [PermissionRow("reports.export", "reports")]

    async def started(self, count: int) -> None:
        while len(self.gates) < count:
            await asyncio.sleep(0)


class TestUserPermissions:
    @pytest.mark.anyio
    async def test_second_read_within_ttl_hits_cache(self, cache: PermissionCache, store: CountingStore) -> None:
        first = await cache.get_user_permissions(42)
        second = await cache.get_user_permissions(42)

        assert first == second == ["feedback.read", "users.*", "users.read"]
        assert store.permission_fetches == [42]

    @pytest.mark.anyio
    async def test_expired_entry_is_refetched(
        self, cache: PermissionCache, store: CountingStore, clock: FakeClock
    ) -> None:
        await cache.get_user_permissions(42)
        clock.advance(299)
        await cache.get_user_permissions(42)
        assert store.permission_fetches == [42]

        clock.advance(1)
        await cache.get_user_permissions(42)
        assert store.permission_fetches == [42, 42]

    @pytest.mark.anyio
    async def test_configured_ttl(self, store: CountingStore, clock: FakeClock) -> None:
        cache = PermissionCache(store, PermissionSettings(user_cache_ttl_seconds=10), clock=clock)
        await cache.get_user_permissions(42)
        clock.advance(10)
        await cache.get_user_permissions(42)
        assert store.permission_fetches == [42, 42]

    @pytest.mark.anyio
    async def test_bypass_cache(self, cache: PermissionCache, store: CountingStore) -> None:
        await cache.get_user_permissions(42)
        await cache.get_user_permissions(42, use_cache=False)
        assert store.permission_fetches == [42, 42]

    @pytest.mark.anyio
    async def test_invalidate_user_forces_refetch(self, cache: PermissionCache, store: CountingStore) -> None:
        await cache.get_user_permissions(42)
        await cache.get_user_permissions(10)
        cache.invalidate_user(42)

        await cache.get_user_permissions(42)
        await cache.get_user_permissions(10)
        assert store.permission_fetches == [42, 10, 42]

    @pytest.mark.anyio
    async def test_invalidate_unknown_user_is_noop(self, cache: PermissionCache) -> None:
        cache.invalidate_user(12345)
        assert cache.stats().user_entries == 0

    @pytest.mark.anyio
    async def test_reassignment_visible_after_invalidation(self, cache: PermissionCache, store: CountingStore) -> None:
        assert await cache.get_user_permissions(99) == []

        store.user_roles[99] = ["exporter"]
        assert await cache.get_user_permissions(99) == []

        cache.invalidate_user(99)
        assert await cache.get_user_permissions(99) == ["reports.export"]

    @pytest.mark.anyio
    async def test_duplicates_removed_in_order(self, clock: FakeClock) -> None:
        cache = PermissionCache(StaticStore(names=["b.read", "a.read", "b.read"]), clock=clock)
        assert await cache.get_user_permissions(1) == ["b.read", "a.read"]


class TestHierarchy:
    @pytest.mark.anyio
    async def test_hierarchy_is_cached(self, cache: PermissionCache, store: CountingStore) -> None:
        first = await cache.get_hierarchy()
        second = await cache.get_hierarchy()

        assert first is second
        assert store.hierarchy_fetches == 1
        assert first["reports.export"].children == ["reports.export.pdf"]

    @pytest.mark.anyio
    async def test_hierarchy_ttl(self, cache: PermissionCache, store: CountingStore, clock: FakeClock) -> None:
        await cache.get_hierarchy()
        clock.advance(599)
        await cache.get_hierarchy()
        assert store.hierarchy_fetches == 1

        clock.advance(1)
        await cache.get_hierarchy()
        assert store.hierarchy_fetches == 2

    @pytest.mark.anyio
    async def test_invalidate_all_drops_users_and_hierarchy(
        self, cache: PermissionCache, store: CountingStore
    ) -> None:
        await cache.get_user_permissions(42)
        await cache.get_hierarchy()
        cache.invalidate_all()

        await cache.get_user_permissions(42)
        await cache.get_hierarchy()
        assert store.permission_fetches == [42, 42]
        assert store.hierarchy_fetches == 2

    @pytest.mark.anyio
    async def test_mapping_rows_are_accepted(self, clock: FakeClock) -> None:
        rows = [
            {"name": "users.manage", "category": "users", "parent_name": None},
            {"name": "users.read", "category": "users", "parent_name": "users.manage"},
        ]
        cache = PermissionCache(StaticStore(rows=rows), clock=clock)
        hierarchy = await cache.get_hierarchy()
        assert hierarchy["users.manage"].children == ["users.read"]

    @pytest.mark.anyio
    async def test_cyclic_hierarchy_still_loads(self, clock: FakeClock) -> None:
        rows = [PermissionRow("a.one", "a", "a.two"), PermissionRow("a.two", "a", "a.one")]
        cache = PermissionCache(StaticStore(rows=rows), clock=clock)
        hierarchy = await cache.get_hierarchy()
        assert set(hierarchy) == {"a.one", "a.two"}


class TestStoreFailures:
    @pytest.mark.anyio
    async def test_missing_store(self) -> None:
        cache = PermissionCache(None)
        with pytest.raises(StoreUnavailable):
            await cache.get_user_permissions(1)
        with pytest.raises(StoreUnavailable):
            await cache.get_hierarchy()

    @pytest.mark.anyio
    async def test_store_error_is_wrapped(self) -> None:
        cache = PermissionCache(BrokenStore())
        with pytest.raises(StoreUnavailable) as exc_info:
            await cache.get_user_permissions(1)
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.anyio
    async def test_failed_fetch_is_not_cached(self, clock: FakeClock) -> None:
        store = StaticStore(names=None)
        cache = PermissionCache(store, clock=clock)
        with pytest.raises(StoreUnavailable):
            await cache.get_user_permissions(1)

        store.names = ["users.read"]
        assert await cache.get_user_permissions(1) == ["users.read"]

    @pytest.mark.anyio
    @pytest.mark.parametrize("names", [None, "users.read", ["users.read", 7], {"users.read": True}])
    async def test_unexpected_permission_shape(self, names: Any) -> None:
        cache = PermissionCache(StaticStore(names=names))
        with pytest.raises(StoreUnavailable):
            await cache.get_user_permissions(1)

    @pytest.mark.anyio
    @pytest.mark.parametrize("rows", [None, "rows", [{"category": "users"}], [42]])
    async def test_unexpected_hierarchy_shape(self, rows: Any) -> None:
        cache = PermissionCache(StaticStore(rows=rows))
        with pytest.raises(StoreUnavailable):
            await cache.get_hierarchy()

    @pytest.mark.anyio
    async def test_timeout(self) -> None:
        cache = PermissionCache(SlowStore(), PermissionSettings(store_timeout_seconds=0.01))
        with pytest.raises(StoreTimeout):
            await cache.get_user_permissions(1)
        with pytest.raises(StoreUnavailable):
            await cache.get_hierarchy()


class TestEviction:
    @pytest.mark.anyio
    async def test_evict_expired(self, cache: PermissionCache, clock: FakeClock) -> None:
        await cache.get_user_permissions(42)
        await cache.get_hierarchy()
        clock.advance(400)
        await cache.get_user_permissions(10)

        assert cache.evict_expired() == 1
        assert cache.stats().user_entries == 1

        clock.advance(300)
        assert cache.evict_expired() == 2
        assert cache.stats().user_entries == 0
        assert cache.stats().hierarchy_size == 0

    @pytest.mark.anyio
    async def test_stats(self, cache: PermissionCache, clock: FakeClock) -> None:
        assert cache.stats().hierarchy_expires_at is None

        await cache.get_user_permissions(42)
        await cache.get_hierarchy()
        stats = cache.stats()

        assert stats.user_entries == 1
        assert stats.hierarchy_size == 5
        assert stats.hierarchy_expires_at == clock.now + 600

    @pytest.mark.anyio
    async def test_sweep_removes_expired_entries(self, store: CountingStore, clock: FakeClock) -> None:
        cache = PermissionCache(store, PermissionSettings(eviction_interval_seconds=0.01), clock=clock)
        await cache.get_user_permissions(42)

        task = cache.start_eviction_sweep()
        assert cache.start_eviction_sweep() is task

        clock.advance(301)
        for _ in range(50):
            await asyncio.sleep(0.01)
            if cache.stats().user_entries == 0:
                break

        assert cache.stats().user_entries == 0
        await cache.stop_eviction_sweep()
        assert task.cancelled()

    @pytest.mark.anyio
    async def test_stop_without_start(self, cache: PermissionCache) -> None:
        await cache.stop_eviction_sweep()


class TestReturnedPermissions:
    @pytest.mark.anyio
    async def test_mutating_loaded_list_leaves_cache_intact(self, cache: PermissionCache) -> None:
        loaded = await cache.get_user_permissions(10)
        loaded.append("system.admin")

        assert "system.admin" not in await cache.get_user_permissions(10)

    @pytest.mark.anyio
    async def test_mutating_cached_list_leaves_cache_intact(self, cache: PermissionCache) -> None:
        await cache.get_user_permissions(10)
        cached = await cache.get_user_permissions(10)
        cached.clear()

        assert await cache.get_user_permissions(10) == ["feedback.create", "feedback.read.own", "users.update.own"]


class TestConcurrentFetches:
    @pytest.mark.anyio
    async def test_concurrent_misses_both_fetch(self, clock: FakeClock) -> None:
        store = YieldingStore(ROLE_PERMISSIONS, USER_ROLES, HIERARCHY_ROWS)
        cache = PermissionCache(store, clock=clock)

        first, second = await asyncio.gather(cache.get_user_permissions(42), cache.get_user_permissions(42))

        assert first == second == ["feedback.read", "users.*", "users.read"]
        assert store.permission_fetches == [42, 42]
        assert cache.stats().user_entries == 1
        assert await cache.get_user_permissions(42) == first
        assert store.permission_fetches == [42, 42]

    @pytest.mark.anyio
    async def test_later_write_wins(self, clock: FakeClock) -> None:
        store = GatedStore([["reports.read"], ["reports.read", "reports.export"]])
        cache = PermissionCache(store, clock=clock)

        first = asyncio.create_task(cache.get_user_permissions(7))
        second = asyncio.create_task(cache.get_user_permissions(7))
        await store.started(2)

        store.gates[1].set()
        assert await second == ["reports.read", "reports.export"]
        store.gates[0].set()
        assert await first == ["reports.read"]

        assert await cache.get_user_permissions(7) == ["reports.read"]
        assert len(store.gates) == 2

    @pytest.mark.anyio
    async def test_invalidation_during_fetch_is_not_overwritten(self, clock: FakeClock) -> None:
        store = GatedStore([["reports.read"], ["reports.export"]])
        cache = PermissionCache(store, clock=clock)

        stale = asyncio.create_task(cache.get_user_permissions(7))
        await store.started(1)
        cache.invalidate_user(7)
        store.gates[0].set()

        assert await stale == ["reports.read"]
        assert cache.stats().user_entries == 0

        fresh = asyncio.create_task(cache.get_user_permissions(7))
        await store.started(2)
        store.gates[1].set()

        assert await fresh == ["reports.export"]
        assert len(store.gates) == 2
        assert cache.stats().user_entries == 1

    @pytest.mark.anyio
    async def test_invalidate_all_during_hierarchy_fetch(self, clock: FakeClock) -> None:
        store = GatedStore([])
        cache = PermissionCache(store, clock=clock)

        loading = asyncio.create_task(cache.get_hierarchy())
        await store.started(1)
        cache.invalidate_all()
        store.gates[0].set()

        assert set(await loading) == {"reports.export"}
        assert cache.stats().hierarchy_size == 0
