"""Tests for the response cache."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from datetime import UTC, datetime

import pytest

from pybaidupan import (
    CachedRemoteStore,
    CoalescingCache,
    FileInformation,
    NotFoundError,
    Quota,
    RemoteError,
    RemoteStore,
)
from pybaidupan.cache import info_key, list_key, search_key
from pybaidupan.cloud import ByteRange, UploadData


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def make_item(name: str, is_directory: bool = False) -> FileInformation:
    moment = datetime(2020, 1, 1, tzinfo=UTC)
    return FileInformation(
        name=name,
        is_directory=is_directory,
        date_created=moment,
        date_modified=moment,
    )


class FakeStore:
    """In-memory RemoteStore recording the calls it receives."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.listings: dict[str, list[FileInformation]] = {
            "/": [make_item("a", True), make_item("d", True)],
            "/a": [make_item("b", True), make_item("bc", True), make_item("x")],
            "/a/b": [make_item("inner")],
            "/a/bc": [],
            "/d": [],
        }
        self.fail_with: Exception | None = None

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def _call(self, operation: str, *args: object) -> None:
        self.calls.append((operation, args))
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with

    async def list_directory(self, path: str) -> list[FileInformation]:
        await self._call("list_directory", path)
        if path not in self.listings:
            raise RemoteError(-9)
        return list(self.listings[path])

    async def get_item_information(self, path: str) -> FileInformation:
        raise AssertionError("the cached store resolves items through listings")

    async def search(
        self, path: str, key: str, recursive: bool = False
    ) -> list[FileInformation]:
        await self._call("search", path, key, recursive)
        return [item for item in self.listings.get(path, []) if key in item.name]

    async def delete_item(self, path: str) -> None:
        await self._call("delete_item", path)

    async def copy_item(self, path: str, dest: str, new_name: str) -> None:
        await self._call("copy_item", path, dest, new_name)

    async def move_item(self, path: str, dest: str, new_name: str) -> None:
        await self._call("move_item", path, dest, new_name)

    async def rename_item(self, path: str, new_name: str) -> None:
        await self._call("rename_item", path, new_name)

    async def create_directory(self, path: str) -> None:
        await self._call("create_directory", path)

    async def download_file(
        self, path: str, byte_range: ByteRange | None = None
    ) -> AsyncIterator[bytes]:
        self.calls.append(("download_file", (path, byte_range)))
        yield b"chunk-1"
        yield b"chunk-2"

    async def upload_file(
        self, path: str, data: UploadData, overwrite: bool = False
    ) -> None:
        await self._call("upload_file", path, overwrite)

    async def upload_file_slice(self, data: UploadData) -> str:
        await self._call("upload_file_slice")
        return "0cc175b9c0f1b6a831c399e269772661"

    async def concat_file_slices(
        self, path: str, slices: Sequence[str], overwrite: bool = False
    ) -> None:
        await self._call("concat_file_slices", path, tuple(slices), overwrite)

    async def get_quota(self) -> Quota:
        await self._call("get_quota")
        return Quota(total_space=100, used_space=40)


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock starting at zero."""
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> CoalescingCache[str]:
    """Create a cache with a 10 second TTL."""
    return CoalescingCache(10.0, clock=clock)


@pytest.fixture
def fake_store() -> FakeStore:
    """Create an in-memory store."""
    return FakeStore()


@pytest.fixture
def store(fake_store: FakeStore, clock: FakeClock) -> CachedRemoteStore:
    """Create a cached store over the in-memory store."""
    return CachedRemoteStore(fake_store, 10.0, clock=clock)


class TestCacheKeys:
    """Tests for the cache key scheme."""

    def test_list_key(self) -> None:
        assert list_key("/a/b") == "/a/b$list"

    def test_info_key(self) -> None:
        assert info_key("/a/b") == "/a/b$info"

    def test_search_key(self) -> None:
        """Test that recursive and flat searches use different keys."""
        assert search_key("/a", "jpg", False) == "/a$search?jpg"
        assert search_key("/a", "jpg", True) == "/a$search?jpg&recursion"


class TestCoalescingCacheInit:
    """Tests for CoalescingCache initialization."""

    @pytest.mark.parametrize("ttl", [0, -1.5])
    def test_rejects_non_positive_ttl(self, ttl: float) -> None:
        """Test that the TTL must be positive."""
        with pytest.raises(ValueError, match="positive"):
            CoalescingCache(ttl)

    def test_starts_empty(self, cache: CoalescingCache[str]) -> None:
        assert len(cache) == 0
        assert "anything" not in cache


@pytest.mark.asyncio
class TestCoalescingCache:
    """Tests for lookups, expiry and invalidation."""

    async def test_single_flight(self, cache: CoalescingCache[str]) -> None:
        """Test that concurrent misses share one computation."""
        calls = 0
        release = asyncio.Event()

        async def compute() -> str:
            nonlocal calls
            calls += 1
            await release.wait()
            return "value"

        waiters = [asyncio.create_task(cache.get("k", compute)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()

        assert await asyncio.gather(*waiters) == ["value"] * 5
        assert calls == 1

    async def test_hit_within_ttl(
        self, cache: CoalescingCache[str], clock: FakeClock
    ) -> None:
        """Test that a resolved value is reused until it expires."""
        calls = 0

        async def compute() -> str:
            nonlocal calls
            calls += 1
            return f"value-{calls}"

        assert await cache.get("k", compute) == "value-1"
        clock.now = 9.9
        assert await cache.get("k", compute) == "value-1"
        assert calls == 1

    async def test_expired_after_ttl(
        self, cache: CoalescingCache[str], clock: FakeClock
    ) -> None:
        """Test that an entry older than the TTL is recomputed."""
        calls = 0

        async def compute() -> str:
            nonlocal calls
            calls += 1
            return f"value-{calls}"

        await cache.get("k", compute)
        clock.now = 10.0

        assert "k" not in cache
        assert await cache.get("k", compute) == "value-2"

    async def test_ttl_counts_from_resolution(
        self, cache: CoalescingCache[str], clock: FakeClock
    ) -> None:
        """Test that the TTL starts when the computation resolves."""
        release = asyncio.Event()

        async def slow() -> str:
            await release.wait()
            return "slow"

        waiter = asyncio.create_task(cache.get("k", slow))
        await asyncio.sleep(0)
        clock.now = 50.0
        release.set()
        await waiter

        clock.now = 59.0
        assert "k" in cache

    async def test_failure_not_cached(self, cache: CoalescingCache[str]) -> None:
        """Test that a failed computation is evicted and retried."""
        attempts = 0

        async def flaky() -> str:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RemoteError(-6)
            return "ok"

        with pytest.raises(RemoteError):
            await cache.get("k", flaky)
        assert "k" not in cache

        assert await cache.get("k", flaky) == "ok"
        assert attempts == 2

    async def test_failure_reaches_every_waiter(self, cache: CoalescingCache[str]) -> None:
        """Test that all waiters of a failed computation see the error."""
        release = asyncio.Event()

        async def failing() -> str:
            await release.wait()
            raise RemoteError(-6)

        waiters = [asyncio.create_task(cache.get("k", failing)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(result, RemoteError) for result in results)
        assert len(cache) == 0

    async def test_cancelled_waiter_keeps_computation(
        self, cache: CoalescingCache[str]
    ) -> None:
        """Test that cancelling one waiter does not cancel the others."""
        release = asyncio.Event()

        async def compute() -> str:
            await release.wait()
            return "value"

        first = asyncio.create_task(cache.get("k", compute))
        second = asyncio.create_task(cache.get("k", compute))
        await asyncio.sleep(0)

        first.cancel()
        release.set()

        assert await second == "value"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert "k" in cache

    async def test_invalidate_by_prefix(self, cache: CoalescingCache[str]) -> None:
        """Test that only keys starting with a prefix are removed."""

        async def compute() -> str:
            return "value"

        for key in ("/a$list", "/a$info", "/a/b$list", "/ab$list", "/d$list"):
            await cache.get(key, compute)

        cache.invalidate("/a$", "/a/")

        assert "/a$list" not in cache
        assert "/a$info" not in cache
        assert "/a/b$list" not in cache
        assert "/ab$list" in cache
        assert "/d$list" in cache
        assert len(cache) == 2

    async def test_invalidate_ignores_case(self, cache: CoalescingCache[str]) -> None:
        """Test that prefixes are compared case-insensitively."""

        async def compute() -> str:
            return "value"

        await cache.get("/Docs$list", compute)
        cache.invalidate("/docs$")

        assert "/Docs$list" not in cache

    async def test_invalidate_pending_not_published(
        self, cache: CoalescingCache[str]
    ) -> None:
        """Test that a computation invalidated while pending is not stored."""
        release = asyncio.Event()
        calls = 0

        async def compute() -> str:
            nonlocal calls
            calls += 1
            await release.wait()
            return f"value-{calls}"

        waiter = asyncio.create_task(cache.get("/a$list", compute))
        await asyncio.sleep(0)
        cache.invalidate("/a$")
        release.set()

        assert await waiter == "value-1"
        assert "/a$list" not in cache
        assert await cache.get("/a$list", compute) == "value-2"

    async def test_reset(self, cache: CoalescingCache[str]) -> None:
        """Test that reset removes every entry."""

        async def compute() -> str:
            return "value"

        await cache.get("a", compute)
        await cache.get("b", compute)
        cache.reset()

        assert len(cache) == 0

    async def test_maxsize_drops_least_recently_used(self, clock: FakeClock) -> None:
        """Test that resolved entries beyond maxsize are dropped."""
        cache: CoalescingCache[str] = CoalescingCache(10.0, maxsize=2, clock=clock)

        async def compute() -> str:
            return "value"

        await cache.get("a", compute)
        await cache.get("b", compute)
        await cache.get("a", compute)
        await cache.get("c", compute)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2

    async def test_pending_entry_counted(self, cache: CoalescingCache[str]) -> None:
        """Test that a running computation is visible until it resolves."""
        release = asyncio.Event()

        async def compute() -> str:
            await release.wait()
            return "value"

        waiter = asyncio.create_task(cache.get("k", compute))
        await asyncio.sleep(0)

        assert "k" in cache
        assert len(cache) == 1

        release.set()
        await waiter

        assert "k" in cache
        assert len(cache) == 1


class TestCachedRemoteStoreInit:
    """Tests for CachedRemoteStore initialization."""

    def test_implements_remote_store(self, store: CachedRemoteStore) -> None:
        assert isinstance(store, RemoteStore)

    def test_search_uncached_by_default(self, store: CachedRemoteStore) -> None:
        assert not store.cache_search


@pytest.mark.asyncio
class TestCachedReads:
    """Tests for the cached read operations."""

    async def test_list_directory_cached(
        self, store: CachedRemoteStore, fake_store: FakeStore
    ) -> None:
        """Test that repeated listings hit the cache."""
        first = await store.list_directory("/a")
        second = await store.list_directory("/a")

        assert first == second
        assert fake_store.count("list_directory") == 1

    async def test_concurrent_listings_coalesce(
        self, store: CachedRemoteStore, fake_store: FakeStore
    ) -> None:
        """Test that concurrent listings of one directory make one call."""
        results = await asyncio.gather(*(store.list_directory("/a") for _ in range(4)))

        assert all(result == results[0] for result in results)
        assert fake_store.count("list_directory") == 1

    async def test_list_directory_expires(
        self, store: CachedRemoteStore, fake_store: FakeStore, clock: FakeClock
    ) -> None:
        """Test that listings are refetched after the TTL."""
        await store.list_directory("/a")
        clock.now = 11.0
        await store.list_directory("/a")

        assert fake_store.count("list_directory") == 2

    async def test_list_directory_error_not_cached(
        self, store: CachedRemoteStore, fake_store: FakeStore
    ) -> None:
        """Test that a failed listing is retried on the next call."""
        with pytest.raises(RemoteError):
            await store.list_directory("/missing")
        with pytest.raises(RemoteError):
            await store.list_directory("/missing")

        assert fake_store.count("list_directory") == 2

    async def test_item_information_uses_listing(
        self, store: CachedRemoteStore, fake_store: FakeStore
    ) -> None:
        """Test that item lookups reuse the cached parent listing."""
        await store.list_directory("/a")

        item = await store.get_item_information("/a/X")

        assert item.name == "x"
        assert fake_store.count("list_directory") == 1
        assert info_key("/a/X") in store.cache

    async def test_item_information_not_found(
        self, store: CachedRemoteStore
    ) -> None:
        """Test that a missing item is not cached."""
        with pytest.raises(NotFoundError):
            await store.get_item_information("/a/missing")

        assert info_key("/a/missing") not in store.cache
        assert list_key("/a") in store.cache

    async def test_quota_cached(
        self, store: CachedRemoteStore, fake_store: FakeStore
    ) -> None:
        """Test that the quota is cached."""
        quota = await store.get_quota()
        await store.get_quota()

        assert quota.free_space == 60
        assert fake_store.count("get_quota") == 1

    async def test_search_not_cached(
        self, store: CachedRemoteStore, fake_store: FakeStore
    ) -> None:
        """Test that searches go to the store by default."""
        await store.search("/a", "b")
        await store.search("/a", "b")

        assert fake_store.count("search") == 2

    async def test_search_cached_when_enabled(
        self, fake_store: FakeStore, clock: FakeClock
    ) -> None:
        """Test that cache_search caches searches per key and recursion."""
        store = CachedRemoteStore(fake_store, 10.0, cache_search=True, clock=clock)

        await store.search("/a", "b")
        await store.search("/a", "b")
        await store.search("/a", "b", recursive=True)

        assert fake_store.count("search") == 2

    async def test_download_passes_through(
        self, store: CachedRemoteStore, fake_store: FakeStore
    ) -> None:
        """Test that downloads are never cached."""
        chunks = [chunk async for chunk in store.download_file("/a/x", (0, 10))]

        assert chunks == [b"chunk-1", b"chunk-2"]
        assert fake_store.calls == [("download_file", ("/a/x", (0, 10)))]
        assert len(store.cache) == 0


@pytest.mark.asyncio
class TestInvalidation:
    """Tests for the keys each mutation invalidates."""

    async def _warm(self, store: CachedRemoteStore, *paths: str) -> None:
        for path in paths:
            await store.list_directory(path)

    async def test_rename_invalidates_parent_only(
        self, store: CachedRemoteStore, fake_store: FakeStore
    ) -> None:
        """Test that a rename refetches its directory and keeps unrelated ones."""
        await self._warm(store, "/a", "/d")

        await store.rename_item("/a/b", "c")
        await store.list_directory("/a")
        await store.list_directory("/d")

        assert fake_store.calls.count(("list_directory", ("/a",))) == 2
        assert fake_store.calls.count(("list_directory", ("/d",))) == 1

    async def test_rename_invalidates_old_and_new_subtrees(
        self, store: CachedRemoteStore
    ) -> None:
        """Test that a renamed directory's descendants are dropped."""
        await self._warm(store, "/a/b", "/a/bc")
        await store.get_item_information("/a/b/inner")

        await store.rename_item("/a/b", "bc")

        assert list_key("/a/b") not in store.cache
        assert info_key("/a/b/inner") not in store.cache
        assert list_key("/a/bc") not in store.cache

    async def test_delete_invalidates(self, store: CachedRemoteStore) -> None:
        """Test that a delete drops the item, its subtree and its parent listing."""
        await self._warm(store, "/", "/a", "/a/b", "/a/bc", "/d")
        await store.get_item_information("/a/b")

        await store.delete_item("/a/b")

        assert list_key("/a") not in store.cache
        assert list_key("/a/b") not in store.cache
        assert info_key("/a/b") not in store.cache
        assert list_key("/a/bc") in store.cache
        assert list_key("/") in store.cache
        assert list_key("/d") in store.cache

    async def test_delete_top_level(self, store: CachedRemoteStore) -> None:
        """Test that deleting a top-level item drops the root listing."""
        await self._warm(store, "/", "/d")

        await store.delete_item("/d")

        assert list_key("/") not in store.cache
        assert list_key("/d") not in store.cache

    async def test_move_invalidates_destination(self, store: CachedRemoteStore) -> None:
        """Test that a move drops both directories and the moved subtree."""
        await self._warm(store, "/", "/a", "/a/b", "/d")

        await store.move_item("/a/b", "/d", "b")

        assert list_key("/a") not in store.cache
        assert list_key("/a/b") not in store.cache
        assert list_key("/d") not in store.cache
        assert list_key("/") in store.cache

    async def test_move_invalidates_target_path(self, store: CachedRemoteStore) -> None:
        """Test that stale entries at the target path are dropped."""
        await self._warm(store, "/a", "/a/bc")

        await store.move_item("/d", "/a", "bc")

        assert list_key("/a/bc") not in store.cache
        assert list_key("/a") not in store.cache

    async def test_copy_invalidates_like_move(self, store: CachedRemoteStore) -> None:
        """Test that a copy drops the same entries as a move."""
        await self._warm(store, "/", "/a", "/a/b", "/d")

        await store.copy_item("/a/b", "/d", "b")

        assert list_key("/a") not in store.cache
        assert list_key("/a/b") not in store.cache
        assert list_key("/d") not in store.cache
        assert list_key("/") in store.cache

    async def test_create_directory_invalidates(self, store: CachedRemoteStore) -> None:
        """Test that creating a directory drops its parent listing."""
        await self._warm(store, "/a", "/d")

        await store.create_directory("/a/new")

        assert list_key("/a") not in store.cache
        assert list_key("/d") in store.cache

    async def test_upload_invalidates(self, store: CachedRemoteStore) -> None:
        """Test that uploads drop the parent listing and the file's own entries."""
        await self._warm(store, "/a", "/a/b")
        await store.get_item_information("/a/x")

        await store.upload_file("/a/x", b"data", overwrite=True)

        assert list_key("/a") not in store.cache
        assert info_key("/a/x") not in store.cache
        assert list_key("/a/b") in store.cache

    async def test_concat_invalidates(self, store: CachedRemoteStore) -> None:
        """Test that joining slices drops the parent listing."""
        await self._warm(store, "/a", "/d")

        md5 = await store.upload_file_slice(b"data")
        assert list_key("/a") in store.cache

        await store.concat_file_slices("/a/big.bin", [md5])

        assert list_key("/a") not in store.cache
        assert list_key("/d") in store.cache

    async def test_failed_mutation_still_invalidates(
        self, store: CachedRemoteStore, fake_store: FakeStore
    ) -> None:
        """Test that a failed mutation drops the entries it may have changed."""
        await self._warm(store, "/a")
        fake_store.fail_with = RemoteError(-8)

        with pytest.raises(RemoteError):
            await store.rename_item("/a/x", "y")

        assert list_key("/a") not in store.cache

    async def test_clear_cache_path(self, store: CachedRemoteStore) -> None:
        """Test that clear_cache drops the entries of one path."""
        await self._warm(store, "/a", "/a/b")

        store.clear_cache("/a")

        assert list_key("/a") not in store.cache
        assert list_key("/a/b") in store.cache

    async def test_clear_cache_all(self, store: CachedRemoteStore) -> None:
        """Test that clear_cache without a path drops everything."""
        await self._warm(store, "/a", "/d")
        await store.get_quota()

        store.clear_cache()

        assert len(store.cache) == 0
