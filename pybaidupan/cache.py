"""Response cache for the BaiduPan storage client.

:class:`CoalescingCache` keeps results for a fixed TTL and makes concurrent
requests for the same key share a single computation. :class:`CachedRemoteStore`
puts it in front of a :class:`~pybaidupan.cloud.RemoteStore`: reads are cached
under keys made of the path and the operation, and every mutation drops the
keys of the paths it touched by prefix.

Cache keys:
- ``<path>$list`` for directory listings
- ``<path>$info`` for item information
- ``<path>$search?<key>[&recursion]`` for searches, when enabled
- ``quota`` for the quota
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from functools import partial
from typing import Any, Generic, TypeVar

from cachetools import TTLCache

from .cloud import ByteRange, RemoteStore, UploadData, find_item
from .models import FileInformation, Quota
from .paths import join_path, split_path

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CACHE_TTL = 60.0
DEFAULT_CACHE_SIZE = 1024

QUOTA_KEY = "quota"


def list_key(path: str) -> str:
    return f"{path}$list"


def info_key(path: str) -> str:
    return f"{path}$info"


def search_key(path: str, key: str, recursive: bool) -> str:
    return f"{path}$search?{key}{'&recursion' if recursive else ''}"


class CoalescingCache(Generic[T]):
    """TTL cache with single-flight lookups and prefix invalidation.

    Resolved values live in a :class:`cachetools.TTLCache`. Computations that
    are still running are kept apart until they resolve, so that every caller
    arriving meanwhile waits on the same one. A cache instance is bound to the
    event loop it is used on.

    Example:
        >>> cache: CoalescingCache[list[str]] = CoalescingCache(ttl=30)
        >>> names = await cache.get("/docs$list", fetch_names)
        >>> cache.invalidate("/docs$")

    Attributes:
        ttl: Seconds a resolved entry stays fresh.
    """

    def __init__(
        self,
        ttl: float,
        *,
        maxsize: int = DEFAULT_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl: Seconds a resolved entry stays fresh. Must be positive.
            maxsize: Number of resolved entries kept before the least recently
                used one is dropped.
            clock: Monotonic time source, in seconds.
        """
        if ttl <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl}")
        self.ttl = ttl
        self._values: TTLCache[str, T] = TTLCache(maxsize, ttl=ttl, timer=clock)
        self._pending: dict[str, asyncio.Future[T]] = {}

    def _on_done(self, key: str, task: asyncio.Future[T]) -> None:
        # An invalidated computation is never published
        if self._pending.get(key) is not task:
            return
        del self._pending[key]
        if task.cancelled() or task.exception() is not None:
            logger.debug("Cache computation failed, evicted: %s", key)
            return
        self._values[key] = task.result()

    async def get(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value for ``key``, computing it on a miss.

        Callers arriving while a computation is pending share its result. A
        failed computation is not cached; its exception is raised to every
        waiter and the next call starts afresh.

        Args:
            key: The cache key.
            compute: Produces the value on a miss.
        """
        try:
            value = self._values[key]
        except KeyError:
            pass
        else:
            logger.debug("Cache hit: %s", key)
            return value

        task = self._pending.get(key)
        if task is None:
            # No await between the lookup and the insert
            task = asyncio.ensure_future(compute())
            self._pending[key] = task
            task.add_done_callback(partial(self._on_done, key))
            logger.debug("Cache miss: %s", key)
        else:
            logger.debug("Cache hit on pending computation: %s", key)

        # A cancelled waiter leaves the shared computation running
        return await asyncio.shield(task)

    def invalidate(self, *prefixes: str) -> None:
        """Remove every entry whose key starts with one of ``prefixes``.

        Keys are compared case-insensitively. Pending computations matching a
        prefix still complete for their waiters but are not stored.
        """
        folded = tuple(prefix.lower() for prefix in prefixes)
        if not folded:
            return
        self._values.expire()
        stale = 0
        for entries in (self._values, self._pending):
            for key in [key for key in entries if key.lower().startswith(folded)]:
                del entries[key]
                stale += 1
        if stale:
            logger.debug("Invalidated %d cache entries for %s", stale, prefixes)

    def reset(self) -> None:
        """Remove all entries."""
        self._values.clear()
        self._pending.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._values or key in self._pending

    def __len__(self) -> int:
        self._values.expire()
        return len(self._values) + len(self._pending)


class CachedRemoteStore:
    """A :class:`RemoteStore` that caches the reads of another one.

    Listings, item information and the quota are cached. Search results are
    cached only when ``cache_search`` is set, since they change independently
    of the mutations made through this store. Mutations invalidate the
    affected entries once the wrapped call returns or fails.

    Attributes:
        store: The wrapped store.
        cache: The cache holding the results.
        cache_search: Whether search results are cached.
    """

    def __init__(
        self,
        store: RemoteStore,
        ttl: float = DEFAULT_CACHE_TTL,
        *,
        cache_search: bool = False,
        maxsize: int = DEFAULT_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.cache: CoalescingCache[Any] = CoalescingCache(
            ttl, maxsize=maxsize, clock=clock
        )
        self.cache_search = cache_search

    def clear_cache(self, path: str | None = None) -> None:
        """Clear all entries, or only those of ``path``."""
        if path is None:
            self.cache.reset()
        else:
            self.cache.invalidate(f"{path}$")

    async def get_quota(self) -> Quota:
        return await self.cache.get(QUOTA_KEY, self.store.get_quota)

    async def list_directory(self, path: str) -> list[FileInformation]:
        return await self.cache.get(list_key(path), partial(self.store.list_directory, path))

    async def get_item_information(self, path: str) -> FileInformation:
        """Get information about an item through the cached parent listing."""

        async def compute() -> FileInformation:
            parent, _ = split_path(path)
            return find_item(await self.list_directory(parent), path)

        return await self.cache.get(info_key(path), compute)

    async def search(
        self, path: str, key: str, recursive: bool = False
    ) -> list[FileInformation]:
        if not self.cache_search:
            return await self.store.search(path, key, recursive)
        return await self.cache.get(
            search_key(path, key, recursive),
            partial(self.store.search, path, key, recursive),
        )

    async def delete_item(self, path: str) -> None:
        try:
            await self.store.delete_item(path)
        finally:
            parent, _ = split_path(path)
            self.cache.invalidate(f"{parent}$", f"{path}/", f"{path}$")

    async def copy_item(self, path: str, dest: str, new_name: str) -> None:
        try:
            await self.store.copy_item(path, dest, new_name)
        finally:
            self._invalidate_transfer(path, dest, new_name)

    async def move_item(self, path: str, dest: str, new_name: str) -> None:
        try:
            await self.store.move_item(path, dest, new_name)
        finally:
            self._invalidate_transfer(path, dest, new_name)

    async def rename_item(self, path: str, new_name: str) -> None:
        try:
            await self.store.rename_item(path, new_name)
        finally:
            parent, _ = split_path(path)
            new_path = join_path(parent, new_name)
            self.cache.invalidate(
                f"{parent}$", f"{path}/", f"{path}$", f"{new_path}$", f"{new_path}/"
            )

    def _invalidate_transfer(self, path: str, dest: str, new_name: str) -> None:
        parent, _ = split_path(path)
        new_path = join_path(dest, new_name)
        self.cache.invalidate(
            f"{parent}$",
            f"{path}/",
            f"{path}$",
            f"{dest}$",
            f"{new_path}$",
            f"{new_path}/",
        )

    async def create_directory(self, path: str) -> None:
        try:
            await self.store.create_directory(path)
        finally:
            parent, _ = split_path(path)
            self.cache.invalidate(f"{parent}$", f"{path}/", f"{path}$")

    def download_file(
        self, path: str, byte_range: ByteRange | None = None
    ) -> AsyncIterator[bytes]:
        return self.store.download_file(path, byte_range)

    async def upload_file(
        self, path: str, data: UploadData, overwrite: bool = False
    ) -> None:
        try:
            await self.store.upload_file(path, data, overwrite)
        finally:
            self._invalidate_file(path)

    async def upload_file_slice(self, data: UploadData) -> str:
        return await self.store.upload_file_slice(data)

    async def concat_file_slices(
        self, path: str, slices: Sequence[str], overwrite: bool = False
    ) -> None:
        try:
            await self.store.concat_file_slices(path, slices, overwrite)
        finally:
            self._invalidate_file(path)

    def _invalidate_file(self, path: str) -> None:
        parent, _ = split_path(path)
        self.cache.invalidate(f"{parent}$", f"{path}$")
