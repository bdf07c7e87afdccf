"""High level client for BaiduPan.

:class:`BaiduPanClient` ties together the login session, the storage client
and the response cache. It is created already logged in, and released with
:meth:`BaiduPanClient.aclose` or by leaving an ``async with`` block.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from .auth import DEFAULT_TIMEOUT, AuthenticationSession, CaptchaSolver
from .cache import DEFAULT_CACHE_TTL, CachedRemoteStore
from .cloud import ByteRange, PanClient, RemoteStore, UploadData
from .config import load_config
from .errors import ConfigError
from .models import FileInformation, Quota, SessionCredential

if TYPE_CHECKING:
    from typing import Self


class BaiduPanClient:
    """A logged in BaiduPan session.

    All paths are absolute and use ``/`` as the delimiter.

    Example:
        >>> async with await BaiduPanClient.login("user", "password") as pan:
        ...     for item in await pan.list_directory("/"):
        ...         print(item.name)

    Attributes:
        session: The authenticated session.
        store: The store operations go through, cached or not.
    """

    def __init__(self, session: AuthenticationSession, store: RemoteStore) -> None:
        """Wrap an authenticated session. Use :meth:`login` to create one."""
        if not session.is_authenticated:
            raise ValueError("The session must be authenticated")
        self.session = session
        self.store = store
        self._closed = False

    @classmethod
    async def login(
        cls,
        username: str,
        password: str,
        captcha_solver: CaptchaSolver | None = None,
        *,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        cache_search: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        captcha_timeout: float | None = None,
    ) -> Self:
        """Log in and return a ready client.

        Args:
            username: The account name.
            password: The account password.
            captcha_solver: Called with the captcha image when the service asks
                for one; returns its text, or None to give up.
            cache_ttl: Seconds to keep cached reads. 0 disables caching.
            cache_search: Whether search results are cached too.
            timeout: HTTP timeout in seconds.
            captcha_timeout: Seconds to wait for the captcha solver.

        Raises:
            AuthError: If the service rejects the login.
            FormatError: If a login response does not have the expected shape.
            ConnectivityError: On transport errors or unexpected statuses.
        """
        session = AuthenticationSession(timeout=timeout)
        try:
            await session.establish(
                username, password, captcha_solver, captcha_timeout=captcha_timeout
            )
        except BaseException:
            await session.aclose()
            raise

        store: RemoteStore = PanClient(session)
        if cache_ttl > 0:
            store = CachedRemoteStore(store, cache_ttl, cache_search=cache_search)
        return cls(session, store)

    @classmethod
    async def from_config(
        cls,
        password: str,
        captcha_solver: CaptchaSolver | None = None,
        *,
        config_path: str | Path | None = None,
        username: str | None = None,
    ) -> Self:
        """Log in with the settings of a configuration file.

        Args:
            password: The account password.
            captcha_solver: See :meth:`login`.
            config_path: Path to config file. If None, uses default location.
            username: Overrides the configured account name.

        Raises:
            ConfigError: If the config cannot be loaded or names no account.
        """
        config = load_config(config_path)
        username = username or config.username
        if not username:
            raise ConfigError("No username given and none configured")
        return await cls.login(
            username,
            password,
            captcha_solver,
            cache_ttl=config.cache_ttl,
            timeout=config.timeout,
        )

    @property
    def username(self) -> str:
        return self.credential.username

    @property
    def credential(self) -> SessionCredential:
        if self.session.credential is None:
            raise RuntimeError("Client is closed")
        return self.session.credential

    @property
    def is_cached(self) -> bool:
        return isinstance(self.store, CachedRemoteStore)

    def clear_cache(self, path: str | None = None) -> None:
        """Clear all cached results, or only those of ``path``."""
        if isinstance(self.store, CachedRemoteStore):
            self.store.clear_cache(path)

    async def get_quota(self) -> Quota:
        """Get the quota of the account."""
        return await self.store.get_quota()

    async def list_directory(self, path: str) -> list[FileInformation]:
        """List the files and directories in a directory."""
        return await self.store.list_directory(path)

    async def get_item_information(self, path: str) -> FileInformation:
        """Get information about a file or a directory.

        Raises:
            NotFoundError: If there is no such item.
        """
        return await self.store.get_item_information(path)

    async def search(
        self, path: str, key: str, recursive: bool = False
    ) -> list[FileInformation]:
        """Search files and directories whose names contain ``key``."""
        return await self.store.search(path, key, recursive)

    async def delete_item(self, path: str) -> None:
        await self.store.delete_item(path)

    async def copy_item(self, path: str, dest: str, new_name: str) -> None:
        await self.store.copy_item(path, dest, new_name)

    async def move_item(self, path: str, dest: str, new_name: str) -> None:
        await self.store.move_item(path, dest, new_name)

    async def rename_item(self, path: str, new_name: str) -> None:
        await self.store.rename_item(path, new_name)

    async def create_directory(self, path: str) -> None:
        await self.store.create_directory(path)

    def download_file(
        self, path: str, byte_range: ByteRange | None = None
    ) -> AsyncIterator[bytes]:
        """Stream a file, optionally only a byte range of it."""
        return self.store.download_file(path, byte_range)

    async def upload_file(
        self, path: str, data: UploadData, overwrite: bool = False
    ) -> None:
        await self.store.upload_file(path, data, overwrite)

    async def upload_file_slice(self, data: UploadData) -> str:
        return await self.store.upload_file_slice(data)

    async def concat_file_slices(
        self, path: str, slices: Sequence[str], overwrite: bool = False
    ) -> None:
        await self.store.concat_file_slices(path, slices, overwrite)

    async def aclose(self) -> None:
        """Log out, drop the cache and close the HTTP client.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        self.clear_cache()
        await self.session.aclose()

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit - log out and release resources."""
        await self.aclose()
