"""Storage client for the BaiduPan web API.

This module implements the file operations of an authenticated BaiduPan
session on top of the pan and PCS endpoints.

Storage Operations:
- List, inspect and search files and directories
- Create directories
- Copy, move, rename and delete items
- Upload files, whole or in slices
- Download files, whole or by byte range
- Query the account quota
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import IO, Any, Protocol, TypeVar, Union, runtime_checkable

import httpx
from pydantic import ValidationError

from .auth import HEX_128_RE, AuthenticationSession, check_response_status
from .errors import ConnectivityError, FormatError, NotFoundError, RemoteError
from .models import (
    ApiResult,
    FileInformation,
    FileManagerResult,
    ListDirectoryResult,
    Quota,
    QuotaResult,
    SessionCredential,
)
from .paths import split_path

logger = logging.getLogger(__name__)

# API base URLs
BAIDU_PAN_API_URL = "https://pan.baidu.com/api/"
BAIDU_PAN_PCS_URL = "https://pcs.baidu.com/rest/2.0/pcs/file"

# Pan API endpoints (relative to the API base)
QUOTA_ENDPOINT = "quota"
LIST_DIRECTORY_ENDPOINT = "list"
SEARCH_ENDPOINT = "search"
FILE_MANAGER_ENDPOINT = "filemanager"
CREATE_DIRECTORY_ENDPOINT = "create"

# Application id the PCS endpoints are called with
PCS_APP_ID = "250528"

UPLOAD_CONTENT_TYPE = "application/octet-stream"
UPLOAD_SLICE_MD5_HEADER = "Content-MD5"
UPLOAD_SLICE_FILE_NAME = "blob"
DOWNLOAD_CHUNK_SIZE = 64 * 1024

ResultT = TypeVar("ResultT", bound=ApiResult)

ByteRange = tuple[int, Union[int, None]]
UploadData = Union[bytes, IO[bytes]]


@runtime_checkable
class RemoteStore(Protocol):
    """File and quota operations of an authenticated session."""

    async def list_directory(self, path: str) -> list[FileInformation]: ...

    async def get_item_information(self, path: str) -> FileInformation: ...

    async def search(
        self, path: str, key: str, recursive: bool = False
    ) -> list[FileInformation]: ...

    async def delete_item(self, path: str) -> None: ...

    async def copy_item(self, path: str, dest: str, new_name: str) -> None: ...

    async def move_item(self, path: str, dest: str, new_name: str) -> None: ...

    async def rename_item(self, path: str, new_name: str) -> None: ...

    async def create_directory(self, path: str) -> None: ...

    def download_file(
        self, path: str, byte_range: ByteRange | None = None
    ) -> AsyncIterator[bytes]: ...

    async def upload_file(
        self, path: str, data: UploadData, overwrite: bool = False
    ) -> None: ...

    async def upload_file_slice(self, data: UploadData) -> str: ...

    async def concat_file_slices(
        self, path: str, slices: Sequence[str], overwrite: bool = False
    ) -> None: ...

    async def get_quota(self) -> Quota: ...


def find_item(items: Iterable[FileInformation], path: str) -> FileInformation:
    """Find the entry for ``path`` in the listing of its parent directory.

    Names are compared case-insensitively, as the service does.

    Raises:
        NotFoundError: If no entry matches.
    """
    _, name = split_path(path)
    folded = name.casefold()
    for item in items:
        if item.name.casefold() == folded:
            return item
    raise NotFoundError(f"Item not found: {path}")


def _format_range(byte_range: ByteRange) -> str:
    start, end = byte_range
    return f"bytes={start}-{'' if end is None else end}"


class PanClient:
    """Storage client for the BaiduPan web API.

    Implements :class:`RemoteStore` against the service. Every call uses the
    cookies in the session's HTTP client; mutating calls also carry the
    session's ``bdstoken``.

    Example:
        >>> session = AuthenticationSession()
        >>> await session.establish("user", "password")
        >>> pan = PanClient(session)
        >>> items = await pan.list_directory("/")
        >>> await pan.create_directory("/My Folder")

    Attributes:
        session: The authenticated session the client works on.
    """

    def __init__(self, session: AuthenticationSession) -> None:
        """Initialize the storage client.

        Args:
            session: Authenticated AuthenticationSession instance.
        """
        self.session = session

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self.session.http_client

    def _ensure_authenticated(self) -> SessionCredential:
        """Get the live session credential."""
        if self.session.credential is None:
            raise RuntimeError("Not authenticated")
        return self.session.credential

    async def _request(
        self, method: str, url: str, *, allow_partial: bool = False, **kwargs: Any
    ) -> httpx.Response:
        self._ensure_authenticated()
        try:
            response = await self.http_client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ConnectivityError(f"HTTP error while requesting {url}: {e}") from e
        check_response_status(response, allow_partial=allow_partial)
        return response

    @staticmethod
    def _parse(response: httpx.Response, model: type[ResultT]) -> ResultT:
        try:
            return model.model_validate_json(response.content)
        except ValidationError as e:
            raise FormatError(
                f"Could not parse the response from {response.request.url}: {e}"
            ) from e

    async def _api_get(
        self, endpoint: str, params: dict[str, str], model: type[ResultT]
    ) -> ResultT:
        response = await self._request("GET", BAIDU_PAN_API_URL + endpoint, params=params)
        result = self._parse(response, model)
        if result.errno != 0:
            raise RemoteError(result.errno)
        return result

    @staticmethod
    def _to_file_information(result: ListDirectoryResult) -> list[FileInformation]:
        if result.file_list is None:
            raise FormatError("Listing response does not contain a file list")
        return [FileInformation.from_file_info(info) for info in result.file_list]

    async def get_quota(self) -> Quota:
        """Get the quota of the account.

        Raises:
            RemoteError: If the service reports an error.
            FormatError: If the totals are missing.
        """
        result = await self._api_get(QUOTA_ENDPOINT, {}, QuotaResult)
        if result.total is None or result.used is None:
            raise FormatError("Quota response does not contain the totals")
        return Quota(total_space=result.total, used_space=result.used)

    async def list_directory(self, path: str) -> list[FileInformation]:
        """List the files and directories in a directory.

        Args:
            path: The directory to list.

        Returns:
            One FileInformation per entry.

        Raises:
            RemoteError: If the service reports an error.
        """
        logger.debug("Listing %s", path)
        result = await self._api_get(
            LIST_DIRECTORY_ENDPOINT, {"web": "1", "dir": path}, ListDirectoryResult
        )
        return self._to_file_information(result)

    async def get_item_information(self, path: str) -> FileInformation:
        """Get information about a file or a directory.

        Raises:
            NotFoundError: If the parent directory has no such entry.
        """
        parent, _ = split_path(path)
        return find_item(await self.list_directory(parent), path)

    async def search(
        self, path: str, key: str, recursive: bool = False
    ) -> list[FileInformation]:
        """Search files and directories in a directory.

        Does not fail when the directory does not exist.

        Args:
            path: The directory to search inside.
            key: The keyword to search for.
            recursive: If True, also searches subdirectories.
        """
        params = {"dir": path, "key": key}
        if recursive:
            params["recursion"] = ""
        result = await self._api_get(SEARCH_ENDPOINT, params, ListDirectoryResult)
        return self._to_file_information(result)

    async def _file_manager(self, operation: str, item: str | dict[str, str]) -> None:
        response = await self._request(
            "POST",
            BAIDU_PAN_API_URL + FILE_MANAGER_ENDPOINT,
            params={"opera": operation, "bdstoken": self._ensure_authenticated().bds_token},
            data={"filelist": json.dumps([item], ensure_ascii=False)},
        )
        result = self._parse(response, FileManagerResult)

        if not result.info:
            # A rejected session has no per-item results
            if result.errno != 0:
                raise RemoteError(result.errno)
            raise FormatError(f"Empty result list from {operation} operation")
        if result.info[0].errno != 0:
            raise RemoteError(result.info[0].errno)
        if result.errno != 0:
            raise RemoteError(result.errno)

    async def delete_item(self, path: str) -> None:
        """Delete a file or a directory.

        Does not fail when the path does not exist.
        """
        logger.debug("Deleting %s", path)
        await self._file_manager("delete", path)

    async def copy_item(self, path: str, dest: str, new_name: str) -> None:
        """Copy a file or a directory into ``dest`` as ``new_name``."""
        logger.debug("Copying %s to %s as %s", path, dest, new_name)
        await self._file_manager("copy", {"path": path, "dest": dest, "newname": new_name})

    async def move_item(self, path: str, dest: str, new_name: str) -> None:
        """Move a file or a directory into ``dest`` as ``new_name``.

        The service rejects moves onto the source path itself.
        """
        logger.debug("Moving %s to %s as %s", path, dest, new_name)
        await self._file_manager("move", {"path": path, "dest": dest, "newname": new_name})

    async def rename_item(self, path: str, new_name: str) -> None:
        """Rename a file or a directory in place."""
        logger.debug("Renaming %s to %s", path, new_name)
        await self._file_manager("rename", {"path": path, "newname": new_name})

    async def create_directory(self, path: str) -> None:
        """Create a directory, including any missing parents."""
        logger.debug("Creating directory %s", path)
        response = await self._request(
            "POST",
            BAIDU_PAN_API_URL + CREATE_DIRECTORY_ENDPOINT,
            params={"bdstoken": self._ensure_authenticated().bds_token},
            data={"isdir": "1", "path": path},
        )
        result = self._parse(response, ApiResult)
        if result.errno != 0:
            raise RemoteError(result.errno)

    async def download_file(
        self, path: str, byte_range: ByteRange | None = None
    ) -> AsyncIterator[bytes]:
        """Download a file as a stream of chunks.

        Data is yielded as soon as the service starts sending it.

        Args:
            path: The file to download.
            byte_range: Optional ``(start, end)`` with an inclusive end, or
                ``(start, None)`` for the rest of the file.
        """
        params = {"method": "download", "app_id": PCS_APP_ID, "path": path}
        headers = {}
        if byte_range is not None:
            headers["Range"] = _format_range(byte_range)

        self._ensure_authenticated()
        try:
            async with self.http_client.stream(
                "GET", BAIDU_PAN_PCS_URL, params=params, headers=headers
            ) as response:
                check_response_status(response, allow_partial=True)
                async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                    yield chunk
        except httpx.HTTPError as e:
            raise ConnectivityError(f"HTTP error during download of {path}: {e}") from e

    async def upload_file(
        self, path: str, data: UploadData, overwrite: bool = False
    ) -> None:
        """Upload a file, creating missing parent directories.

        Args:
            path: Where to store the file.
            data: The file content.
            overwrite: If True, replaces an existing file.
        """
        _, name = split_path(path)
        params = {"method": "upload", "app_id": PCS_APP_ID, "path": path}
        if overwrite:
            params["ondup"] = "overwrite"

        logger.debug("Uploading %s", path)
        await self._request(
            "POST",
            BAIDU_PAN_PCS_URL,
            params=params,
            files={"file": (name, data, UPLOAD_CONTENT_TYPE)},
        )

    async def upload_file_slice(self, data: UploadData) -> str:
        """Upload one slice of a file.

        Returns:
            The MD5 of the slice, to be passed to concat_file_slices.

        Raises:
            FormatError: If the response lacks a well-formed MD5 header.
        """
        response = await self._request(
            "POST",
            BAIDU_PAN_PCS_URL,
            params={"method": "upload", "type": "tmpfile", "app_id": PCS_APP_ID},
            files={"file": (UPLOAD_SLICE_FILE_NAME, data, UPLOAD_CONTENT_TYPE)},
        )
        md5 = response.headers.get(UPLOAD_SLICE_MD5_HEADER, "")
        if not HEX_128_RE.match(md5):
            raise FormatError(f"Malformed slice hash: {md5!r}")
        return md5

    async def concat_file_slices(
        self, path: str, slices: Sequence[str], overwrite: bool = False
    ) -> None:
        """Join uploaded slices into a file, creating missing parents.

        Args:
            path: Where to store the file.
            slices: MD5 hashes returned by upload_file_slice, in order.
            overwrite: If True, replaces an existing file.
        """
        if not slices:
            raise ValueError("At least one slice is required")

        params = {"method": "createsuperfile", "app_id": PCS_APP_ID, "path": path}
        if overwrite:
            params["ondup"] = "overwrite"

        logger.debug("Joining %d slices into %s", len(slices), path)
        await self._request(
            "POST",
            BAIDU_PAN_PCS_URL,
            params=params,
            data={"param": json.dumps({"block_list": list(slices)})},
        )
