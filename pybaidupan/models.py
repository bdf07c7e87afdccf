"""Pydantic models for the BaiduPan web API."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

# Login tokens, CSRF tokens and slice hashes all share this shape
HEX_128_PATTERN = r"^[a-z0-9]{32}$"


# =============================================================================
# Session Models
# =============================================================================


class SessionCredential(BaseModel):
    """Identity of an authenticated session.

    Holds the transport cookies and the ``bdstoken`` required on every
    mutating call. Instances are immutable; a new login yields a new one.
    """

    username: str = Field(..., description="Account the session belongs to")
    cookies: dict[str, str] = Field(
        default_factory=dict,
        description="Identity cookies captured at login",
    )
    bds_token: str = Field(
        ...,
        pattern=HEX_128_PATTERN,
        description="CSRF-style token scraped from the home page",
    )

    model_config = {"frozen": True}


class LoginAttempt(BaseModel):
    """State of a single login sequence."""

    username: str
    password: str = Field(..., repr=False)
    token: str = ""
    code_string: str | None = None
    captcha: str | None = None
    error_code: int | None = None


class LoginTokenData(BaseModel):
    """Payload of the login token response."""

    token: str


class LoginTokenErrorInfo(BaseModel):
    """Error section of the login token response."""

    no: int


class LoginTokenResult(BaseModel):
    """Response from the passport ``getapi`` endpoint."""

    data: LoginTokenData
    err_info: LoginTokenErrorInfo = Field(..., alias="errInfo")

    model_config = {"populate_by_name": True}


# =============================================================================
# Storage API Models
# =============================================================================


class ApiResult(BaseModel):
    """Common envelope of pan API responses."""

    errno: int = Field(default=0, description="Zero on success")


class FileInfo(BaseModel):
    """A file or directory entry as returned by ``list`` and ``search``."""

    name: str = Field(..., alias="server_filename")
    date_created: int = Field(..., alias="server_ctime")
    date_modified: int = Field(..., alias="server_mtime")
    is_directory: int = Field(..., alias="isdir")
    is_empty_directory: int | None = Field(default=None, alias="dir_empty")
    size: int = Field(...)

    model_config = {"populate_by_name": True}


class ListDirectoryResult(ApiResult):
    """Response from the ``list`` and ``search`` endpoints."""

    file_list: list[FileInfo] | None = Field(default=None, alias="list")

    model_config = {"populate_by_name": True}


class QuotaResult(ApiResult):
    """Response from the ``quota`` endpoint."""

    total: int | None = None
    used: int | None = None


class FileManagerResult(ApiResult):
    """Response from the ``filemanager`` endpoint."""

    info: list[ApiResult] = Field(default_factory=list)


# =============================================================================
# Domain Models
# =============================================================================


class FileInformation(BaseModel):
    """Information about a file or a directory."""

    name: str
    is_directory: bool
    is_empty_directory: bool | None = Field(
        default=None,
        description="None for files and when the listing does not say",
    )
    date_created: datetime
    date_modified: datetime
    size: int = Field(default=0, description="0 for directories")

    model_config = {"frozen": True}

    @classmethod
    def from_file_info(cls, info: FileInfo) -> FileInformation:
        """Convert a raw listing entry."""
        return cls(
            name=info.name,
            is_directory=info.is_directory != 0,
            is_empty_directory=(
                None if info.is_empty_directory is None else info.is_empty_directory != 0
            ),
            date_created=datetime.fromtimestamp(info.date_created, tz=UTC),
            date_modified=datetime.fromtimestamp(info.date_modified, tz=UTC),
            size=info.size,
        )


class Quota(BaseModel):
    """Quota information of the account, in bytes."""

    total_space: int
    used_space: int

    model_config = {"frozen": True}

    @property
    def free_space(self) -> int:
        """Space still available."""
        return max(self.total_space - self.used_space, 0)
