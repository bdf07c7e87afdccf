"""Python client for the BaiduPan cloud storage web service."""

from .auth import AuthenticationSession, LoginState
from .cache import CachedRemoteStore, CoalescingCache
from .client import BaiduPanClient
from .cloud import PanClient, RemoteStore
from .config import ClientConfig, load_config, save_config
from .errors import (
    AuthError,
    BaiduPanError,
    CodedError,
    ConfigError,
    ConnectivityError,
    ErrorCatalogVariant,
    FormatError,
    NotFoundError,
    RemoteError,
    lookup,
)
from .models import FileInformation, Quota, SessionCredential

__all__ = [
    # Session
    "AuthenticationSession",
    "LoginState",
    "SessionCredential",
    # Storage
    "BaiduPanClient",
    "CachedRemoteStore",
    "CoalescingCache",
    "FileInformation",
    "PanClient",
    "Quota",
    "RemoteStore",
    # Config
    "ClientConfig",
    "load_config",
    "save_config",
    # Errors
    "AuthError",
    "BaiduPanError",
    "CodedError",
    "ConfigError",
    "ConnectivityError",
    "ErrorCatalogVariant",
    "FormatError",
    "NotFoundError",
    "RemoteError",
    "lookup",
]
