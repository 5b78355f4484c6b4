"""Spotify session core: token lifecycle, refresh and the authenticated API wrapper.

Application code calls SpotifyClient; nothing else reads the credential store.
"""

from .auth import SpotifyTokenRefresher, store_login_tokens
from .client import ResponseClass, RetryPolicy, SpotifyClient, classify_status
from .credential_store import (
    CredentialStore,
    JsonFileCredentialStore,
    MemoryCredentialStore,
    build_credential_store,
)
from .errors import (
    AuthExpiredError,
    BatchFailedError,
    CredentialStoreError,
    NoSessionError,
    RefreshFailedError,
    RemoteError,
    SessionError,
)
from .stats_loader import SettledBatch, StatsLoader, settle_all
from .token_manager import Session, TokenInfo, TokenLifecycleManager

__all__ = [
    "AuthExpiredError",
    "BatchFailedError",
    "CredentialStore",
    "CredentialStoreError",
    "JsonFileCredentialStore",
    "MemoryCredentialStore",
    "NoSessionError",
    "RefreshFailedError",
    "RemoteError",
    "ResponseClass",
    "RetryPolicy",
    "Session",
    "SessionError",
    "SettledBatch",
    "SpotifyClient",
    "SpotifyTokenRefresher",
    "StatsLoader",
    "TokenInfo",
    "TokenLifecycleManager",
    "build_credential_store",
    "classify_status",
    "settle_all",
    "store_login_tokens",
]
