import asyncio
import enum
import inspect
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from .auth import SpotifyTokenRefresher
from .credential_store import SESSION_KEYS, CredentialStore, build_credential_store
from .errors import AuthExpiredError, CredentialStoreError, NoSessionError, RefreshFailedError, RemoteError
from .token_manager import Clock, TokenLifecycleManager

logger = logging.getLogger(__name__)

SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"

TIME_RANGES = ("short_term", "medium_term", "long_term")

InvalidationHook = Callable[[], Union[None, Awaitable[None]]]


class ResponseClass(enum.Enum):
    SUCCESS = "success"
    UNAUTHORIZED = "unauthorized"
    OTHER_ERROR = "other_error"


def classify_status(status: int) -> ResponseClass:
    if 200 <= status < 300:
        return ResponseClass.SUCCESS
    if status == 401:
        return ResponseClass.UNAUTHORIZED
    return ResponseClass.OTHER_ERROR


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff for transient RemoteErrors (transport, 429, 5xx).

    max_attempts counts the first try, so 1 disables retries.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25

    @staticmethod
    def from_config(config: Dict[str, Any]) -> "RetryPolicy":
        config = config or {}
        return RetryPolicy(
            max_attempts=max(1, int(config.get("retry_max_attempts", 3))),
            base_delay=float(config.get("retry_base_delay", 1.0)),
            max_delay=float(config.get("retry_max_delay", 30.0)),
            jitter=float(config.get("retry_jitter", 0.25)),
        )

    def delay_for(self, attempt: int, *, retry_after: Optional[float] = None) -> float:
        if retry_after is not None:
            delay = retry_after
        else:
            delay = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        # Avoid synchronized retries when running concurrent calls.
        return max(0.0, delay) + self.jitter * random.random()


class SpotifyClient:
    """Single entry point for authenticated Spotify Web API calls.

    Tokens come from the TokenLifecycleManager. A 401, or a session that can no
    longer be refreshed, purges the credential store, notifies
    ``on_session_invalidated`` once and raises AuthExpiredError. Any other
    failure raises RemoteError and leaves the session alone.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        *,
        store: Optional[CredentialStore] = None,
        token_manager: Optional[TokenLifecycleManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        on_session_invalidated: Optional[InvalidationHook] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.config = config or {}
        self.clock = clock or time.time

        if store is None:
            store = token_manager.store if token_manager is not None else build_credential_store(self.config)
        self.store = store

        if token_manager is None:
            refresher = SpotifyTokenRefresher(self.config, self.store, http_client=http_client, clock=self.clock)
            token_manager = TokenLifecycleManager(
                self.store,
                refresher,
                clock=self.clock,
                expiry_skew_seconds=float(self.config.get("expiry_skew_seconds", 0)),
            )
        self.token_manager = token_manager

        self.on_session_invalidated = on_session_invalidated
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self._sleep = sleep or asyncio.sleep

        self._http = http_client
        self._owns_http = http_client is None

        self._invalidation_notified = False
        self._invalidated_token: Optional[str] = None

    @property
    def api_base_url(self) -> str:
        return str(self.config.get("spotify_api_base_url") or SPOTIFY_API_BASE_URL).rstrip("/")

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            timeout = float(self.config.get("request_timeout", 30.0))
            self._http = httpx.AsyncClient(timeout=timeout, follow_redirects=False)
        return self._http

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "SpotifyClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # -----------------
    # Session handling
    # -----------------

    async def _acquire_token(self) -> str:
        try:
            token = await self.token_manager.get_valid_token()
        except (NoSessionError, RefreshFailedError, CredentialStoreError) as e:
            # An unreadable store is as good as no session.
            await self._invalidate_session(str(e))
            raise AuthExpiredError(
                f"Spotify session is no longer valid: {e}",
                status=getattr(e, "status", None),
                cause=e,
            ) from e

        # A token other than the one we gave up on means a new login happened.
        if self._invalidation_notified and token != self._invalidated_token:
            self._invalidation_notified = False
        return token

    async def _invalidate_session(self, reason: str, *, token: Optional[str] = None) -> None:
        # Check-and-set before the first await so concurrent failures notify once.
        notify = not self._invalidation_notified
        self._invalidation_notified = True
        if token is not None:
            self._invalidated_token = token

        try:
            await self.store.multi_remove(SESSION_KEYS)
        except CredentialStoreError as e:
            logger.error("Could not remove invalidated Spotify session: %s", e)

        if notify:
            logger.warning("Spotify session invalidated: %s", reason)
            await self._notify_invalidated()

    async def _notify_invalidated(self) -> None:
        hook = self.on_session_invalidated
        if hook is None:
            return
        try:
            result = hook()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Session invalidation hook raised")

    async def sign_out(self) -> None:
        """User-initiated logout: drop the session without firing the invalidation hook."""

        self._invalidation_notified = True
        self._invalidated_token = None
        await self.store.multi_remove(SESSION_KEYS)
        logger.info("Signed out of Spotify")

    # -----------------
    # HTTP helpers
    # -----------------

    def _build_url(self, endpoint: str) -> str:
        endpoint = str(endpoint)
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.api_base_url}/{endpoint.lstrip('/')}"

    async def call(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Make an authenticated Spotify Web API request and return parsed JSON.

        Retry behavior (see RetryPolicy):
        - transport errors, 429 and 5xx: retried with backoff, 429 honours Retry-After
        - 401: never retried; the session is discarded (AuthExpiredError)
        - other 4xx: raised immediately as RemoteError
        """

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._call_once(endpoint, method=method, params=params, json=json, headers=headers)
            except RemoteError as e:
                if not e.transient or attempt >= self.retry_policy.max_attempts:
                    raise
                delay = self.retry_policy.delay_for(attempt, retry_after=e.retry_after)
                logger.warning(
                    "Spotify API %s %s failed (%s); retrying in %.1fs (attempt %d/%d)",
                    method.upper(),
                    endpoint,
                    e.status or "transport error",
                    delay,
                    attempt,
                    self.retry_policy.max_attempts,
                )
                await self._sleep(delay)

    async def _call_once(
        self,
        endpoint: str,
        *,
        method: str,
        params: Optional[Dict[str, Any]],
        json: Any,
        headers: Optional[Dict[str, str]],
    ) -> Any:
        token = await self._acquire_token()

        request_headers = {"Accept": "application/json"}
        request_headers.update(headers or {})
        request_headers["Authorization"] = f"Bearer {token}"

        query = {k: str(v) for k, v in (params or {}).items() if v is not None}

        try:
            resp = await self._get_http().request(
                method.upper(),
                self._build_url(endpoint),
                params=query or None,
                json=json,
                headers=request_headers,
            )
        except httpx.HTTPError as e:
            raise RemoteError(f"Spotify API request failed: {e}", cause=e, endpoint=endpoint) from e

        outcome = classify_status(resp.status_code)

        if outcome is ResponseClass.UNAUTHORIZED:
            await self._invalidate_session(f"HTTP 401 from {endpoint}", token=token)
            raise AuthExpiredError("Spotify rejected the access token; log in again.", status=401)

        if outcome is ResponseClass.OTHER_ERROR:
            raise RemoteError(
                f"Spotify API error {resp.status_code}: {resp.text}",
                status=resp.status_code,
                endpoint=endpoint,
                retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
            )

        if not resp.content:
            return {}

        try:
            return resp.json()
        except ValueError as e:
            raise RemoteError(
                f"Spotify API response was not JSON (status {resp.status_code}): {resp.text}",
                status=resp.status_code,
                cause=e,
                endpoint=endpoint,
            ) from e

    # -----------------
    # Convenience endpoints
    # -----------------

    @staticmethod
    def _check_time_range(time_range: str) -> str:
        if time_range not in TIME_RANGES:
            raise ValueError(f"time_range must be one of {TIME_RANGES}, got {time_range!r}")
        return time_range

    async def me(self) -> Dict[str, Any]:
        return await self.call("/me")

    async def top_tracks(self, *, time_range: str = "short_term", limit: int = 10) -> Dict[str, Any]:
        return await self.call(
            "/me/top/tracks",
            params={"limit": limit, "time_range": self._check_time_range(time_range)},
        )

    async def top_artists(self, *, time_range: str = "short_term", limit: int = 5) -> Dict[str, Any]:
        return await self.call(
            "/me/top/artists",
            params={"limit": limit, "time_range": self._check_time_range(time_range)},
        )

    async def recently_played(self, *, limit: int = 10) -> Dict[str, Any]:
        return await self.call("/me/player/recently-played", params={"limit": limit})

    async def saved_tracks(self, *, limit: int = 1) -> Dict[str, Any]:
        return await self.call("/me/tracks", params={"limit": limit})

    async def followed_artists(self, *, limit: int = 1) -> Dict[str, Any]:
        return await self.call("/me/following", params={"type": "artist", "limit": limit})

    async def playlists(self, *, limit: int = 1) -> Dict[str, Any]:
        return await self.call("/me/playlists", params={"limit": limit})
