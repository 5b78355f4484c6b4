import logging
import os
import time
from typing import Any, Dict, Optional

import httpx

from .credential_store import SESSION_KEYS, CredentialStore
from .errors import CredentialStoreError, RefreshFailedError, RemoteError
from .token_manager import Clock, TokenInfo

logger = logging.getLogger(__name__)

SPOTIFY_ACCOUNTS_BASE_URL = "https://accounts.spotify.com"


def get_effective_client_id(config: Dict[str, Any]) -> str:
    """Return the Spotify Client ID (config value, then SPOTIFY_CLIENT_ID env var)."""

    config = config or {}
    client_id = str(config.get("spotify_client_id", "") or "").strip()
    if not client_id:
        client_id = os.environ.get("SPOTIFY_CLIENT_ID", "").strip()
    if not client_id:
        raise ValueError("Missing spotify_client_id in config.json (or SPOTIFY_CLIENT_ID in the environment)")
    return client_id


def get_token_url(config: Dict[str, Any]) -> str:
    base = str((config or {}).get("spotify_accounts_base_url") or SPOTIFY_ACCOUNTS_BASE_URL).rstrip("/")
    return f"{base}/api/token"


async def store_login_tokens(
    store: CredentialStore,
    payload: Dict[str, Any],
    *,
    clock: Optional[Clock] = None,
) -> TokenInfo:
    """Write the first session triple from an authorization-code token response.

    Called by the login flow once it has exchanged the code. Any session left
    over from a previous login is removed first so a stale refresh token never
    outlives the account it belongs to.
    """

    now = (clock or time.time)()
    token = TokenInfo.from_token_response(payload, now=now)
    await store.multi_remove(SESSION_KEYS)
    await store.multi_set(token.to_store_pairs())
    logger.info("Stored new Spotify session (expires at %s)", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(token.expires_at)))
    return token


class SpotifyTokenRefresher:
    """Exchanges a refresh token for a new access token and persists the result.

    Only the TokenLifecycleManager calls this.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        store: CredentialStore,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or {}
        self.store = store
        self.http_client = http_client
        self.clock = clock or time.time

    @property
    def token_url(self) -> str:
        return get_token_url(self.config)

    @property
    def timeout(self) -> float:
        return float(self.config.get("request_timeout", 30.0))

    async def refresh(self, refresh_token: str) -> str:
        client_id = get_effective_client_id(self.config)
        try:
            payload = await self._post_form(
                self.token_url,
                {
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": client_id,
                },
            )
            token = TokenInfo.from_token_response(payload, now=self.clock())
            await self.store.multi_set(token.to_store_pairs())
        except (RemoteError, ValueError, CredentialStoreError) as e:
            # A rejected refresh usually means the refresh token itself is dead.
            await self._purge_after_failure()
            logger.warning("Spotify token refresh failed; session removed: %s", e)
            raise RefreshFailedError(
                f"Spotify token refresh failed: {e}",
                status=getattr(e, "status", None),
                cause=e,
            ) from e

        if token.refresh_token:
            logger.debug("Spotify rotated the refresh token")
        logger.info("Spotify access token refreshed")
        return token.access_token

    async def _purge_after_failure(self) -> None:
        # The refresh error is what the caller needs; a second store error is only logged.
        try:
            await self.store.multi_remove(SESSION_KEYS)
        except CredentialStoreError as e:
            logger.error("Could not remove Spotify session after failed refresh: %s", e)

    async def _post_form(self, url: str, form: Dict[str, Any]) -> Dict[str, Any]:
        data = {k: str(v) for k, v in (form or {}).items() if v is not None}
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        try:
            if self.http_client is not None:
                resp = await self.http_client.post(url, data=data, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                    resp = await client.post(url, data=data, headers=headers)
        except httpx.HTTPError as e:
            raise RemoteError(f"Spotify token request failed: {e}", cause=e, endpoint=url) from e

        if not 200 <= resp.status_code < 300:
            raise RemoteError(
                f"Spotify token request failed (HTTP {resp.status_code}): {resp.text}",
                status=resp.status_code,
                endpoint=url,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise RemoteError(
                f"Spotify token response was not JSON: {resp.text}",
                status=resp.status_code,
                cause=e,
                endpoint=url,
            ) from e

        if not isinstance(payload, dict):
            raise RemoteError(
                f"Spotify token response was not an object: {payload}",
                status=resp.status_code,
                endpoint=url,
            )

        return payload
