import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .credential_store import (
    ACCESS_TOKEN_KEY,
    EXPIRES_AT_KEY,
    REFRESH_TOKEN_KEY,
    SESSION_KEYS,
    CredentialStore,
)
from .errors import NoSessionError, RefreshFailedError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class TokenInfo:
    """Token endpoint response reduced to what the session keeps."""

    access_token: str
    expires_at: float
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None

    @staticmethod
    def from_token_response(payload: Dict[str, Any], *, now: Optional[float] = None) -> "TokenInfo":
        """Convert Spotify token response JSON into TokenInfo.

        Spotify returns:
        - access_token
        - token_type
        - expires_in (seconds)
        - refresh_token (optional; omitted when the server does not rotate it)
        - scope (space-delimited string)

        Raises ValueError when access_token or expires_in is unusable.
        """

        if not isinstance(payload, dict):
            raise ValueError(f"Token response was not an object: {payload!r}")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("Token response has no access_token")

        try:
            expires_in = float(payload["expires_in"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Token response has no usable expires_in: {payload.get('expires_in')!r}") from e
        if expires_in < 0:
            raise ValueError(f"Token response has negative expires_in: {expires_in}")

        now_ts = float(time.time() if now is None else now)
        refresh_token = payload.get("refresh_token") or None

        return TokenInfo(
            access_token=access_token,
            expires_at=now_ts + expires_in,
            refresh_token=str(refresh_token) if refresh_token is not None else None,
            token_type=str(payload.get("token_type") or "Bearer"),
            scope=payload.get("scope"),
        )

    def to_store_pairs(self) -> List[Tuple[str, str]]:
        # refresh_token is only written when the server sent one.
        pairs = [
            (ACCESS_TOKEN_KEY, self.access_token),
            (EXPIRES_AT_KEY, repr(float(self.expires_at))),
        ]
        if self.refresh_token:
            pairs.append((REFRESH_TOKEN_KEY, self.refresh_token))
        return pairs


@dataclass(frozen=True)
class Session:
    """Consistent snapshot of the three session keys."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None

    @staticmethod
    def from_pairs(pairs: Sequence[Tuple[str, Optional[str]]]) -> "Session":
        values = dict(pairs)
        raw_expiry = values.get(EXPIRES_AT_KEY)

        expires_at: Optional[float] = None
        if raw_expiry not in (None, ""):
            try:
                expires_at = float(raw_expiry)
            except (TypeError, ValueError):
                logger.warning("Stored expires_at %r is not a number; treating the access token as expired", raw_expiry)
                expires_at = 0.0

        return Session(
            access_token=values.get(ACCESS_TOKEN_KEY) or None,
            refresh_token=values.get(REFRESH_TOKEN_KEY) or None,
            expires_at=expires_at,
        )

    def is_expired(self, now: float, *, skew_seconds: float = 0.0) -> bool:
        if self.expires_at is None:
            return False
        return float(now) >= float(self.expires_at) - float(skew_seconds)


class TokenLifecycleManager:
    """Decides whether the cached access token is usable and refreshes it when not.

    Refreshes are single-flight: while one is running, every other caller that
    finds the token expired awaits the same task instead of submitting the
    (possibly single-use) refresh token a second time.
    """

    def __init__(
        self,
        store: CredentialStore,
        refresher: Any,
        *,
        clock: Optional[Clock] = None,
        expiry_skew_seconds: float = 0.0,
    ):
        self.store = store
        self.refresher = refresher
        self.clock = clock or time.time
        self.expiry_skew_seconds = float(expiry_skew_seconds)
        self._refresh_task: Optional["asyncio.Future[str]"] = None

    async def load_session(self) -> Session:
        pairs = await self.store.multi_get(SESSION_KEYS)
        return Session.from_pairs(pairs)

    def _is_expired(self, session: Session) -> bool:
        return session.is_expired(self.clock(), skew_seconds=self.expiry_skew_seconds)

    async def has_valid_session(self) -> bool:
        """True when an unexpired access token is cached. Never touches the network."""

        session = await self.load_session()
        return bool(session.access_token) and not self._is_expired(session)

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None

    async def get_valid_token(self) -> str:
        session = await self.load_session()

        if not session.access_token:
            raise NoSessionError("No Spotify session stored. Log in first.")

        if not self._is_expired(session):
            return session.access_token

        if not session.refresh_token:
            raise RefreshFailedError("Access token expired and no refresh_token is available.")

        return await self._refresh_single_flight()

    async def _refresh_single_flight(self) -> str:
        task = self._refresh_task
        if task is None:
            task = asyncio.ensure_future(self._refresh())
            self._refresh_task = task
            task.add_done_callback(self._on_refresh_done)
        else:
            logger.debug("Joining in-flight token refresh")

        # A cancelled caller must not cancel the refresh other callers share.
        return await asyncio.shield(task)

    def _on_refresh_done(self, task: "asyncio.Future[str]") -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Token refresh finished with %s", type(task.exception()).__name__)

    async def _refresh(self) -> str:
        # Re-read: a refresh that completed after our first read already rotated the tokens.
        session = await self.load_session()

        if not session.access_token:
            raise NoSessionError("Spotify session was removed while waiting to refresh.")

        if not self._is_expired(session):
            return session.access_token

        if not session.refresh_token:
            raise RefreshFailedError("Access token expired and no refresh_token is available.")

        logger.info("Spotify access token expired; refreshing")
        return await self.refresher.refresh(session.refresh_token)
