from typing import Any, Dict, Optional


class SessionError(Exception):
    """Base class for every caller-facing session failure.

    Each error exposes ``kind`` (stable string for UI branching), an optional
    HTTP ``status`` and the underlying ``cause`` (also chained as ``__cause__``).
    """

    kind = "session_error"

    def __init__(self, message: str = "", *, status: Optional[int] = None, cause: Optional[BaseException] = None):
        super().__init__(message or self.kind)
        self.status = status
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "status": self.status,
            "message": str(self),
            "cause": repr(self.cause) if self.cause is not None else None,
        }


class NoSessionError(SessionError):
    """No access token has ever been stored (or it was purged)."""

    kind = "no_session"


class RefreshFailedError(SessionError):
    """Refresh was rejected, failed in transport, or no refresh token exists."""

    kind = "refresh_failed"


class AuthExpiredError(SessionError):
    """Session discarded; the user has to log in again."""

    kind = "auth_expired"


class RemoteError(SessionError):
    """Endpoint or transport failure unrelated to authentication."""

    kind = "remote_error"

    def __init__(
        self,
        message: str = "",
        *,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
        endpoint: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status=status, cause=cause)
        self.endpoint = endpoint
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        # Transport errors carry no status.
        return self.status is None or self.status == 429 or self.status >= 500


class BatchFailedError(SessionError):
    """Every call of a settle-all batch failed."""

    kind = "batch_failed"

    def __init__(self, errors: Dict[str, BaseException]):
        names = ", ".join(sorted(errors))
        super().__init__(f"All calls failed: {names}")
        self.errors = dict(errors)

    @property
    def auth_expired(self) -> bool:
        return any(isinstance(e, AuthExpiredError) for e in self.errors.values())


class CredentialStoreError(Exception):
    """The credential store could not be read or written."""
