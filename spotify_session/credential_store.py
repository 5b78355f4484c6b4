import asyncio
import json
import logging
import os
import tempfile
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import CredentialStoreError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
EXPIRES_AT_KEY = "expires_at"

SESSION_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, EXPIRES_AT_KEY)

DEFAULT_SESSION_STORE_PATH = os.path.join("data", "spotify_session.json")


class CredentialStore:
    """Async key-value store holding the session strings.

    Batch writes (``multi_set`` / ``multi_remove``) apply completely or not at all.
    """

    async def get(self, key: str) -> Optional[str]:
        pairs = await self.multi_get([key])
        return pairs[0][1]

    async def multi_get(self, keys: Sequence[str]) -> List[Tuple[str, Optional[str]]]:
        raise NotImplementedError

    async def multi_set(self, pairs: Iterable[Tuple[str, str]]) -> None:
        raise NotImplementedError

    async def multi_remove(self, keys: Iterable[str]) -> None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    """Process-local store, mostly for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)

    async def multi_get(self, keys: Sequence[str]) -> List[Tuple[str, Optional[str]]]:
        data = self._data
        return [(k, data.get(k)) for k in keys]

    async def multi_set(self, pairs: Iterable[Tuple[str, str]]) -> None:
        updated = dict(self._data)
        for key, value in pairs:
            updated[str(key)] = str(value)
        self._data = updated

    async def multi_remove(self, keys: Iterable[str]) -> None:
        updated = dict(self._data)
        for key in keys:
            updated.pop(key, None)
        self._data = updated


class JsonFileCredentialStore(CredentialStore):
    """Store persisted as a single JSON object on disk.

    Every batch rewrites the whole file through a temp file and ``os.replace``,
    so readers never observe a half-applied batch.
    """

    def __init__(self, path: str = DEFAULT_SESSION_STORE_PATH):
        self.path = path
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def _write_lock(self) -> asyncio.Lock:
        # asyncio.Lock belongs to one loop; the store may outlive several asyncio.run calls.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _read(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CredentialStoreError(f"Could not read session store {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise CredentialStoreError(f"Session store {self.path} does not hold a JSON object")

        return {str(k): str(v) for k, v in data.items() if v is not None}

    def _write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".session-", suffix=".json", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            raise CredentialStoreError(f"Could not write session store {self.path}: {e}") from e

    async def multi_get(self, keys: Sequence[str]) -> List[Tuple[str, Optional[str]]]:
        data = await asyncio.to_thread(self._read)
        return [(k, data.get(k)) for k in keys]

    async def multi_set(self, pairs: Iterable[Tuple[str, str]]) -> None:
        pairs = [(str(k), str(v)) for k, v in pairs]
        async with self._write_lock():
            data = await asyncio.to_thread(self._read)
            data.update(pairs)
            await asyncio.to_thread(self._write, data)

    async def multi_remove(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        async with self._write_lock():
            try:
                data = await asyncio.to_thread(self._read)
            except CredentialStoreError as e:
                # Nothing in an unreadable file can be trusted; start over empty.
                logger.warning("Discarding unreadable session store %s: %s", self.path, e)
                await asyncio.to_thread(self._write, {})
                return
            if not any(k in data for k in keys):
                return
            for key in keys:
                data.pop(key, None)
            await asyncio.to_thread(self._write, data)


def build_credential_store(config: Dict[str, Any]) -> CredentialStore:
    """Return the store selected by ``session_store`` in config."""

    config = config or {}
    kind = str(config.get("session_store", "file")).strip().lower()
    if kind == "memory":
        return MemoryCredentialStore()
    if kind == "file":
        path = str(config.get("session_store_path") or DEFAULT_SESSION_STORE_PATH)
        return JsonFileCredentialStore(path)
    raise ValueError(f"Unknown session_store: {kind!r} (expected 'file' or 'memory')")
