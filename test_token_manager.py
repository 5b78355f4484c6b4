import asyncio
import os
import sys
import unittest

# Ensure local imports work when running this file directly.
THIS_DIR = os.path.dirname(os.path.abspath(__file__))
if THIS_DIR not in sys.path:
    sys.path.insert(0, THIS_DIR)

from spotify_session.credential_store import MemoryCredentialStore
from spotify_session.errors import NoSessionError, RefreshFailedError
from spotify_session.token_manager import Session, TokenInfo, TokenLifecycleManager


NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingRefresher:
    """Stands in for SpotifyTokenRefresher; writes the new token like the real one."""

    def __init__(self, store, clock, *, new_token: str = "A2", lifetime: float = 3600, gate: asyncio.Event = None):
        self.store = store
        self.clock = clock
        self.new_token = new_token
        self.lifetime = lifetime
        self.gate = gate
        self.calls = []

    async def refresh(self, refresh_token: str) -> str:
        self.calls.append(refresh_token)
        if self.gate is not None:
            await self.gate.wait()
        await self.store.multi_set(
            [("access_token", self.new_token), ("expires_at", repr(self.clock() + self.lifetime))]
        )
        return self.new_token


class FailingRefresher:
    def __init__(self):
        self.calls = 0

    async def refresh(self, refresh_token: str) -> str:
        self.calls += 1
        raise RefreshFailedError("rejected", status=400)


def _store(access=None, refresh=None, expires_at=None) -> MemoryCredentialStore:
    data = {}
    if access is not None:
        data["access_token"] = access
    if refresh is not None:
        data["refresh_token"] = refresh
    if expires_at is not None:
        data["expires_at"] = repr(float(expires_at))
    return MemoryCredentialStore(data)


class TestSessionParsing(unittest.TestCase):
    def test_from_pairs_reads_all_three_keys(self):
        session = Session.from_pairs(
            [("access_token", "A1"), ("refresh_token", "R1"), ("expires_at", "1700000100.5")]
        )
        self.assertEqual(session.access_token, "A1")
        self.assertEqual(session.refresh_token, "R1")
        self.assertEqual(session.expires_at, 1700000100.5)

    def test_unparseable_expiry_counts_as_expired(self):
        session = Session.from_pairs([("access_token", "A1"), ("expires_at", "tomorrow")])
        self.assertTrue(session.is_expired(NOW))

    def test_missing_expiry_never_expires(self):
        session = Session.from_pairs([("access_token", "A1"), ("expires_at", None)])
        self.assertFalse(session.is_expired(NOW))

    def test_expiry_boundary_is_expired(self):
        session = Session(access_token="A1", expires_at=NOW)
        self.assertTrue(session.is_expired(NOW))
        self.assertFalse(session.is_expired(NOW - 0.001))

    def test_skew_moves_expiry_earlier(self):
        session = Session(access_token="A1", expires_at=NOW + 30)
        self.assertFalse(session.is_expired(NOW))
        self.assertTrue(session.is_expired(NOW, skew_seconds=60))


class TestTokenInfo(unittest.TestCase):
    def test_expires_at_is_now_plus_expires_in(self):
        token = TokenInfo.from_token_response({"access_token": "A2", "expires_in": 3600}, now=NOW)
        self.assertEqual(token.expires_at, NOW + 3600)
        self.assertIsNone(token.refresh_token)

    def test_store_pairs_skip_missing_refresh_token(self):
        token = TokenInfo(access_token="A2", expires_at=NOW + 3600)
        keys = [k for k, _ in token.to_store_pairs()]
        self.assertEqual(keys, ["access_token", "expires_at"])

    def test_store_pairs_include_rotated_refresh_token(self):
        token = TokenInfo(access_token="A2", expires_at=NOW, refresh_token="R2")
        self.assertIn(("refresh_token", "R2"), token.to_store_pairs())

    def test_rejects_missing_access_token(self):
        with self.assertRaises(ValueError):
            TokenInfo.from_token_response({"expires_in": 3600}, now=NOW)

    def test_rejects_missing_expires_in(self):
        with self.assertRaises(ValueError):
            TokenInfo.from_token_response({"access_token": "A2"}, now=NOW)


class TestTokenLifecycleManager(unittest.IsolatedAsyncioTestCase):
    async def test_unexpired_token_returned_without_refresh(self):
        clock = FakeClock()
        store = _store("A1", "R1", NOW + 60)
        refresher = RecordingRefresher(store, clock)
        manager = TokenLifecycleManager(store, refresher, clock=clock)

        self.assertEqual(await manager.get_valid_token(), "A1")
        self.assertEqual(refresher.calls, [])

    async def test_token_without_expiry_returned_as_is(self):
        store = _store("A1")
        refresher = RecordingRefresher(store, FakeClock())
        manager = TokenLifecycleManager(store, refresher, clock=FakeClock())

        self.assertEqual(await manager.get_valid_token(), "A1")
        self.assertEqual(refresher.calls, [])

    async def test_no_access_token_raises_no_session(self):
        store = _store(refresh="R1")
        refresher = RecordingRefresher(store, FakeClock())
        manager = TokenLifecycleManager(store, refresher, clock=FakeClock())

        with self.assertRaises(NoSessionError):
            await manager.get_valid_token()
        self.assertEqual(refresher.calls, [])

    async def test_expired_token_refreshed_exactly_once(self):
        clock = FakeClock()
        store = _store("A1", "R1", NOW - 1)
        refresher = RecordingRefresher(store, clock)
        manager = TokenLifecycleManager(store, refresher, clock=clock)

        self.assertEqual(await manager.get_valid_token(), "A2")
        self.assertEqual(refresher.calls, ["R1"])

        snapshot = store.snapshot()
        self.assertEqual(snapshot["access_token"], "A2")
        self.assertEqual(float(snapshot["expires_at"]), NOW + 3600)
        self.assertEqual(snapshot["refresh_token"], "R1")

        # Fresh token now served from the cache.
        self.assertEqual(await manager.get_valid_token(), "A2")
        self.assertEqual(len(refresher.calls), 1)

    async def test_expired_without_refresh_token_fails_without_network(self):
        store = _store("A1", None, NOW - 1)
        refresher = RecordingRefresher(store, FakeClock())
        manager = TokenLifecycleManager(store, refresher, clock=FakeClock())

        with self.assertRaises(RefreshFailedError):
            await manager.get_valid_token()
        self.assertEqual(refresher.calls, [])

    async def test_refresh_failure_propagates(self):
        store = _store("A1", "R1", NOW - 1)
        refresher = FailingRefresher()
        manager = TokenLifecycleManager(store, refresher, clock=FakeClock())

        with self.assertRaises(RefreshFailedError):
            await manager.get_valid_token()
        self.assertEqual(refresher.calls, 1)
        self.assertFalse(manager.refresh_in_flight)

    async def test_clock_drives_expiry(self):
        clock = FakeClock()
        store = _store("A1", "R1", NOW + 10)
        refresher = RecordingRefresher(store, clock)
        manager = TokenLifecycleManager(store, refresher, clock=clock)

        self.assertEqual(await manager.get_valid_token(), "A1")
        clock.now += 10
        self.assertEqual(await manager.get_valid_token(), "A2")
        self.assertEqual(refresher.calls, ["R1"])

    async def test_concurrent_expired_callers_share_one_refresh(self):
        clock = FakeClock()
        store = _store("A1", "R1", NOW - 1)
        gate = asyncio.Event()
        refresher = RecordingRefresher(store, clock, gate=gate)
        manager = TokenLifecycleManager(store, refresher, clock=clock)

        tasks = [asyncio.create_task(manager.get_valid_token()) for _ in range(5)]
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertTrue(manager.refresh_in_flight)

        gate.set()
        results = await asyncio.gather(*tasks)

        self.assertEqual(results, ["A2"] * 5)
        self.assertEqual(refresher.calls, ["R1"])
        await asyncio.sleep(0)
        self.assertFalse(manager.refresh_in_flight)

    async def test_cancelled_waiter_does_not_cancel_shared_refresh(self):
        clock = FakeClock()
        store = _store("A1", "R1", NOW - 1)
        gate = asyncio.Event()
        refresher = RecordingRefresher(store, clock, gate=gate)
        manager = TokenLifecycleManager(store, refresher, clock=clock)

        first = asyncio.create_task(manager.get_valid_token())
        second = asyncio.create_task(manager.get_valid_token())
        for _ in range(5):
            await asyncio.sleep(0)

        first.cancel()
        gate.set()

        self.assertEqual(await second, "A2")
        with self.assertRaises(asyncio.CancelledError):
            await first
        self.assertEqual(store.snapshot()["access_token"], "A2")
        self.assertEqual(len(refresher.calls), 1)

    async def test_has_valid_session(self):
        clock = FakeClock()
        manager = TokenLifecycleManager(_store("A1", "R1", NOW + 5), None, clock=clock)
        self.assertTrue(await manager.has_valid_session())

        clock.now += 5
        self.assertFalse(await manager.has_valid_session())

        empty = TokenLifecycleManager(_store(), None, clock=clock)
        self.assertFalse(await empty.has_valid_session())


if __name__ == "__main__":
    unittest.main(verbosity=2)
