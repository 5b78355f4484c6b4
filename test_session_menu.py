import os
import sys
import unittest

# Ensure local imports work when running this file directly.
THIS_DIR = os.path.dirname(os.path.abspath(__file__))
if THIS_DIR not in sys.path:
    sys.path.insert(0, THIS_DIR)

from menus.session_menu import _run, _session_status, _store_settings
from spotify_session.auth import store_login_tokens
from spotify_session.credential_store import MemoryCredentialStore
from spotify_session.errors import BatchFailedError, RemoteError


CONFIG = {"spotify_client_id": "test-client", "session_store": "memory", "retry_max_attempts": 1}
LOGIN_RESPONSE = {"access_token": "A1", "refresh_token": "R1", "expires_in": 3600}


class TestMenuSessionStore(unittest.TestCase):
    def test_memory_session_survives_between_actions(self):
        store = MemoryCredentialStore()

        _run(CONFIG, lambda client: store_login_tokens(client.store, LOGIN_RESPONSE), store)

        with self.assertLogs("spotify_stats", level="INFO") as logs:
            _run(CONFIG, _session_status, store)
        self.assertTrue(any("Signed in" in line for line in logs.output))
        self.assertEqual(store.snapshot()["access_token"], "A1")

    def test_sign_out_clears_shared_store(self):
        store = MemoryCredentialStore()
        _run(CONFIG, lambda client: store_login_tokens(client.store, LOGIN_RESPONSE), store)

        async def sign_out(client):
            await client.sign_out()
            return True

        self.assertTrue(_run(CONFIG, sign_out, store))
        self.assertEqual(store.snapshot(), {})

    def test_no_session_explains_how_it_is_seeded(self):
        with self.assertLogs("spotify_stats", level="INFO") as logs:
            _run(CONFIG, _session_status, MemoryCredentialStore())

        output = "\n".join(logs.output)
        self.assertIn("No Spotify session stored", output)
        self.assertIn("store_login_tokens()", output)

    def test_store_settings_track_backend_and_path(self):
        self.assertNotEqual(
            _store_settings({"session_store": "file", "session_store_path": "a.json"}),
            _store_settings({"session_store": "file", "session_store_path": "b.json"}),
        )


class TestMenuErrorReport(unittest.TestCase):
    def test_session_error_is_reported_with_kind_and_status(self):
        async def failing(client):
            raise RemoteError("Spotify API error 503", status=503, endpoint="/me")

        with self.assertLogs("spotify_stats", level="ERROR") as logs:
            self.assertIsNone(_run(CONFIG, failing, MemoryCredentialStore()))

        self.assertIn("(remote_error, status 503): Spotify API error 503", logs.output[0])

    def test_batch_failure_reports_each_endpoint_error(self):
        async def failing(client):
            raise BatchFailedError({"top_tracks": RemoteError("timed out")})

        with self.assertLogs("spotify_stats", level="ERROR") as logs:
            _run(CONFIG, failing, MemoryCredentialStore())

        output = "\n".join(logs.output)
        self.assertIn("Failed to fetch your Spotify data.", output)
        self.assertIn("(remote_error, status n/a): timed out", output)

    def test_to_dict(self):
        cause = ValueError("bad json")
        info = RemoteError("Spotify API error 500", status=500, cause=cause).to_dict()
        self.assertEqual(
            info,
            {
                "kind": "remote_error",
                "status": 500,
                "message": "Spotify API error 500",
                "cause": repr(cause),
            },
        )


if __name__ == "__main__":
    unittest.main(verbosity=2)
