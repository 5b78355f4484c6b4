import asyncio
import time

import questionary

from config import apply_config_profile, list_profiles, load_config, update_config
from spotify_session import (
    AuthExpiredError,
    BatchFailedError,
    CredentialStore,
    CredentialStoreError,
    SessionError,
    SpotifyClient,
    StatsLoader,
    build_credential_store,
)
from spotify_session.client import TIME_RANGES
from utils.logger import log_info, log_warning, log_error, log_success

TIME_RANGE_LABELS = {
    "short_term": "4 Weeks",
    "medium_term": "6 Months",
    "long_term": "All Time",
}

NO_SESSION_MESSAGE = (
    "No Spotify session stored. This tool does not run the browser login itself: "
    "the PKCE login flow seeds the session by passing its token response to "
    "spotify_session.store_login_tokens(), which writes it to the configured session store."
)


def _on_session_invalidated() -> None:
    log_warning("Session expired. Please log in again.")


async def _with_client(config: dict, action, store: CredentialStore = None):
    async with SpotifyClient(config, store=store, on_session_invalidated=_on_session_invalidated) as client:
        return await action(client)


def _run(config: dict, action, store: CredentialStore = None):
    """Run one client action on a fresh event loop; report failures instead of raising."""
    try:
        return asyncio.run(_with_client(config, action, store))
    except AuthExpiredError:
        log_info("Log in again to continue.")
    except BatchFailedError as e:
        if e.auth_expired:
            log_info("Log in again to continue.")
        else:
            log_error("Failed to fetch your Spotify data.")
            for err in e.errors.values():
                if isinstance(err, SessionError):
                    _log_session_error(err)
    except SessionError as e:
        _log_session_error(e)
    except (CredentialStoreError, ValueError) as e:
        log_error(str(e))
    return None


def _log_session_error(error: SessionError) -> None:
    info = error.to_dict()
    status = info["status"] if info["status"] is not None else "n/a"
    log_error(f"Spotify request failed ({info['kind']}, status {status}): {info['message']}")


async def _session_status(client: SpotifyClient) -> None:
    session = await client.token_manager.load_session()
    if not session.access_token:
        log_info(NO_SESSION_MESSAGE)
        return

    if session.expires_at is not None:
        exp_str = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(float(session.expires_at)))
    else:
        exp_str = "unknown"

    if await client.token_manager.has_valid_session():
        log_info(f"Signed in. Access token valid until {exp_str}.")
    elif session.refresh_token:
        log_info(f"Access token expired at {exp_str}; it will be refreshed on the next request.")
    else:
        log_warning(f"Access token expired at {exp_str} and cannot be refreshed.")


def _print_home(home: dict, time_range: str) -> None:
    print("\n" + "=" * 50)
    print(f"🎧 Your Stats ({TIME_RANGE_LABELS.get(time_range, time_range)})")
    print("=" * 50)

    print("\nTop Tracks:")
    for i, track in enumerate(home.get("top_tracks") or [], start=1):
        artists = ", ".join(a.get("name", "") for a in track.get("artists") or [])
        duration_ms = int(track.get("duration_ms") or 0)
        minutes, seconds = divmod(round(duration_ms / 1000), 60)
        print(f"  {i:>2}. {track.get('name')} - {artists} ({minutes}:{seconds:02d})")

    print("\nTop Artists:")
    for i, artist in enumerate(home.get("top_artists") or [], start=1):
        print(f"  {i:>2}. {artist.get('name')}")

    print("\nRecently Played:")
    for item in home.get("recently_played") or []:
        track = item.get("track") or {}
        print(f"  • {track.get('name')} ({item.get('played_at', '')})")

    print("\n" + "=" * 50)


def _print_profile(profile: dict) -> None:
    user = profile.get("user") or {}
    stats = profile.get("stats") or {}
    listening = profile.get("listening") or {}

    print("\n" + "=" * 50)
    print(f"👤 {user.get('display_name') or user.get('id') or 'Spotify user'}")
    print("=" * 50)
    print(f"  Saved tracks:     {stats.get('total_tracks', 0)}")
    print(f"  Followed artists: {stats.get('total_artists', 0)}")
    print(f"  Playlists:        {stats.get('total_playlists', 0)}")
    print(f"  Avg popularity:   {listening.get('average_popularity', 0)}")
    print(f"  Minutes (top 50): {listening.get('total_minutes', 0)}")

    genres = profile.get("top_genres") or []
    if genres:
        print("\nTop Genres:")
        for g in genres:
            print(f"  • {g['genre']} ({g['count']})")
    print("\n" + "=" * 50)


def _show_home(config: dict, store: CredentialStore) -> None:
    time_range = questionary.select(
        "Time range:",
        choices=[questionary.Choice(title=TIME_RANGE_LABELS[r], value=r) for r in TIME_RANGES],
    ).ask()
    if not time_range:
        return

    home = _run(config, lambda client: StatsLoader(client).load_home(time_range=time_range), store)
    if home is not None:
        _print_home(home, time_range)


def _show_profile(config: dict, store: CredentialStore) -> None:
    profile = _run(config, lambda client: StatsLoader(client).load_profile(), store)
    if profile is not None:
        _print_profile(profile)


def _switch_profile(config: dict) -> dict:
    profiles = list_profiles()
    name = questionary.select(
        f"Current retry profile: {config.get('profile', 'light')}. Switch to:",
        choices=list(profiles.keys()) + ["Cancel"],
    ).ask()
    if not name or name == "Cancel":
        return config

    ok, message = apply_config_profile(name)
    if not ok:
        log_error(message)
        return config
    log_success(message)
    return load_config()


def _set_client_id(config: dict) -> dict:
    client_id = questionary.text(
        "Spotify Client ID:",
        default=str(config.get("spotify_client_id") or ""),
    ).ask()
    if client_id is None:
        return config

    ok, message = update_config("spotify_client_id", client_id.strip())
    if not ok:
        log_error(message)
        return config
    log_success(message)
    return load_config()


def _sign_out(config: dict, store: CredentialStore) -> None:
    if not questionary.confirm("Are you sure you want to log out?", default=False).ask():
        return

    async def _do(client: SpotifyClient) -> bool:
        await client.sign_out()
        return True

    if _run(config, _do, store):
        log_success("Logged out.")


def _store_settings(config: dict) -> tuple:
    return config.get("session_store"), config.get("session_store_path")


def session_menu(config: dict) -> dict:
    """
    Display the session menu and handle user selections.
    Returns the potentially updated config dict.
    """
    # One store for the whole menu, so a memory-backed session survives between actions.
    store = build_credential_store(config)
    store_settings = _store_settings(config)

    while True:
        choice = questionary.select(
            "🎵 Spotify Stats: What would you like to do?",
            choices=[
                "Show session status",
                "Show listening stats",
                "Show profile",
                "Switch retry profile",
                "Set Spotify Client ID",
                "Log out",
                "Exit",
            ],
        ).ask()

        if choice == "Show session status":
            _run(config, _session_status, store)

        elif choice == "Show listening stats":
            _show_home(config, store)

        elif choice == "Show profile":
            _show_profile(config, store)

        elif choice == "Switch retry profile":
            config = _switch_profile(config)

        elif choice == "Set Spotify Client ID":
            config = _set_client_id(config)

        elif choice == "Log out":
            _sign_out(config, store)

        elif choice in ("Exit", None):
            break

        if _store_settings(config) != store_settings:
            store = build_credential_store(config)
            store_settings = _store_settings(config)

    return config
