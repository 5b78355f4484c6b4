import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Mapping, Optional

from .errors import BatchFailedError

logger = logging.getLogger(__name__)


@dataclass
class SettledBatch:
    """Outcome of settle_all: one result (or default) and at most one error per name."""

    results: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> List[str]:
        return [name for name in self.results if name not in self.errors]

    @property
    def all_failed(self) -> bool:
        return bool(self.results) and len(self.errors) == len(self.results)

    def raise_if_all_failed(self) -> "SettledBatch":
        if self.all_failed:
            raise BatchFailedError(self.errors)
        return self


async def settle_all(
    calls: Mapping[str, Awaitable[Any]],
    defaults: Optional[Mapping[str, Any]] = None,
) -> SettledBatch:
    """Run every call concurrently; one failure never aborts the others.

    Failed calls are logged and replaced by their default (None unless given).
    Cancellation is re-raised rather than turned into a default.
    """

    defaults = defaults or {}
    names = list(calls)
    outcomes = await asyncio.gather(*(calls[n] for n in names), return_exceptions=True)

    batch = SettledBatch()
    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.error("Spotify call %r failed: %s", name, outcome)
            batch.errors[name] = outcome
            batch.results[name] = defaults.get(name)
        else:
            batch.results[name] = outcome
    return batch


def _items(payload: Any) -> List[Dict[str, Any]]:
    items = (payload or {}).get("items") if isinstance(payload, dict) else None
    return [x for x in (items or []) if isinstance(x, dict)]


def _total(payload: Any, *path: str) -> int:
    node = payload
    for key in path:
        node = node.get(key) if isinstance(node, dict) else None
    try:
        return int(node or 0)
    except (TypeError, ValueError):
        return 0


def top_genres(artists: List[Dict[str, Any]], *, limit: int = 5) -> List[Dict[str, Any]]:
    """Count genres across artists and return the most common ones."""

    counts: Counter = Counter()
    for artist in artists:
        for genre in artist.get("genres") or []:
            if isinstance(genre, str) and genre:
                counts[genre] += 1
    return [{"genre": g, "count": c} for g, c in counts.most_common(limit)]


def listening_summary(tracks: List[Dict[str, Any]]) -> Dict[str, int]:
    """Average popularity and total minutes across tracks (0 when there are none)."""

    if not tracks:
        return {"average_popularity": 0, "total_minutes": 0}

    popularity = [float(t.get("popularity") or 0) for t in tracks]
    duration_ms = sum(float(t.get("duration_ms") or 0) for t in tracks)
    return {
        "average_popularity": int(round(sum(popularity) / len(popularity))),
        "total_minutes": int(round(duration_ms / 60000)),
    }


class StatsLoader:
    """Listening stats views composed from several wrapped calls.

    Each view is one settle-all batch: an endpoint that fails contributes an
    empty result, and BatchFailedError is raised only when all of them fail.
    """

    def __init__(self, client: Any):
        self.client = client

    async def load_home(self, *, time_range: str = "short_term") -> Dict[str, List[Dict[str, Any]]]:
        batch = await settle_all(
            {
                "top_tracks": self.client.top_tracks(time_range=time_range, limit=10),
                "top_artists": self.client.top_artists(time_range=time_range, limit=5),
                "recently_played": self.client.recently_played(limit=10),
            }
        )
        batch.raise_if_all_failed()

        return {name: _items(payload) for name, payload in batch.results.items()}

    async def load_profile(self) -> Dict[str, Any]:
        batch = await settle_all(
            {
                "user": self.client.me(),
                "saved_tracks": self.client.saved_tracks(limit=1),
                "followed_artists": self.client.followed_artists(limit=1),
                "playlists": self.client.playlists(limit=1),
                "top_artists": self.client.top_artists(time_range="medium_term", limit=50),
                "top_tracks": self.client.top_tracks(time_range="medium_term", limit=50),
            },
            defaults={"user": {}},
        )
        batch.raise_if_all_failed()

        r = batch.results
        return {
            "user": r["user"] or {},
            "stats": {
                "total_tracks": _total(r["saved_tracks"], "total"),
                "total_artists": _total(r["followed_artists"], "artists", "total"),
                "total_playlists": _total(r["playlists"], "total"),
            },
            "top_genres": top_genres(_items(r["top_artists"])),
            "listening": listening_summary(_items(r["top_tracks"])),
        }
