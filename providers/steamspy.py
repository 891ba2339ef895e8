"""SteamSpy adapter (the community tag provider)."""

from __future__ import annotations

import logging
import numbers
from typing import Any, Final, Mapping

from errors import ProviderError
from helpers import coerce_int
from providers.fetch import FetchClient, ProviderPacer

logger = logging.getLogger(__name__)

PROVIDER = "steamspy"

STEAMSPY_API = "https://steamspy.com/api.php"
RATE_LIMIT_DELAY = 0.5
MAX_CONCURRENT: Final[int] = 2
TOP_TAG_LIMIT: Final[int] = 10

GENRE_ACRONYMS: Final[frozenset[str]] = frozenset(
    {"RPG", "MMO", "MMORPG", "FPS", "RTS", "VR", "AR", "PVP", "PVE", "DLC"}
)


def normalize_genre(genre: str) -> str:
    words = []
    for word in genre.split(" "):
        upper = word.upper()
        if upper in GENRE_ACRONYMS:
            words.append(upper)
        else:
            words.append(word[:1].upper() + word[1:].lower())
    return " ".join(words)


def parse_genres(genre_string: str | None) -> list[str]:
    """Split SteamSpy's comma separated genre text into Title Case names."""

    if not genre_string or not str(genre_string).strip():
        return []
    genres = (normalize_genre(part.strip()) for part in str(genre_string).split(","))
    return [genre for genre in genres if genre]


def extract_top_tags(tag_votes: Mapping[str, Any] | None, limit: int = TOP_TAG_LIMIT) -> list[str]:
    """Return tag names ordered by vote count, highest first."""

    if not isinstance(tag_votes, Mapping):
        return []
    votes: list[tuple[str, float]] = []
    for tag, count in tag_votes.items():
        if isinstance(count, numbers.Real) and not isinstance(count, bool):
            votes.append((str(tag), float(count)))
        else:
            numeric = coerce_int(count)
            votes.append((str(tag), float(numeric or 0)))
    votes.sort(key=lambda item: item[1], reverse=True)
    return [tag for tag, _ in votes[: max(limit, 0)]]


class SteamSpyClient:
    """Fetch genre strings and tag votes for Steam apps."""

    def __init__(
        self,
        *,
        fetch: FetchClient | None = None,
        pacer: ProviderPacer | None = None,
    ) -> None:
        self._fetch = fetch or FetchClient()
        self._pacer = pacer or ProviderPacer(RATE_LIMIT_DELAY)

    def fetch_app_details(self, app_id: int) -> dict[str, Any] | None:
        """Return ``{genreString, tagVotes}`` or ``None`` when SteamSpy has no data."""

        self._pacer.wait()
        url = f"{STEAMSPY_API}?request=appdetails&appid={int(app_id)}"
        status, payload = self._fetch.get_json(url, provider=PROVIDER)
        if payload is None:
            logger.warning("SteamSpy API error for app %s: %s", app_id, status)
            return None
        if not isinstance(payload, Mapping):
            raise ProviderError(
                f"unexpected SteamSpy payload for app {app_id}", provider=PROVIDER, status=status
            )
        if coerce_int(payload.get("appid")) in (None, 0):
            return None
        tags = payload.get("tags")
        return {
            "genreString": str(payload.get("genre") or ""),
            # SteamSpy sends [] instead of {} when an app has no tags.
            "tagVotes": dict(tags) if isinstance(tags, Mapping) else {},
        }


__all__ = [
    "GENRE_ACRONYMS",
    "MAX_CONCURRENT",
    "RATE_LIMIT_DELAY",
    "SteamSpyClient",
    "extract_top_tags",
    "normalize_genre",
    "parse_genres",
]
