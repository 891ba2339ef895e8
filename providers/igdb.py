"""IGDB client (the universal metadata provider)."""

from __future__ import annotations

import logging
import numbers
import threading
import time
from typing import Any, Callable, Mapping
from urllib.parse import urlencode

from catalog.matcher import DEFAULT_THRESHOLD, score_candidate
from errors import ProviderError, ValidationError
from helpers import _dedupe_preserve_order, _parse_iterable, coerce_int, extract_release_year
from providers.fetch import FetchClient, ProviderPacer

logger = logging.getLogger(__name__)

PROVIDER = "igdb"

RATE_LIMIT_DELAY = 0.25
TOKEN_EXPIRY_MARGIN = 60.0
STEAM_EXTERNAL_CATEGORY = 1
SEARCH_LIMIT = 10

GAME_FIELDS = (
    "id,name,slug,rating,rating_count,aggregated_rating,aggregated_rating_count,"
    "total_rating,genres.name,themes.name,summary,first_release_date"
)


def _escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


def _coerce_rating(value: Any) -> float | None:
    if value in (None, "") or isinstance(value, bool):
        return None
    if isinstance(value, numbers.Real):
        return round(float(value), 2)
    try:
        return round(float(str(value).strip()), 2)
    except (TypeError, ValueError):
        return None


class IGDBClient:
    """Authenticate against Twitch and query IGDB for game metadata."""

    BASE_URL = "https://api.igdb.com/v4"
    TOKEN_URL = "https://id.twitch.tv/oauth2/token"

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        fetch: FetchClient | None = None,
        pacer: ProviderPacer | None = None,
        threshold: int = DEFAULT_THRESHOLD,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._client_id = (client_id or "").strip()
        self._client_secret = (client_secret or "").strip()
        self._fetch = fetch or FetchClient()
        self._pacer = pacer or ProviderPacer(RATE_LIMIT_DELAY)
        self._threshold = int(threshold)
        self._clock = clock or time.time
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def access_token(self) -> str:
        """Return a cached Twitch app token, refreshing it shortly before expiry."""

        with self._token_lock:
            now = self._clock()
            if self._token and now < self._token_expires_at - TOKEN_EXPIRY_MARGIN:
                return self._token
            if not self.configured:
                raise ValidationError("missing twitch client credentials")

            payload = urlencode(
                {
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                }
            ).encode("utf-8")
            response = self._fetch.call(
                self.TOKEN_URL,
                method="POST",
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                provider="twitch",
            )
            data = response.json() if response.ok else None
            token = data.get("access_token") if isinstance(data, Mapping) else None
            if not token:
                raise ProviderError(
                    f"failed to obtain twitch token: {response.status}",
                    provider="twitch",
                    status=response.status,
                )
            expires_in = coerce_int(data.get("expires_in")) or 0
            self._token = str(token)
            self._token_expires_at = now + expires_in
            return self._token

    def _query(self, endpoint: str, body: str) -> list[Any]:
        token = self.access_token()
        self._pacer.wait()
        response = self._fetch.call(
            f"{self.BASE_URL}/{endpoint}",
            method="POST",
            data=body.encode("utf-8"),
            headers={
                "Client-ID": self._client_id,
                "Authorization": f"Bearer {token}",
                "Content-Type": "text/plain",
            },
            provider=PROVIDER,
        )
        if response.status == 401:
            # Token revoked early; drop it so the next call re-authenticates.
            self._token = None
        if not response.ok:
            logger.warning("IGDB %s query failed: %s", endpoint, response.status)
            return []
        payload = response.json()
        return payload if isinstance(payload, list) else []

    def find_by_steam_app_id(self, steam_app_id: int) -> dict[str, Any] | None:
        body = (
            f"fields game.{GAME_FIELDS.replace(',', ',game.')}; "
            f'where category = {STEAM_EXTERNAL_CATEGORY} & uid = "{int(steam_app_id)}"; '
            "limit 1;"
        )
        for item in self._query("external_games", body):
            if isinstance(item, Mapping) and isinstance(item.get("game"), Mapping):
                return normalize_game(item["game"])
        return None

    def search(self, title: str, *, release_year: int | None = None) -> dict[str, Any] | None:
        """Return the best-scoring IGDB result for ``title`` above the threshold."""

        text = str(title or "").strip()
        if not text:
            return None
        body = f'search "{_escape(text)}"; fields {GAME_FIELDS}; limit {SEARCH_LIMIT};'
        best: tuple[dict[str, Any], int] | None = None
        wanted = text.casefold()
        for item in self._query("games", body):
            game = normalize_game(item)
            if game is None:
                continue
            if game["title"].casefold() == wanted:
                score = 100
            else:
                score = score_candidate(
                    text,
                    game["title"],
                    release_year=release_year,
                    candidate_year=game.get("releaseYear"),
                )
            if best is None or score > best[1]:
                best = (game, score)
        if best is None or best[1] < self._threshold:
            logger.info("No IGDB match for %r", text)
            return None
        result = dict(best[0])
        result["confidence"] = best[1]
        return result


def normalize_game(item: Any) -> dict[str, Any] | None:
    """Return the normalized metadata shape for an IGDB game payload."""

    if not isinstance(item, Mapping):
        return None
    igdb_id = coerce_int(item.get("id"))
    if igdb_id is None:
        logger.warning("Skipping IGDB entry with invalid id %s", item.get("id"))
        return None
    name = item.get("name")
    summary = item.get("summary")
    title = name.strip() if isinstance(name, str) else ""
    return {
        "id": igdb_id,
        "title": title,
        "slug": item.get("slug") or None,
        "rating": _coerce_rating(item.get("rating")),
        "ratingCount": coerce_int(item.get("rating_count")),
        "aggregatedRating": _coerce_rating(item.get("aggregated_rating")),
        "aggregatedRatingCount": coerce_int(item.get("aggregated_rating_count")),
        "totalRating": _coerce_rating(item.get("total_rating")),
        "genres": _dedupe_preserve_order(_parse_iterable(item.get("genres"))),
        "themes": _dedupe_preserve_order(_parse_iterable(item.get("themes"))),
        "summary": summary.strip() if isinstance(summary, str) and summary.strip() else None,
        "releaseYear": extract_release_year(coerce_int(item.get("first_release_date"))),
    }


__all__ = ["IGDBClient", "RATE_LIMIT_DELAY", "normalize_game"]
