"""Steam Web API and storefront adapter (the owned-library provider)."""

from __future__ import annotations

import logging
from typing import Any, Mapping
from urllib.parse import urlencode

from errors import ProviderError, ValidationError
from helpers import _dedupe_preserve_order, _parse_iterable, coerce_int, round_half_up
from providers.fetch import FetchClient, ProviderPacer

logger = logging.getLogger(__name__)

PROVIDER = "steam"

STEAM_API_BASE = "https://api.steampowered.com"
STEAM_STORE_API = "https://store.steampowered.com/api"
STEAM_REVIEWS_URL = "https://store.steampowered.com/appreviews"
STEAM_HEADER_URL = "https://steamcdn-a.akamaihd.net/steam/apps/{app_id}/header.jpg"

RATE_LIMIT_DELAY = 1.5


def default_header_image(app_id: int) -> str:
    return STEAM_HEADER_URL.format(app_id=app_id)


class SteamClient:
    """Read owned games, store details and review summaries from Steam."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        steam_id: str | None = None,
        fetch: FetchClient | None = None,
        pacer: ProviderPacer | None = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._steam_id = (steam_id or "").strip()
        self._fetch = fetch or FetchClient()
        self._pacer = pacer or ProviderPacer(RATE_LIMIT_DELAY)

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._steam_id)

    def _get(self, url: str) -> tuple[int, Any]:
        self._pacer.wait()
        return self._fetch.get_json(url, provider=PROVIDER)

    def fetch_owned_games(
        self, api_key: str | None = None, steam_id: str | None = None
    ) -> list[dict[str, Any]]:
        """Return ``[{externalId, title, minutesPlayed}]`` for the owned library."""

        key = (api_key or self._api_key).strip()
        user = (steam_id or self._steam_id).strip()
        if not key or not user:
            raise ValidationError(
                "Steam API key and user ID must be configured in environment variables"
            )

        query = urlencode(
            {
                "key": key,
                "steamid": user,
                "include_appinfo": "true",
                "include_played_free_games": "true",
                "format": "json",
            }
        )
        url = f"{STEAM_API_BASE}/IPlayerService/GetOwnedGames/v1/?{query}"
        status, payload = self._get(url)
        if payload is None:
            raise ProviderError(
                f"Steam API error: {status}", provider=PROVIDER, status=status
            )

        response = payload.get("response") if isinstance(payload, Mapping) else None
        games = response.get("games") if isinstance(response, Mapping) else None
        if not isinstance(games, list):
            raise ProviderError(
                "Invalid response from Steam API. Make sure your profile is public.",
                provider=PROVIDER,
                status=status,
            )

        owned: list[dict[str, Any]] = []
        for game in games:
            if not isinstance(game, Mapping):
                continue
            app_id = coerce_int(game.get("appid"))
            if app_id is None:
                continue
            owned.append(
                {
                    "externalId": app_id,
                    "title": str(game.get("name") or "").strip() or f"App {app_id}",
                    "minutesPlayed": coerce_int(game.get("playtime_forever")) or 0,
                }
            )
        return owned

    def fetch_app_details(self, app_id: int) -> dict[str, Any] | None:
        """Return normalized storefront details or ``None`` when Steam has none."""

        url = f"{STEAM_STORE_API}/appdetails?appids={int(app_id)}"
        try:
            status, payload = self._get(url)
        except ProviderError as exc:
            logger.warning("Failed to fetch details for app %s: %s", app_id, exc)
            return None
        if payload is None:
            logger.warning("Failed to fetch details for app %s: %s", app_id, status)
            return None
        entry = payload.get(str(int(app_id))) if isinstance(payload, Mapping) else None
        if not isinstance(entry, Mapping) or not entry.get("success"):
            return None
        data = entry.get("data")
        if not isinstance(data, Mapping):
            return None
        return normalize_app_details(data)

    def fetch_reviews(self, app_id: int) -> dict[str, Any] | None:
        """Return the review summary used for community rating refreshes."""

        query = urlencode({"json": 1, "language": "all", "purchase_type": "all"})
        url = f"{STEAM_REVIEWS_URL}/{int(app_id)}?{query}"
        status, payload = self._get(url)
        if payload is None:
            logger.warning("Failed to fetch reviews for app %s: %s", app_id, status)
            return None
        if not isinstance(payload, Mapping) or not payload.get("success"):
            return None
        summary = payload.get("query_summary")
        if not isinstance(summary, Mapping):
            return None
        return normalize_review_summary(summary)


def normalize_app_details(data: Mapping[str, Any]) -> dict[str, Any]:
    release = data.get("release_date")
    metacritic = data.get("metacritic")
    screenshots = [
        shot.get("path_full")
        for shot in data.get("screenshots") or []
        if isinstance(shot, Mapping) and shot.get("path_full")
    ]
    return {
        "title": str(data.get("name") or "").strip(),
        "description": data.get("detailed_description") or data.get("about_the_game") or None,
        "short_description": data.get("short_description") or None,
        "developer": ", ".join(_parse_iterable(data.get("developers"))) or None,
        "publisher": ", ".join(_parse_iterable(data.get("publishers"))) or None,
        "release_date": release.get("date") if isinstance(release, Mapping) else None,
        "genres": _dedupe_preserve_order(_parse_iterable(data.get("genres"))),
        "tags": _dedupe_preserve_order(_parse_iterable(data.get("categories"))),
        "metacritic_score": coerce_int(metacritic.get("score")) if isinstance(metacritic, Mapping) else None,
        "metacritic_url": metacritic.get("url") if isinstance(metacritic, Mapping) else None,
        "screenshots": screenshots,
        "cover_image_url": data.get("header_image") or None,
    }


def normalize_review_summary(summary: Mapping[str, Any]) -> dict[str, Any]:
    total = coerce_int(summary.get("total_reviews")) or 0
    positive = coerce_int(summary.get("total_positive")) or 0
    negative = coerce_int(summary.get("total_negative")) or 0
    rating = round_half_up(positive / total * 100) if total > 0 else 0
    return {
        "rating": rating,
        "totalReviews": total,
        "totalPositive": positive,
        "totalNegative": negative,
        "reviewScoreDesc": str(summary.get("review_score_desc") or ""),
    }


__all__ = [
    "RATE_LIMIT_DELAY",
    "SteamClient",
    "default_header_image",
    "normalize_app_details",
    "normalize_review_summary",
]
