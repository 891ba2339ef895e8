"""SteamGridDB adapter (the community art provider)."""

from __future__ import annotations

import logging
from typing import Any, Mapping
from urllib.parse import quote

from catalog.matcher import titles_match
from errors import ProviderError, ValidationError
from helpers import coerce_int
from providers.fetch import FetchClient, ProviderPacer

logger = logging.getLogger(__name__)

PROVIDER = "steamgriddb"

API_BASE = "https://www.steamgriddb.com/api/v2"
RATE_LIMIT_DELAY = 0.25
GRID_DIMENSIONS = "600x900"


def normalize_grid(item: Any) -> dict[str, Any] | None:
    if not isinstance(item, Mapping):
        return None
    grid_id = coerce_int(item.get("id"))
    url = item.get("url")
    if grid_id is None or not isinstance(url, str) or not url:
        return None
    score = item.get("score")
    return {
        "id": grid_id,
        "score": score if isinstance(score, (int, float)) and not isinstance(score, bool) else 0,
        "safetyFlags": {
            "nsfw": bool(item.get("nsfw")),
            "humor": bool(item.get("humor")),
        },
        "url": url,
        "width": coerce_int(item.get("width")),
        "height": coerce_int(item.get("height")),
        "style": item.get("style") or None,
    }


class SteamGridDBClient:
    """Search SteamGridDB games and list their vertical grid images."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        fetch: FetchClient | None = None,
        pacer: ProviderPacer | None = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._fetch = fetch or FetchClient()
        self._pacer = pacer or ProviderPacer(RATE_LIMIT_DELAY)

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    @property
    def pacer(self) -> ProviderPacer:
        return self._pacer

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ValidationError("STEAMGRIDDB_API_KEY environment variable not set")
        return {"Authorization": f"Bearer {self._api_key}"}

    def _get_data(self, url: str, what: str) -> Any:
        headers = self._headers()
        self._pacer.wait()
        status, payload = self._fetch.get_json(url, headers=headers, provider=PROVIDER)
        if payload is None:
            if status != 404:
                logger.warning("SteamGridDB %s failed: %s", what, status)
            return None
        if not isinstance(payload, Mapping) or not payload.get("success"):
            return None
        return payload.get("data")

    def search_game(self, title: str) -> dict[str, Any] | None:
        """Return ``{providerId, name}`` for the first result whose name matches ``title``."""

        text = str(title or "").strip()
        if not text:
            return None
        data = self._get_data(
            f"{API_BASE}/search/autocomplete/{quote(text, safe='')}", f"search for {text!r}"
        )
        if not isinstance(data, list):
            return None
        for game in data:
            if not isinstance(game, Mapping):
                continue
            name = str(game.get("name") or "")
            provider_id = coerce_int(game.get("id"))
            if provider_id is not None and titles_match(text, name):
                return {"providerId": provider_id, "name": name}
        logger.info("No SteamGridDB result matched %r", text)
        return None

    def get_game_by_steam_app_id(self, steam_app_id: int) -> dict[str, Any] | None:
        data = self._get_data(
            f"{API_BASE}/games/steam/{int(steam_app_id)}", f"lookup of app {steam_app_id}"
        )
        if not isinstance(data, Mapping):
            return None
        provider_id = coerce_int(data.get("id"))
        if provider_id is None:
            return None
        return {"providerId": provider_id, "name": str(data.get("name") or "")}

    def get_grids(self, provider_id: int) -> list[dict[str, Any]]:
        data = self._get_data(
            f"{API_BASE}/grids/game/{int(provider_id)}?dimensions={GRID_DIMENSIONS}",
            f"grids for game {provider_id}",
        )
        if not isinstance(data, list):
            return []
        grids = (normalize_grid(item) for item in data)
        return [grid for grid in grids if grid is not None]

    def download(self, url: str) -> bytes:
        """Return the raw image bytes behind a grid URL."""

        response = self._fetch.call(
            url, headers={"Accept": "image/*"}, provider=PROVIDER
        )
        if not response.ok or not response.body:
            raise ProviderError(
                f"HTTP {response.status}", provider=PROVIDER, status=response.status, url=url
            )
        return response.body


__all__ = [
    "GRID_DIMENSIONS",
    "RATE_LIMIT_DELAY",
    "SteamGridDBClient",
    "normalize_grid",
]
