"""Catalog snapshot parsing and validation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Final, Mapping

from errors import ValidationError
from helpers import _normalize_text, _parse_iterable, coerce_int, extract_release_year

CATALOG_PLATFORMS: Final[tuple[str, ...]] = ("gamepass", "eaplay", "ubisoftplus")


@dataclass
class CatalogEntry:
    title: str
    external_id: str | None = None
    steam_app_id: int | None = None
    release_date: str | None = None
    developer: str | None = None
    publisher: str | None = None
    genres: list[str] = field(default_factory=list)
    description: str | None = None
    cover_url: str | None = None

    @property
    def release_year(self) -> int | None:
        return extract_release_year(self.release_date)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'CatalogEntry':
        external_id = _normalize_text(payload.get("external_id")) or None
        return cls(
            title=_normalize_text(payload.get("title")),
            external_id=external_id,
            steam_app_id=coerce_int(payload.get("steam_app_id")),
            release_date=_normalize_text(payload.get("release_date")) or None,
            developer=_normalize_text(payload.get("developer")) or None,
            publisher=_normalize_text(payload.get("publisher")) or None,
            genres=_parse_iterable(payload.get("genres")),
            description=_normalize_text(payload.get("description")) or None,
            cover_url=_normalize_text(payload.get("cover_url")) or None,
        )


@dataclass
class CatalogSnapshot:
    platform: str
    games: list[CatalogEntry] = field(default_factory=list)
    updated: str | None = None
    source: str | None = None

    def titles(self) -> set[str]:
        return {entry.title.lower() for entry in self.games}


def validate_snapshot(data: Any) -> CatalogSnapshot:
    """Return a :class:`CatalogSnapshot` or raise :class:`ValidationError`."""

    if not isinstance(data, Mapping):
        raise ValidationError("Invalid catalog format: expected object")

    platform = data.get("platform")
    if not platform or not isinstance(platform, str):
        raise ValidationError("Invalid catalog format: missing or invalid platform")
    if platform not in CATALOG_PLATFORMS:
        raise ValidationError(
            f"Invalid platform: {platform}. Must be one of: {', '.join(CATALOG_PLATFORMS)}"
        )

    games = data.get("games")
    if not isinstance(games, list):
        raise ValidationError("Invalid catalog format: games must be an array")

    entries: list[CatalogEntry] = []
    for index, game in enumerate(games):
        if not isinstance(game, Mapping):
            raise ValidationError(f"Invalid game at index {index}: expected object")
        title = game.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError(f"Invalid game at index {index}: missing or invalid title")
        entries.append(CatalogEntry.from_dict(game))

    return CatalogSnapshot(
        platform=platform,
        games=entries,
        updated=_normalize_text(data.get("updated")) or None,
        source=_normalize_text(data.get("source")) or None,
    )


__all__ = ["CATALOG_PLATFORMS", "CatalogEntry", "CatalogSnapshot", "validate_snapshot"]
