"""Reconcile external catalog listings with the local games table.

``import_catalog`` is additive: every snapshot entry is linked to an existing
game when the identity matcher finds one, or becomes a new game with a primary
link otherwise.  ``sync_catalog`` is destructive: the snapshot is treated as
the complete current offer of one subscription service, links for titles no
longer offered are removed and games left without any link are deleted.

The two operations deliberately use different title rules.  Import goes
through :class:`catalog.matcher.IdentityMatcher` (normalized/fuzzy plus the
strict merge heuristic), while sync only keeps a link when the exact title,
compared case-insensitively, is still listed.

``import_owned_game`` handles one record from the owned-library provider and
is driven item by item by the ``library`` bulk job.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from typing import Any, Callable, Mapping

from catalog.matcher import DEFAULT_THRESHOLD, IdentityMatcher, MatchResult
from catalog.snapshot import CatalogEntry, CatalogSnapshot
from db import repository
from helpers import coerce_int
from providers.steam import default_header_image

logger = logging.getLogger(__name__)

STATUS_ADDED = "added"
STATUS_LINKED = "linked"
STATUS_ERROR = "error"

OWNED_LIBRARY_PLATFORM = "steam"


def platform_game_id(platform: str, external_id: str | None, slug: str) -> str:
    if external_id:
        return str(external_id)
    return f"{platform}-{slug}"


def build_matcher(conn: Any, *, threshold: int = DEFAULT_THRESHOLD) -> IdentityMatcher:
    return IdentityMatcher(repository.list_match_candidates(conn), threshold=threshold)


def _link_preserving_primary(
    conn: Any, game_id: int, platform: str, local_id: str
) -> None:
    existing = {
        link["platformType"]: link for link in repository.list_platform_links(conn, game_id)
    }
    current = existing.get(platform)
    is_primary = bool(current and current["isPrimary"])
    repository.add_platform_link(conn, game_id, platform, local_id, is_primary=is_primary)


def _app_ids_conflict(incoming: Any, existing: Any) -> bool:
    incoming_id = coerce_int(incoming)
    existing_id = coerce_int(existing)
    return incoming_id is not None and existing_id is not None and incoming_id != existing_id


def _resolve_entry(
    conn: Any, matcher: IdentityMatcher, platform: str, entry: CatalogEntry
) -> MatchResult | None:
    if entry.external_id:
        linked = repository.find_game_by_platform_id(conn, platform, entry.external_id)
        if linked is not None:
            return MatchResult(linked, None)
    match = matcher.match_for_merge(
        entry.title, entry.steam_app_id, release_year=entry.release_year
    )
    if match is not None and not match.authoritative:
        # Two different app ids mean two products, however close the titles.
        if _app_ids_conflict(entry.steam_app_id, match.game.get("steam_app_id")):
            return None
    return match


def import_entry(
    conn: Any, matcher: IdentityMatcher, platform: str, entry: CatalogEntry
) -> dict[str, Any]:
    """Link or create one snapshot entry; the caller commits."""

    match = _resolve_entry(conn, matcher, platform, entry)
    if match is not None:
        game = match.game
        game_id = int(game["id"])
        slug = game.get("slug") or repository.get_game(conn, game_id)["slug"]
        _link_preserving_primary(
            conn, game_id, platform, platform_game_id(platform, entry.external_id, slug)
        )
        detail: dict[str, Any] = {
            "title": entry.title,
            "status": STATUS_LINKED,
            "gameId": game_id,
        }
        if match.confidence is not None:
            detail["confidence"] = match.confidence
        return detail

    steam_app_id = entry.steam_app_id
    if steam_app_id is not None and repository.get_game_by_steam_app_id(conn, steam_app_id):
        # Only reachable when the matcher snapshot is stale; never reuse the id.
        steam_app_id = None
    slug = repository.unique_slug(conn, entry.title, steam_app_id)
    game_id = repository.insert_game(
        conn,
        {
            "title": entry.title,
            "slug": slug,
            "cover_image_url": entry.cover_url,
            "description": entry.description,
            "developer": entry.developer,
            "publisher": entry.publisher,
            "release_date": entry.release_date,
            "genres": entry.genres,
            "steam_app_id": steam_app_id,
        },
    )
    repository.add_platform_link(
        conn,
        game_id,
        platform,
        platform_game_id(platform, entry.external_id, slug),
        is_primary=True,
    )
    matcher.add(
        {
            "id": game_id,
            "title": entry.title,
            "slug": slug,
            "steam_app_id": steam_app_id,
            "release_date": entry.release_date,
        }
    )
    return {"title": entry.title, "status": STATUS_ADDED, "gameId": game_id}


def import_catalog(
    conn: Any,
    snapshot: CatalogSnapshot,
    *,
    db_lock: Any | None = None,
    threshold: int = DEFAULT_THRESHOLD,
    update_progress: Callable[..., None] | None = None,
) -> dict[str, Any]:
    """Import ``snapshot`` additively and report per-entry outcomes.

    ``db_lock`` is held from building the matcher until the last entry is
    committed, so games added by another writer can never be missed.
    """

    lock = db_lock if db_lock is not None else nullcontext()
    result: dict[str, Any] = {
        "platform": snapshot.platform,
        "total": len(snapshot.games),
        "added": 0,
        "linked": 0,
        "errors": 0,
        "details": [],
    }

    with lock:
        matcher = build_matcher(conn, threshold=threshold)
        for index, entry in enumerate(snapshot.games, start=1):
            try:
                detail = import_entry(conn, matcher, snapshot.platform, entry)
                conn.commit()
            except Exception as exc:
                conn.rollback()
                logger.warning(
                    "Catalog import of %r for %s failed: %s", entry.title, snapshot.platform, exc
                )
                detail = {"title": entry.title, "status": STATUS_ERROR, "error": str(exc)}
            result["details"].append(detail)
            if detail["status"] == STATUS_ADDED:
                result["added"] += 1
            elif detail["status"] == STATUS_LINKED:
                result["linked"] += 1
            else:
                result["errors"] += 1
            if update_progress is not None:
                update_progress(index, result["total"], entry.title)

    logger.info(
        "Imported %s catalog: %s added, %s linked, %s errors",
        snapshot.platform,
        result["added"],
        result["linked"],
        result["errors"],
    )
    return result


def sync_catalog(
    conn: Any,
    snapshot: CatalogSnapshot,
    *,
    db_lock: Any | None = None,
) -> dict[str, Any]:
    """Drop ``snapshot.platform`` links for titles the service no longer lists."""

    platform = snapshot.platform
    catalog_titles = snapshot.titles()
    lock = db_lock if db_lock is not None else nullcontext()

    with lock:
        try:
            current = repository.list_games_by_platform(conn, platform)
            to_remove = [
                game for game in current if str(game["title"]).lower() not in catalog_titles
            ]
            removed_titles: list[str] = []
            for game in to_remove:
                repository.remove_platform_link(conn, game["id"], platform)
                removed_titles.append(game["title"])
            orphaned = repository.delete_orphaned_games(conn)
            remaining = len(repository.list_games_by_platform(conn, platform))
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(
        "Synced %s catalog: %s links removed, %s orphans deleted, %s remaining",
        platform,
        len(removed_titles),
        orphaned,
        remaining,
    )
    return {
        "platform": platform,
        "removed": len(removed_titles),
        "orphanedDeleted": orphaned,
        "remaining": remaining,
        "removedGames": removed_titles,
    }


def import_owned_game(
    conn: Any,
    matcher: IdentityMatcher,
    owned: Mapping[str, Any],
    details: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Upsert one owned-library record and its primary ``steam`` link.

    A title match is only accepted when the matched game has no conflicting
    app id of its own; the app id is then attached to that game.
    """

    app_id = coerce_int(owned.get("externalId"))
    if app_id is None:
        raise ValueError("owned game is missing its app id")
    title = str(owned.get("title") or "").strip()

    fields: dict[str, Any] = {
        "title": title,
        "playtime_minutes": coerce_int(owned.get("minutesPlayed")) or 0,
    }
    if details:
        for key, value in details.items():
            if key == "title" or value in (None, "", []):
                continue
            fields[key] = value

    match = matcher.match_for_merge(title, app_id)
    created = False
    if match is not None and match.authoritative:
        game_id = int(match.game["id"])
        repository.update_game_fields(conn, game_id, fields)
    elif match is not None and not _app_ids_conflict(app_id, match.game.get("steam_app_id")):
        game_id = int(match.game["id"])
        fields.pop("title", None)
        fields["steam_app_id"] = app_id
        repository.update_game_fields(conn, game_id, fields)
        matcher.assign_external_id(game_id, app_id)
    else:
        fields.setdefault("cover_image_url", default_header_image(app_id))
        game_id, created = repository.upsert_game_by_steam_app_id(conn, app_id, fields)
        if created:
            matcher.add({"id": game_id, "title": title, "steam_app_id": app_id})

    repository.add_platform_link(
        conn, game_id, OWNED_LIBRARY_PLATFORM, str(app_id), is_primary=True
    )
    return {
        "title": title,
        "status": STATUS_ADDED if created else STATUS_LINKED,
        "gameId": game_id,
        "appId": app_id,
    }


__all__ = [
    "OWNED_LIBRARY_PLATFORM",
    "STATUS_ADDED",
    "STATUS_ERROR",
    "STATUS_LINKED",
    "build_matcher",
    "import_catalog",
    "import_entry",
    "import_owned_game",
    "platform_game_id",
    "sync_catalog",
]
