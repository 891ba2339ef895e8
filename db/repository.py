"""Persistence helpers for games and their platform links.

Every function takes an open DB-API connection (``sqlite3.Connection`` or a
:class:`db.utils.DatabaseHandle`) and leaves locking and committing to the
caller, mirroring how the job and reconciliation services hold ``db_lock``
around a unit of work.
"""

from __future__ import annotations

import itertools
from typing import Any, Iterable, Mapping

from db.schema import GAME_PLATFORMS_TABLE, GAMES_TABLE
from helpers import coerce_int, decode_json_list, encode_json_list, slugify

GAME_COLUMNS: tuple[str, ...] = (
    "title",
    "slug",
    "cover_image_url",
    "screenshots",
    "description",
    "short_description",
    "developer",
    "publisher",
    "release_date",
    "genres",
    "tags",
    "metacritic_score",
    "metacritic_url",
    "steam_rating",
    "steam_rating_count",
    "steam_app_id",
    "playtime_minutes",
    "steamgrid_id",
    "igdb_id",
    "genres_synced_at",
    "cover_synced_at",
    "rating_synced_at",
)
JSON_LIST_COLUMNS: frozenset[str] = frozenset({"screenshots", "genres", "tags"})


def _encode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    encoded: dict[str, Any] = {}
    for key, value in fields.items():
        if key not in GAME_COLUMNS:
            raise KeyError(f"Unknown game column: {key}")
        if key in JSON_LIST_COLUMNS:
            value = encode_json_list(value)
        encoded[key] = value
    return encoded


def row_to_game(row: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    game = {key: row[key] for key in row.keys()}
    for key in JSON_LIST_COLUMNS:
        if key in game:
            game[key] = decode_json_list(game[key])
    return game


def get_game(conn: Any, game_id: int) -> dict[str, Any] | None:
    cur = conn.execute(f"SELECT * FROM {GAMES_TABLE} WHERE id = ?", (game_id,))
    return row_to_game(cur.fetchone())


def get_game_by_steam_app_id(conn: Any, steam_app_id: int) -> dict[str, Any] | None:
    cur = conn.execute(
        f"SELECT * FROM {GAMES_TABLE} WHERE steam_app_id = ?", (steam_app_id,)
    )
    return row_to_game(cur.fetchone())


def find_game_by_platform_id(
    conn: Any, platform_type: str, platform_game_id: str
) -> dict[str, Any] | None:
    cur = conn.execute(
        f"""SELECT g.* FROM {GAMES_TABLE} g
            JOIN {GAME_PLATFORMS_TABLE} gp ON gp.game_id = g.id
            WHERE gp.platform_type = ? AND gp.platform_game_id = ?""",
        (platform_type, platform_game_id),
    )
    return row_to_game(cur.fetchone())


def list_match_candidates(conn: Any) -> list[dict[str, Any]]:
    """Return the lightweight rows the identity matcher indexes."""

    cur = conn.execute(
        f"SELECT id, title, slug, steam_app_id, release_date FROM {GAMES_TABLE} ORDER BY id"
    )
    return [
        {
            "id": row["id"],
            "title": row["title"],
            "slug": row["slug"],
            "steam_app_id": row["steam_app_id"],
            "release_date": row["release_date"],
        }
        for row in cur.fetchall()
    ]


def slug_exists(conn: Any, slug: str) -> bool:
    cur = conn.execute(f"SELECT 1 FROM {GAMES_TABLE} WHERE slug = ?", (slug,))
    return cur.fetchone() is not None


def unique_slug(conn: Any, title: str, steam_app_id: Any = None) -> str:
    """Return a slug for ``title`` that no other game uses yet."""

    base = slugify(title) or "game"
    if not slug_exists(conn, base):
        return base
    app_id = coerce_int(steam_app_id)
    if app_id:
        candidate = f"{base}-{app_id}"
        if not slug_exists(conn, candidate):
            return candidate
    for counter in itertools.count(2):
        candidate = f"{base}-{counter}"
        if not slug_exists(conn, candidate):
            return candidate
    raise AssertionError("unreachable")  # pragma: no cover


def insert_game(conn: Any, fields: Mapping[str, Any]) -> int:
    encoded = _encode_fields(fields)
    if not encoded.get("title") or not encoded.get("slug"):
        raise ValueError("title and slug are required")
    columns = list(encoded)
    placeholders = ", ".join("?" for _ in columns)
    cur = conn.execute(
        f"INSERT INTO {GAMES_TABLE} ({', '.join(columns)}) VALUES ({placeholders})",
        tuple(encoded[column] for column in columns),
    )
    return int(cur.lastrowid)


def update_game_fields(conn: Any, game_id: int, fields: Mapping[str, Any]) -> bool:
    encoded = _encode_fields(fields)
    if not encoded:
        return False
    assignments = ", ".join(f"{column} = ?" for column in encoded)
    cur = conn.execute(
        f"UPDATE {GAMES_TABLE} SET {assignments}, updated_at = datetime('now') WHERE id = ?",
        (*encoded.values(), game_id),
    )
    return cur.rowcount > 0


def upsert_game_by_steam_app_id(
    conn: Any, steam_app_id: int, fields: Mapping[str, Any]
) -> tuple[int, bool]:
    """Update the game owning ``steam_app_id`` or insert a new one.

    Returns ``(game_id, created)``.
    """

    existing = get_game_by_steam_app_id(conn, steam_app_id)
    if existing is not None:
        updates = {key: value for key, value in fields.items() if key != "slug"}
        update_game_fields(conn, existing["id"], updates)
        return int(existing["id"]), False
    payload = dict(fields)
    payload["steam_app_id"] = steam_app_id
    if not payload.get("slug"):
        payload["slug"] = unique_slug(conn, payload.get("title") or "", steam_app_id)
    return insert_game(conn, payload), True


def add_platform_link(
    conn: Any,
    game_id: int,
    platform_type: str,
    platform_game_id: str,
    *,
    is_primary: bool = False,
) -> None:
    conn.execute(
        f"""INSERT OR REPLACE INTO {GAME_PLATFORMS_TABLE}
            (game_id, platform_type, platform_game_id, is_primary)
            VALUES (?, ?, ?, ?)""",
        (game_id, platform_type, str(platform_game_id), 1 if is_primary else 0),
    )


def remove_platform_link(conn: Any, game_id: int, platform_type: str) -> bool:
    cur = conn.execute(
        f"DELETE FROM {GAME_PLATFORMS_TABLE} WHERE game_id = ? AND platform_type = ?",
        (game_id, platform_type),
    )
    return cur.rowcount > 0


def list_platform_links(conn: Any, game_id: int) -> list[dict[str, Any]]:
    cur = conn.execute(
        f"""SELECT platform_type, platform_game_id, is_primary
            FROM {GAME_PLATFORMS_TABLE} WHERE game_id = ? ORDER BY platform_type""",
        (game_id,),
    )
    return [
        {
            "platformType": row["platform_type"],
            "platformGameId": row["platform_game_id"],
            "isPrimary": bool(row["is_primary"]),
        }
        for row in cur.fetchall()
    ]


def list_games_by_platform(conn: Any, platform_type: str) -> list[dict[str, Any]]:
    cur = conn.execute(
        f"""SELECT g.id, g.title FROM {GAMES_TABLE} g
            JOIN {GAME_PLATFORMS_TABLE} gp ON g.id = gp.game_id
            WHERE gp.platform_type = ?
            ORDER BY g.title""",
        (platform_type,),
    )
    return [{"id": row["id"], "title": row["title"]} for row in cur.fetchall()]


def delete_orphaned_games(conn: Any) -> int:
    cur = conn.execute(
        f"""DELETE FROM {GAMES_TABLE}
            WHERE id IN (
                SELECT g.id FROM {GAMES_TABLE} g
                LEFT JOIN {GAME_PLATFORMS_TABLE} gp ON g.id = gp.game_id
                WHERE gp.id IS NULL
            )"""
    )
    return max(int(cur.rowcount or 0), 0)


def count_games(conn: Any) -> int:
    row = conn.execute(f"SELECT COUNT(*) AS total FROM {GAMES_TABLE}").fetchone()
    return int(row["total"]) if row is not None else 0


def games_missing_genres(conn: Any) -> list[dict[str, Any]]:
    cur = conn.execute(
        f"""SELECT id, title, steam_app_id FROM {GAMES_TABLE}
            WHERE (genres IS NULL OR genres = '[]') AND steam_app_id IS NOT NULL
            ORDER BY id"""
    )
    return [dict(zip(("id", "title", "steam_app_id"), row)) for row in cur.fetchall()]


def games_missing_covers(conn: Any) -> list[dict[str, Any]]:
    cur = conn.execute(
        f"""SELECT id, title, steam_app_id FROM {GAMES_TABLE}
            WHERE cover_image_url IS NULL OR TRIM(cover_image_url) = ''
            ORDER BY title"""
    )
    return [dict(zip(("id", "title", "steam_app_id"), row)) for row in cur.fetchall()]


def games_with_horizontal_covers(conn: Any) -> list[dict[str, Any]]:
    """Games whose cover is still a wide Steam store header."""

    cur = conn.execute(
        f"""SELECT id, title, steam_app_id FROM {GAMES_TABLE}
            WHERE cover_image_url LIKE '%header.jpg%'
            ORDER BY title"""
    )
    return [dict(zip(("id", "title", "steam_app_id"), row)) for row in cur.fetchall()]


def games_with_steam_app_id(conn: Any) -> list[dict[str, Any]]:
    cur = conn.execute(
        f"""SELECT id, title, steam_app_id FROM {GAMES_TABLE}
            WHERE steam_app_id IS NOT NULL
            ORDER BY id"""
    )
    return [dict(zip(("id", "title", "steam_app_id"), row)) for row in cur.fetchall()]


def games_missing_igdb_id(conn: Any) -> list[dict[str, Any]]:
    cur = conn.execute(
        f"""SELECT id, title, steam_app_id, release_date FROM {GAMES_TABLE}
            WHERE igdb_id IS NULL
            ORDER BY id"""
    )
    return [
        dict(zip(("id", "title", "steam_app_id", "release_date"), row))
        for row in cur.fetchall()
    ]


def iter_library_rows(conn: Any) -> Iterable[dict[str, Any]]:
    """Yield one row per (game, platform) pair for reporting."""

    cur = conn.execute(
        f"""SELECT g.id, g.title, g.genres, g.steam_rating, gp.platform_type
            FROM {GAMES_TABLE} g
            LEFT JOIN {GAME_PLATFORMS_TABLE} gp ON g.id = gp.game_id
            ORDER BY g.id"""
    )
    for row in cur.fetchall():
        yield {
            "id": row["id"],
            "title": row["title"],
            "genres": decode_json_list(row["genres"]),
            "steam_rating": row["steam_rating"],
            "platform_type": row["platform_type"],
        }


__all__ = [
    "GAME_COLUMNS",
    "JSON_LIST_COLUMNS",
    "add_platform_link",
    "count_games",
    "delete_orphaned_games",
    "find_game_by_platform_id",
    "games_missing_covers",
    "games_with_horizontal_covers",
    "games_missing_genres",
    "games_missing_igdb_id",
    "games_with_steam_app_id",
    "get_game",
    "get_game_by_steam_app_id",
    "insert_game",
    "iter_library_rows",
    "list_games_by_platform",
    "list_match_candidates",
    "list_platform_links",
    "remove_platform_link",
    "row_to_game",
    "slug_exists",
    "unique_slug",
    "update_game_fields",
    "upsert_game_by_steam_app_id",
]
