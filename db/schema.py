"""Catalog schema definitions and idempotent setup."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Final

logger = logging.getLogger(__name__)

PLATFORM_TYPES: Final[tuple[str, ...]] = ("steam", "gamepass", "eaplay", "ubisoftplus")

GAMES_TABLE: Final[str] = "games"
GAME_PLATFORMS_TABLE: Final[str] = "game_platforms"

_PLATFORM_CHECK = ", ".join(f"'{value}'" for value in PLATFORM_TYPES)

SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    f"""CREATE TABLE IF NOT EXISTS {GAMES_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        cover_image_url TEXT,
        screenshots TEXT DEFAULT '[]',
        description TEXT,
        short_description TEXT,
        developer TEXT,
        publisher TEXT,
        release_date TEXT,
        genres TEXT DEFAULT '[]',
        tags TEXT DEFAULT '[]',
        metacritic_score INTEGER,
        metacritic_url TEXT,
        steam_rating REAL,
        steam_rating_count INTEGER,
        steam_app_id INTEGER UNIQUE,
        playtime_minutes INTEGER DEFAULT 0,
        steamgrid_id INTEGER,
        igdb_id INTEGER,
        genres_synced_at TEXT,
        cover_synced_at TEXT,
        rating_synced_at TEXT,
        created_at TEXT DEFAULT (datetime('now')),
        updated_at TEXT DEFAULT (datetime('now'))
    )""",
    f"""CREATE TABLE IF NOT EXISTS {GAME_PLATFORMS_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        game_id INTEGER NOT NULL,
        platform_type TEXT NOT NULL CHECK(platform_type IN ({_PLATFORM_CHECK})),
        platform_game_id TEXT NOT NULL,
        is_primary INTEGER DEFAULT 0,
        FOREIGN KEY (game_id) REFERENCES {GAMES_TABLE}(id) ON DELETE CASCADE,
        UNIQUE(game_id, platform_type)
    )""",
    f"CREATE INDEX IF NOT EXISTS idx_games_title ON {GAMES_TABLE}(title)",
    f"CREATE INDEX IF NOT EXISTS idx_games_steam_app_id ON {GAMES_TABLE}(steam_app_id)",
    f"CREATE INDEX IF NOT EXISTS idx_game_platforms_game_id ON {GAME_PLATFORMS_TABLE}(game_id)",
    f"CREATE INDEX IF NOT EXISTS idx_game_platforms_type ON {GAME_PLATFORMS_TABLE}(platform_type)",
)

# Columns added after the first release; applied when missing.
_LATE_COLUMNS: Final[tuple[tuple[str, str], ...]] = (
    ("steamgrid_id", "INTEGER"),
    ("igdb_id", "INTEGER"),
    ("genres_synced_at", "TEXT"),
    ("cover_synced_at", "TEXT"),
    ("rating_synced_at", "TEXT"),
)


def _existing_columns(conn: Any, table: str) -> set[str]:
    cur = conn.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cur.fetchall()}


def ensure_schema(conn: Any) -> None:
    """Create the catalog tables and backfill any missing columns."""

    for statement in SCHEMA_STATEMENTS:
        conn.execute(statement)

    columns = _existing_columns(conn, GAMES_TABLE)
    for name, column_type in _LATE_COLUMNS:
        if name in columns:
            continue
        try:
            conn.execute(f"ALTER TABLE {GAMES_TABLE} ADD COLUMN {name} {column_type}")
        except sqlite3.OperationalError:
            logger.exception("Failed to add column %s to %s", name, GAMES_TABLE)
            raise
        logger.info("Added column %s to %s", name, GAMES_TABLE)
    conn.commit()


__all__ = [
    "GAMES_TABLE",
    "GAME_PLATFORMS_TABLE",
    "PLATFORM_TYPES",
    "SCHEMA_STATEMENTS",
    "ensure_schema",
]
