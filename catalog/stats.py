"""Library summary used by the sync status endpoint."""

from __future__ import annotations

from typing import Any

import pandas as pd

from db import repository
from db.schema import PLATFORM_TYPES

TOP_GENRE_LIMIT = 10


def library_frame(conn: Any) -> pd.DataFrame:
    """Return one row per (game, platform) pair; unlinked games have a null platform."""

    rows = list(repository.iter_library_rows(conn))
    return pd.DataFrame(rows, columns=["id", "title", "genres", "steam_rating", "platform_type"])


def summarize_library(conn: Any, *, top_genres: int = TOP_GENRE_LIMIT) -> dict[str, Any]:
    frame = library_frame(conn)
    games = frame.drop_duplicates(subset="id")

    platform_counts = {platform: 0 for platform in PLATFORM_TYPES}
    linked = frame.dropna(subset=["platform_type"])
    for platform, count in linked.groupby("platform_type")["id"].nunique().items():
        platform_counts[str(platform)] = int(count)

    genre_series = games["genres"].explode().dropna()
    genre_counts = genre_series.value_counts().head(top_genres)
    ratings = pd.to_numeric(games["steam_rating"], errors="coerce").dropna()

    return {
        "totalGames": int(len(games)),
        "platforms": platform_counts,
        "genres": [
            {"name": str(name), "count": int(count)} for name, count in genre_counts.items()
        ],
        "ratedGames": int(len(ratings)),
        "averageSteamRating": round(float(ratings.mean()), 1) if not ratings.empty else None,
    }


__all__ = ["library_frame", "summarize_library"]
