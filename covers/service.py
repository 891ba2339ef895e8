"""Cover replacement ("try another cover") backed by SteamGridDB and the history file."""

from __future__ import annotations

import io
import logging
import os
import time
from typing import Any, Callable, Iterable

from PIL import Image, UnidentifiedImageError

from config import COVERS_DIR
from covers.history import CoverHistory
from covers.selection import select_best
from db import repository
from errors import ExhaustedOptionsError, NotFoundError, ProviderError
from helpers import now_utc_iso
from providers.steamgriddb import PROVIDER, RATE_LIMIT_DELAY, SteamGridDBClient

logger = logging.getLogger(__name__)

COVER_URL_PREFIX = "/covers"
JPEG_QUALITY = 90


def local_cover_url(game_id: int) -> str:
    return f"{COVER_URL_PREFIX}/{int(game_id)}.jpg"


def decode_image(data: bytes) -> Image.Image:
    """Open downloaded bytes as an RGB image or raise :class:`ProviderError`."""

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ProviderError(
            "Downloaded file is not a valid image", provider=PROVIDER
        ) from exc
    return img.convert("RGB")


def save_cover_image(
    img: Image.Image,
    dest_path: str,
    *,
    quality: int = JPEG_QUALITY,
) -> tuple[int, int]:
    """Persist ``img`` as a JPEG at ``dest_path`` and return its size."""

    directory = os.path.dirname(dest_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{dest_path}.tmp"
    img.save(tmp_path, format="JPEG", quality=quality)
    os.replace(tmp_path, dest_path)
    return img.size


def _failure(game_id: int, error: str, provider_game: dict[str, Any] | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {"success": False, "gameId": game_id, "error": error}
    if provider_game:
        result["steamGridDBId"] = provider_game["providerId"]
        result["steamGridDBName"] = provider_game["name"]
    return result


def fix_single_cover(
    game_id: int,
    *,
    db_lock: Any,
    get_db: Callable[[], Any],
    steamgriddb: SteamGridDBClient,
    history: CoverHistory,
    covers_dir: str = COVERS_DIR,
    search_term: str | None = None,
) -> dict[str, Any]:
    """Replace a game's cover with the best SteamGridDB grid not tried before.

    Raises :class:`NotFoundError` for an unknown game and
    :class:`ExhaustedOptionsError` once every grid has been tried.
    """

    with db_lock:
        game = repository.get_game(get_db(), game_id)
    if game is None:
        raise NotFoundError("Game not found")

    query = (search_term or "").strip() or game["title"]
    tried_ids, tried_urls = history.tried(game_id)
    if tried_ids:
        logger.info(
            "Game %s already tried %s covers (%s unique URLs)",
            game_id,
            len(tried_ids),
            len(tried_urls),
        )

    provider_game = None
    if not search_term and game.get("steam_app_id") is not None:
        provider_game = steamgriddb.get_game_by_steam_app_id(int(game["steam_app_id"]))
    if provider_game is None:
        provider_game = steamgriddb.search_game(query)
    if provider_game is None:
        return _failure(game_id, f'Game not found on SteamGridDB: "{query}"')

    grids = steamgriddb.get_grids(provider_game["providerId"])
    if not grids:
        return _failure(
            game_id, f'No 600x900 covers found for "{provider_game["name"]}"', provider_game
        )

    fresh = [grid for grid in grids if grid["url"] not in tried_urls]
    best = select_best(fresh, tried_ids)
    if best is None:
        raise ExhaustedOptionsError(
            f"All {len(grids)} available covers have been tried. Clear history to retry.",
            payload={
                "gameId": game_id,
                "steamGridDBId": provider_game["providerId"],
                "steamGridDBName": provider_game["name"],
            },
        )

    logger.info(
        "Selected grid #%s for game %s: score=%s, style=%s, %sx%s",
        best["id"],
        game_id,
        best["score"],
        best.get("style"),
        best.get("width"),
        best.get("height"),
    )
    image = decode_image(steamgriddb.download(best["url"]))
    dest_path = os.path.join(covers_dir, f"{int(game_id)}.jpg")
    save_cover_image(image, dest_path)
    history.record(game_id, best["id"], best["url"])

    cover_url = local_cover_url(game_id)
    with db_lock:
        conn = get_db()
        try:
            repository.update_game_fields(
                conn,
                game_id,
                {
                    "cover_image_url": cover_url,
                    "steamgrid_id": provider_game["providerId"],
                    "cover_synced_at": now_utc_iso(),
                },
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    return {
        "success": True,
        "gameId": game_id,
        "coverUrl": cover_url,
        "steamGridDBId": provider_game["providerId"],
        "steamGridDBName": provider_game["name"],
    }


def fix_multiple_covers(
    game_ids: Iterable[int],
    *,
    db_lock: Any,
    get_db: Callable[[], Any],
    steamgriddb: SteamGridDBClient,
    history: CoverHistory,
    covers_dir: str = COVERS_DIR,
    sleep: Callable[[float], None] | None = None,
) -> dict[str, Any]:
    """Run :func:`fix_single_cover` for each id, recording failures per game."""

    pause = sleep or time.sleep
    ids = list(game_ids)
    results: list[dict[str, Any]] = []
    for index, game_id in enumerate(ids):
        if index > 0:
            pause(RATE_LIMIT_DELAY * 2)
        try:
            result = fix_single_cover(
                game_id,
                db_lock=db_lock,
                get_db=get_db,
                steamgriddb=steamgriddb,
                history=history,
                covers_dir=covers_dir,
            )
        except Exception as exc:
            logger.warning("Cover fix for game %s failed: %s", game_id, exc)
            result = _failure(game_id, str(exc))
        results.append(result)

    success = sum(1 for result in results if result["success"])
    return {
        "total": len(ids),
        "success": success,
        "failed": len(ids) - success,
        "results": results,
    }


__all__ = [
    "decode_image",
    "fix_multiple_covers",
    "fix_single_cover",
    "local_cover_url",
    "save_cover_image",
]
