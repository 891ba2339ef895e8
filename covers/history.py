"""Per-game record of community art candidates that were already tried.

The document lives in one JSON file shaped as::

    {"<gameId>": {"gridIds": [...], "triedUrls": [...], "lastTryTime": <ms>}}

It is loaded and rewritten whole on every operation.  Older files stored a
bare list of grid ids per game; those entries are upgraded on read.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Mapping

from config import COVER_HISTORY_PATH

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class CoverHistory:
    def __init__(
        self,
        path: str | os.PathLike[str] = COVER_HISTORY_PATH,
        *,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self._path = Path(path)
        self._clock_ms = clock_ms or _now_ms
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> tuple[dict[str, dict[str, Any]], bool]:
        if not self._path.exists():
            return {}, False
        try:
            raw = json.loads(self._path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable cover history %s: %s", self._path, exc)
            return {}, False
        if not isinstance(raw, Mapping):
            logger.warning("Ignoring cover history %s: expected an object", self._path)
            return {}, False

        history: dict[str, dict[str, Any]] = {}
        migrated = False
        for game_id, value in raw.items():
            if isinstance(value, list):
                history[str(game_id)] = {
                    "gridIds": list(value),
                    "triedUrls": [],
                    "lastTryTime": self._clock_ms(),
                }
                migrated = True
            elif isinstance(value, Mapping):
                entry = dict(value)
                if "triedUrls" not in entry:
                    entry["triedUrls"] = []
                    migrated = True
                entry.setdefault("gridIds", [])
                if "lastTryTime" not in entry:
                    entry["lastTryTime"] = self._clock_ms()
                history[str(game_id)] = entry
        return history, migrated

    def _write(self, history: Mapping[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(history, ensure_ascii=False, indent=2), "utf-8")
        os.replace(tmp, self._path)

    def load(self) -> dict[str, dict[str, Any]]:
        """Return the whole history, saving it back if it needed an upgrade."""

        with self._lock:
            history, migrated = self._read()
            if migrated:
                logger.info("Migrated legacy cover history in %s", self._path)
                self._write(history)
            return history

    def tried(self, game_id: int) -> tuple[list[Any], list[str]]:
        """Return ``(grid_ids, urls)`` already tried for ``game_id``."""

        entry = self.load().get(str(game_id)) or {}
        return list(entry.get("gridIds") or []), list(entry.get("triedUrls") or [])

    def record(self, game_id: int, grid_id: Any, url: str) -> dict[str, Any]:
        """Append ``grid_id`` and ``url`` to the game's entry; repeats are no-ops."""

        with self._lock:
            history = self.load()
            entry = history.setdefault(
                str(game_id), {"gridIds": [], "triedUrls": [], "lastTryTime": 0}
            )
            if grid_id not in entry["gridIds"]:
                entry["gridIds"].append(grid_id)
            if url and url not in entry["triedUrls"]:
                entry["triedUrls"].append(url)
            entry["lastTryTime"] = self._clock_ms()
            self._write(history)
            return dict(entry)

    def clear(self, game_id: int) -> bool:
        with self._lock:
            history = self.load()
            removed = history.pop(str(game_id), None) is not None
            self._write(history)
        logger.info("Cleared cover fix history for game %s", game_id)
        return removed

    def clear_all(self) -> None:
        with self._lock:
            self._write({})
        logger.info("Cleared all cover fix history")


__all__ = ["CoverHistory"]
