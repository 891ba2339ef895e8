"""Application-wide configuration helpers and constants."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent

load_dotenv(BASE_DIR / ".env")


logger = logging.getLogger(__name__)


def _clean_text(value: str | None) -> str:
    """Return ``value`` stripped of surrounding whitespace."""

    if value is None:
        return ""
    return value.strip()


def _path_from(env_value: str | None, default: str | Path) -> Path:
    """Resolve a filesystem path using an environment override when provided."""

    text = _clean_text(env_value)
    candidate = Path(text) if text else Path(default)
    candidate = candidate.expanduser()
    if candidate.is_absolute():
        try:
            return candidate.resolve()
        except (OSError, RuntimeError):  # pragma: no cover - fallback for exotic paths
            return candidate
    return candidate


def _coerce_positive_float(value: str | None, default: float) -> float:
    """Return ``value`` coerced to a positive float or ``default`` when invalid."""

    text = _clean_text(value)
    if not text:
        return default
    try:
        numeric = float(text)
    except (TypeError, ValueError):
        return default
    return numeric if numeric > 0 else default


def _coerce_positive_int(value: str | None, default: int) -> int:
    """Return ``value`` coerced to a positive integer or ``default`` when invalid."""

    text = _clean_text(value)
    if not text:
        return default
    try:
        numeric = int(float(text))
    except (TypeError, ValueError):
        return default
    return numeric if numeric > 0 else default


def _coerce_truthy_env(value: str | None, default: bool = False) -> bool:
    """Return ``True`` when ``value`` represents an affirmative flag."""

    if value is None or not value.strip():
        return default
    text = value.strip().lower()
    return text in {"1", "true", "yes", "on"}


LOG_DIR_PATH: Final[Path] = _path_from(os.environ.get("LOG_DIR"), BASE_DIR / "logs")
LOG_FILE_PATH: Final[Path] = _path_from(
    os.environ.get("LOG_FILE"), LOG_DIR_PATH / "app.log"
)
LOG_FILE: Final[str] = os.fspath(LOG_FILE_PATH)
LOG_LEVEL: Final[str] = (_clean_text(os.environ.get("LOG_LEVEL")) or "INFO").upper()

DATA_DIR_PATH: Final[Path] = _path_from(os.environ.get("DATA_DIR"), BASE_DIR / "data")
COVERS_DIR_PATH: Final[Path] = _path_from(
    os.environ.get("COVERS_DIR"), DATA_DIR_PATH / "covers"
)
COVERS_DIR: Final[str] = os.fspath(COVERS_DIR_PATH)
COVER_HISTORY_PATH: Final[Path] = _path_from(
    os.environ.get("COVER_HISTORY_FILE"), DATA_DIR_PATH / "cover-fix-history.json"
)

DB_PATH: Final[Path] = _path_from(os.environ.get("DB_PATH"), BASE_DIR / "catalog.db")
DB_TIMEOUT_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("DB_TIMEOUT"), 10.0
)


def _build_db_dsn() -> str:
    """Return a database DSN constructed from environment configuration."""

    override = _clean_text(os.environ.get("DB_DSN"))
    if override:
        return override
    sqlite_path = DB_PATH.resolve()
    return f"sqlite:///{sqlite_path.as_posix()}"


DB_DSN: Final[str] = _build_db_dsn()

DEFAULT_USER_AGENT: Final[str] = "GameCatalogSync/1.0 (support@example.com)"
HTTP_USER_AGENT: Final[str] = (
    _clean_text(os.environ.get("HTTP_USER_AGENT")) or DEFAULT_USER_AGENT
)

FETCH_TIMEOUT_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("FETCH_TIMEOUT_SECONDS"), 30.0
)
FETCH_MAX_ATTEMPTS: Final[int] = _coerce_positive_int(
    os.environ.get("FETCH_MAX_ATTEMPTS"), 3
)
FETCH_INITIAL_BACKOFF_SECONDS: Final[float] = _coerce_positive_float(
    os.environ.get("FETCH_INITIAL_BACKOFF_SECONDS"), 1.0
)

MATCH_CONFIDENCE_THRESHOLD: Final[int] = _coerce_positive_int(
    os.environ.get("MATCH_CONFIDENCE_THRESHOLD"), 60
)

STEAM_API_KEY: Final[str] = _clean_text(os.environ.get("STEAM_API_KEY"))
STEAM_USER_ID: Final[str] = _clean_text(os.environ.get("STEAM_USER_ID"))
TWITCH_CLIENT_ID: Final[str] = _clean_text(os.environ.get("TWITCH_CLIENT_ID"))
TWITCH_CLIENT_SECRET: Final[str] = _clean_text(os.environ.get("TWITCH_CLIENT_SECRET"))
STEAMGRIDDB_API_KEY: Final[str] = _clean_text(os.environ.get("STEAMGRIDDB_API_KEY"))

# Full library syncs fetch store details per game; requests may ask for quick.
STEAM_LIBRARY_FETCH_DETAILS: Final[bool] = _coerce_truthy_env(
    os.environ.get("STEAM_LIBRARY_FETCH_DETAILS"), default=True
)


def steam_configured() -> bool:
    """Return ``True`` when owned-library credentials are available."""

    return bool(STEAM_API_KEY and STEAM_USER_ID)


def validate_provider_credentials() -> dict[str, bool]:
    """Report which provider integrations are usable and log the missing ones."""

    status = {
        "steam": steam_configured(),
        "igdb": bool(TWITCH_CLIENT_ID and TWITCH_CLIENT_SECRET),
        "steamgriddb": bool(STEAMGRIDDB_API_KEY),
    }
    missing = sorted(name for name, enabled in status.items() if not enabled)
    if missing:
        logger.warning(
            "Provider credentials missing for %s; related operations are disabled.",
            ", ".join(missing),
        )
    return status


__all__ = [
    "BASE_DIR",
    "COVERS_DIR",
    "COVERS_DIR_PATH",
    "COVER_HISTORY_PATH",
    "DATA_DIR_PATH",
    "DB_DSN",
    "DB_PATH",
    "DB_TIMEOUT_SECONDS",
    "DEFAULT_USER_AGENT",
    "FETCH_INITIAL_BACKOFF_SECONDS",
    "FETCH_MAX_ATTEMPTS",
    "FETCH_TIMEOUT_SECONDS",
    "HTTP_USER_AGENT",
    "LOG_DIR_PATH",
    "LOG_FILE",
    "LOG_FILE_PATH",
    "LOG_LEVEL",
    "MATCH_CONFIDENCE_THRESHOLD",
    "STEAMGRIDDB_API_KEY",
    "STEAM_API_KEY",
    "STEAM_LIBRARY_FETCH_DETAILS",
    "STEAM_USER_ID",
    "TWITCH_CLIENT_ID",
    "TWITCH_CLIENT_SECRET",
    "steam_configured",
    "validate_provider_credentials",
]
