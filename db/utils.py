"""Connection plumbing for the catalog database.

Requests get their own pooled DB-API connection stored on ``flask.g``;
background enrichment jobs share one process-wide handle.  Every writer
serializes through :data:`db_lock` and commits or rolls back itself.
"""

from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Final, Iterator, Mapping, Sequence
from urllib.parse import unquote, urlparse

from flask import g, has_app_context
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

db_lock = Lock()
"""Guards every write to the catalog tables."""

REQUEST_DB_KEY: Final[str] = "db"
DEFAULT_BUSY_TIMEOUT_SECONDS: Final[float] = 5.0


class DatabaseEngine:
    """Thin wrapper over a SQLAlchemy engine handing out raw connections."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Yield a pooled DB-API connection and return it to the pool after."""

        raw = self._engine.raw_connection()
        try:
            yield raw
        finally:
            raw.close()


class DatabaseHandle:
    """Lazily checked-out DB-API connection used by the catalog services.

    Repository functions only need ``execute``, ``commit`` and ``rollback``;
    anything else is forwarded to the underlying connection.
    """

    def __init__(self, engine: DatabaseEngine):
        self._engine = engine
        self._connection: Any | None = None

    def _checkout(self) -> Any:
        if self._connection is None:
            self._connection = self._engine.engine.raw_connection()
        return self._connection

    def execute(
        self,
        sql: str,
        parameters: Sequence[Any] | Mapping[str, Any] | None = None,
    ):
        return self._checkout().execute(sql, parameters or ())

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def __getattr__(self, item):
        return getattr(self._checkout(), item)


_shared_engine: DatabaseEngine | None = None
_shared_handle: DatabaseHandle | None = None


def set_fallback_connection(conn: DatabaseEngine | DatabaseHandle | None) -> None:
    """Install the engine (or ready-made handle) used outside request scope."""

    global _shared_engine, _shared_handle

    if isinstance(conn, DatabaseHandle):
        _shared_engine = conn._engine
        _shared_handle = conn
    else:
        _shared_engine = conn
        _shared_handle = None


def _require_engine() -> DatabaseEngine:
    if _shared_engine is None:
        raise RuntimeError("Database connection is not configured")
    return _shared_engine


def _apply_sqlite_pragmas(conn: sqlite3.Connection, busy_timeout: float) -> None:
    busy_ms = int(max(busy_timeout, 0) * 1000)
    if busy_ms:
        conn.execute(f"PRAGMA busy_timeout={busy_ms}")
    try:
        conn.execute("PRAGMA journal_mode=WAL").fetchone()
    except sqlite3.OperationalError:  # pragma: no cover - read-only or in-memory files
        pass
    conn.execute("PRAGMA foreign_keys=ON")


def _sqlite_file_path(dsn: str) -> Path:
    """Return the absolute database file named by a ``sqlite:///`` DSN."""

    path = unquote(urlparse(dsn).path or "")
    if not path:
        raise ValueError("SQLite DSN must include a filesystem path")
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = candidate.resolve()
    candidate.parent.mkdir(parents=True, exist_ok=True)
    return candidate


def build_engine_from_dsn(
    dsn: str,
    *,
    timeout: float | None = None,
) -> DatabaseEngine:
    """Create the catalog engine for ``dsn``.

    SQLite files get ``sqlite3.Row`` rows, WAL journaling, enforced foreign
    keys (platform links cascade with their game) and a busy timeout.
    """

    busy_timeout = DEFAULT_BUSY_TIMEOUT_SECONDS if timeout is None else timeout
    is_sqlite = urlparse(dsn).scheme == "sqlite"

    if is_sqlite:
        engine = create_engine(
            f"sqlite:///{os.fspath(_sqlite_file_path(dsn))}",
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, connection_record):  # type: ignore[override]
            dbapi_conn.row_factory = sqlite3.Row
            _apply_sqlite_pragmas(dbapi_conn, busy_timeout)

    else:
        engine = create_engine(dsn, pool_pre_ping=True)

    return DatabaseEngine(engine)


def get_db() -> DatabaseHandle:
    """Return the handle for the current request, or the shared one.

    The request handle is released by the app factory's teardown hook.
    """

    if has_app_context():
        handle = g.get(REQUEST_DB_KEY)
        if handle is None:
            handle = DatabaseHandle(_require_engine())
            setattr(g, REQUEST_DB_KEY, handle)
        return handle
    return get_shared_db()


def get_shared_db() -> DatabaseHandle:
    """Return the process-wide handle used by background job threads.

    Jobs outlive the request that started them, so they never touch the
    request-scoped handle on ``flask.g``.
    """

    global _shared_handle

    engine = _require_engine()
    if _shared_handle is None:
        _shared_handle = DatabaseHandle(engine)
    return _shared_handle


__all__ = [
    "DatabaseEngine",
    "DatabaseHandle",
    "REQUEST_DB_KEY",
    "build_engine_from_dsn",
    "db_lock",
    "get_db",
    "get_shared_db",
    "set_fallback_connection",
]
