"""Flask application factory and blueprint wiring."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from flask import Flask, g, send_from_directory

from covers.history import CoverHistory
from db import utils as db_utils
from jobs.enrichment import ProviderClients
from jobs.manager import JobRegistry
from routes import covers as routes_covers
from routes import games as routes_games
from routes import sync as routes_sync


@dataclass
class AppServices:
    """Everything the blueprints need, injected instead of held as globals."""

    db_lock: Any
    get_db: Callable[[], Any]
    get_job_db: Callable[[], Any]
    job_registry: JobRegistry
    clients: ProviderClients
    cover_history: CoverHistory
    covers_dir: str
    match_threshold: int
    steam_configured: Callable[[], bool]

    def as_context(self) -> dict[str, Any]:
        return {
            'db_lock': self.db_lock,
            'get_db': self.get_db,
            'get_job_db': self.get_job_db,
            'job_registry': self.job_registry,
            'clients': self.clients,
            'cover_history': self.cover_history,
            'covers_dir': self.covers_dir,
            'match_threshold': self.match_threshold,
            'steam_configured': self.steam_configured,
        }


def _close_db(exc: BaseException | None) -> None:
    db = g.pop(db_utils.REQUEST_DB_KEY, None)
    if db is not None:
        db.close()


def register_services(flask_app: Flask, services: AppServices) -> None:
    """Configure every blueprint with ``services`` and attach it to ``flask_app``."""

    context = services.as_context()
    routes_sync.configure(context)
    routes_covers.configure(context)
    routes_games.configure(context)

    if 'sync' not in flask_app.blueprints:
        flask_app.register_blueprint(routes_sync.sync_blueprint)
    if 'covers' not in flask_app.blueprints:
        flask_app.register_blueprint(routes_covers.covers_blueprint)
    if 'games' not in flask_app.blueprints:
        flask_app.register_blueprint(routes_games.games_blueprint)

    if 'local_cover' not in flask_app.view_functions:
        covers_dir = services.covers_dir

        @flask_app.route('/covers/<path:filename>', endpoint='local_cover')
        def local_cover(filename: str):
            return send_from_directory(covers_dir, filename)

        flask_app.teardown_appcontext(_close_db)


def create_app(
    flask_app: Flask | None = None,
    *,
    configure_blueprints: Callable[[Flask], None] | None = None,
) -> Flask:
    """Return a configured Flask application instance."""
    if flask_app is None or configure_blueprints is None:
        from app import app as default_app, configure_blueprints as default_configure

        if flask_app is None:
            flask_app = default_app
        if configure_blueprints is None:
            configure_blueprints = default_configure

    configure_blueprints(flask_app)
    return flask_app


__all__ = ["AppServices", "create_app", "register_services"]
