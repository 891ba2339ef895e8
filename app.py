import os
import logging
import logging.config
from pathlib import Path

from flask import Flask

from config import (
    COVER_HISTORY_PATH,
    COVERS_DIR,
    DB_DSN,
    DB_TIMEOUT_SECONDS,
    LOG_FILE,
    LOG_LEVEL,
    MATCH_CONFIDENCE_THRESHOLD,
    STEAM_API_KEY,
    STEAM_USER_ID,
    STEAMGRIDDB_API_KEY,
    TWITCH_CLIENT_ID,
    TWITCH_CLIENT_SECRET,
    steam_configured,
    validate_provider_credentials,
)
from covers.history import CoverHistory
from db import utils as db_utils
from db.schema import ensure_schema
from jobs.enrichment import ProviderClients
from jobs.manager import JobRegistry
from providers.fetch import FetchClient
from providers.igdb import IGDBClient
from providers.steam import SteamClient
from providers.steamgriddb import SteamGridDBClient
from providers.steamspy import SteamSpyClient
from web.app_factory import AppServices, create_app, register_services

logger = logging.getLogger(__name__)


def _determine_log_level(flask_app: Flask) -> int:
    if flask_app.debug:
        return logging.DEBUG
    if os.environ.get('FLASK_DEBUG', '').lower() in {'1', 'true', 'yes', 'on'}:
        return logging.DEBUG
    level = logging.getLevelName(LOG_LEVEL)
    return level if isinstance(level, int) else logging.INFO


def _configure_logging(flask_app: Flask) -> None:
    log_level = _determine_log_level(flask_app)
    log_path = Path(LOG_FILE)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass

    for handler in list(flask_app.logger.handlers):
        flask_app.logger.removeHandler(handler)

    logging.config.dictConfig(
        {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {
                'standard': {
                    'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
                    'datefmt': '%Y-%m-%d %H:%M:%S',
                }
            },
            'handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'formatter': 'standard',
                    'level': log_level,
                    'stream': 'ext://sys.stdout',
                },
                'file': {
                    'class': 'logging.handlers.RotatingFileHandler',
                    'formatter': 'standard',
                    'level': logging.DEBUG,
                    'filename': os.fspath(log_path),
                    'maxBytes': 5 * 1024 * 1024,
                    'backupCount': 5,
                    'encoding': 'utf-8',
                },
            },
            'root': {
                'level': log_level,
                'handlers': ['console', 'file'],
            },
        }
    )

    flask_app.logger = logging.getLogger(flask_app.import_name)
    flask_app.logger.setLevel(log_level)
    logger.setLevel(log_level)


def build_provider_clients(fetch: FetchClient | None = None) -> ProviderClients:
    """Create the provider adapters sharing one resilient fetch client."""

    shared = fetch or FetchClient()
    return ProviderClients(
        steam=SteamClient(api_key=STEAM_API_KEY, steam_id=STEAM_USER_ID, fetch=shared),
        igdb=IGDBClient(
            client_id=TWITCH_CLIENT_ID,
            client_secret=TWITCH_CLIENT_SECRET,
            fetch=shared,
            threshold=MATCH_CONFIDENCE_THRESHOLD,
        ),
        steamspy=SteamSpyClient(fetch=shared),
        steamgriddb=SteamGridDBClient(api_key=STEAMGRIDDB_API_KEY, fetch=shared),
    )


app = Flask(__name__)

_configure_logging(app)

db_lock = db_utils.db_lock
db = db_utils.build_engine_from_dsn(DB_DSN, timeout=DB_TIMEOUT_SECONDS)
db_utils.set_fallback_connection(db)

with db_lock, db.connection() as _conn:
    ensure_schema(_conn)

validate_provider_credentials()


def get_db() -> db_utils.DatabaseHandle:
    return db_utils.get_db()


services = AppServices(
    db_lock=db_lock,
    get_db=get_db,
    get_job_db=db_utils.get_shared_db,
    job_registry=JobRegistry(),
    clients=build_provider_clients(),
    cover_history=CoverHistory(COVER_HISTORY_PATH),
    covers_dir=COVERS_DIR,
    match_threshold=MATCH_CONFIDENCE_THRESHOLD,
    steam_configured=steam_configured,
)

_blueprints_configured = False


def configure_blueprints(flask_app: Flask) -> None:
    global _blueprints_configured
    if _blueprints_configured:
        return
    register_services(flask_app, services)
    _blueprints_configured = True


app = create_app(app, configure_blueprints=configure_blueprints)


if __name__ == '__main__':
    app.run(debug=True)
