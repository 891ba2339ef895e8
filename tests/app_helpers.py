"""Shared testing helpers: a wired Flask app and in-memory provider fakes."""

from __future__ import annotations

import io
import threading
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError

from flask import Flask
from PIL import Image

from covers.history import CoverHistory
from db import repository
from db import utils as db_utils
from db.schema import ensure_schema
from jobs.enrichment import ProviderClients
from jobs.manager import JobRegistry
from providers.fetch import FetchResponse
from web.app_factory import AppServices, create_app, register_services


def make_image_bytes(size: tuple[int, int] = (60, 90), fmt: str = 'PNG') -> bytes:
    buffer = io.BytesIO()
    Image.new('RGBA', size, (200, 30, 30, 255)).save(buffer, format=fmt)
    return buffer.getvalue()


def seed_game(
    conn: Any,
    title: str,
    *,
    steam_app_id: int | None = None,
    platforms: dict[str, str] | None = None,
    primary: str | None = None,
    **fields: Any,
) -> int:
    """Insert a game plus platform links and commit."""

    payload = {
        'title': title,
        'slug': repository.unique_slug(conn, title, steam_app_id),
        'steam_app_id': steam_app_id,
    }
    payload.update(fields)
    game_id = repository.insert_game(conn, payload)
    for platform, local_id in (platforms or {}).items():
        repository.add_platform_link(
            conn, game_id, platform, local_id, is_primary=platform == primary
        )
    conn.commit()
    return game_id


class FakeHTTPResponse:
    def __init__(self, body: bytes = b'', status: int = 200, headers: dict | None = None):
        self._body = body
        self.status = status
        self.headers = headers or {}

    def read(self) -> bytes:
        return self._body

    def getcode(self) -> int:
        return self.status

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


def http_error(url: str, code: int, body: bytes = b'', headers: dict | None = None) -> HTTPError:
    return HTTPError(url, code, 'error', headers or {}, io.BytesIO(body))


class ScriptedOpener:
    """Replay a fixed sequence of responses or exceptions for ``urlopen``."""

    def __init__(self, *outcomes: Any):
        self._outcomes = list(outcomes)
        self.requests: list[Any] = []
        self.timeouts: list[float] = []

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        self.timeouts.append(timeout)
        if not self._outcomes:
            raise AssertionError(f'unexpected request to {request.full_url}')
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, (HTTPError, URLError, OSError)):
            raise outcome
        return outcome


class FakeFetch:
    """Stand-in for :class:`providers.fetch.FetchClient` keyed by URL substring."""

    def __init__(self, routes: dict[str, Any] | None = None):
        self.routes = dict(routes or {})
        self.calls: list[dict[str, Any]] = []

    def _lookup(self, url: str) -> Any:
        for fragment, reply in self.routes.items():
            if fragment in url:
                return reply
        raise AssertionError(f'no fake route for {url}')

    def get_json(self, url, *, headers=None, provider=''):
        self.calls.append({'url': url, 'headers': headers, 'method': 'GET'})
        reply = self._lookup(url)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def call(self, url, *, method='GET', headers=None, data=None, timeout=None, provider=''):
        self.calls.append({'url': url, 'headers': headers, 'method': method, 'data': data})
        reply = self._lookup(url)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, FetchResponse) else FetchResponse(200, url, reply)


class NoWaitPacer:
    def __init__(self):
        self.waits = 0

    def wait(self) -> float:
        self.waits += 1
        return 0.0


@dataclass
class FakeSteam:
    owned: list[dict[str, Any]] = field(default_factory=list)
    details: dict[int, dict[str, Any]] = field(default_factory=dict)
    reviews: dict[int, dict[str, Any]] = field(default_factory=dict)
    owned_error: Exception | None = None

    def fetch_owned_games(self, api_key=None, steam_id=None):
        if self.owned_error is not None:
            raise self.owned_error
        return list(self.owned)

    def fetch_app_details(self, app_id):
        return self.details.get(int(app_id))

    def fetch_reviews(self, app_id):
        return self.reviews.get(int(app_id))


@dataclass
class FakeIGDB:
    by_app_id: dict[int, dict[str, Any]] = field(default_factory=dict)
    by_title: dict[str, dict[str, Any]] = field(default_factory=dict)

    def find_by_steam_app_id(self, steam_app_id):
        return self.by_app_id.get(int(steam_app_id))

    def search(self, title, *, release_year=None):
        return self.by_title.get(title)


@dataclass
class FakeSteamSpy:
    apps: dict[int, Any] = field(default_factory=dict)

    def fetch_app_details(self, app_id):
        reply = self.apps.get(int(app_id))
        if isinstance(reply, Exception):
            raise reply
        return reply


@dataclass
class FakeSteamGridDB:
    by_app_id: dict[int, dict[str, Any]] = field(default_factory=dict)
    by_title: dict[str, dict[str, Any]] = field(default_factory=dict)
    grids: dict[int, list[dict[str, Any]]] = field(default_factory=dict)
    images: dict[str, bytes] = field(default_factory=dict)
    downloads: list[str] = field(default_factory=list)

    def get_game_by_steam_app_id(self, steam_app_id):
        return self.by_app_id.get(int(steam_app_id))

    def search_game(self, title):
        return self.by_title.get(title)

    def get_grids(self, provider_id):
        return list(self.grids.get(int(provider_id), []))

    def download(self, url):
        self.downloads.append(url)
        return self.images.get(url, make_image_bytes())


def grid(grid_id: int, score: float = 0, *, nsfw: bool = False, humor: bool = False) -> dict[str, Any]:
    return {
        'id': grid_id,
        'score': score,
        'safetyFlags': {'nsfw': nsfw, 'humor': humor},
        'url': f'https://cdn.example.com/grid/{grid_id}.png',
        'width': 600,
        'height': 900,
        'style': 'alternate',
    }


def fake_clients(**overrides: Any) -> ProviderClients:
    values = {
        'steam': FakeSteam(),
        'igdb': FakeIGDB(),
        'steamspy': FakeSteamSpy(),
        'steamgriddb': FakeSteamGridDB(),
    }
    values.update(overrides)
    return ProviderClients(**values)


@dataclass
class AppHarness:
    app: Flask
    client: Any
    services: AppServices
    engine: db_utils.DatabaseEngine

    def connection(self):
        return self.engine.connection()


def build_test_app(
    tmp_path: Path,
    *,
    clients: ProviderClients | None = None,
    steam_configured: bool = True,
) -> AppHarness:
    """Return a Flask test client wired to a SQLite file under ``tmp_path``."""

    engine = db_utils.build_engine_from_dsn(f"sqlite:///{(tmp_path / 'catalog.db').as_posix()}")
    db_utils.set_fallback_connection(engine)
    with engine.connection() as raw:
        ensure_schema(raw)

    services = AppServices(
        db_lock=threading.Lock(),
        get_db=db_utils.get_db,
        get_job_db=db_utils.get_shared_db,
        job_registry=JobRegistry(),
        clients=clients or fake_clients(),
        cover_history=CoverHistory(tmp_path / 'cover-fix-history.json'),
        covers_dir=str(tmp_path / 'covers'),
        match_threshold=60,
        steam_configured=lambda: steam_configured,
    )
    flask_app = create_app(
        Flask('catalog_test'),
        configure_blueprints=partial(register_services, services=services),
    )
    flask_app.testing = True
    return AppHarness(flask_app, flask_app.test_client(), services, engine)


__all__ = [
    'AppHarness',
    'FakeFetch',
    'FakeHTTPResponse',
    'FakeIGDB',
    'FakeSteam',
    'FakeSteamGridDB',
    'FakeSteamSpy',
    'NoWaitPacer',
    'ScriptedOpener',
    'build_test_app',
    'fake_clients',
    'grid',
    'http_error',
    'make_image_bytes',
    'seed_game',
]
