"""Bulk enrichment jobs that backfill catalog data from the providers.

Every job family has the same shape: a store query selects the games that
need one kind of data, :func:`run_bulk` runs a worker per game on a thread
pool gated by a :class:`jobs.limiter.ConcurrencyLimiter`, each worker writes
its own result back under ``db_lock``, and progress is reported after every
completion.  Per-game failures are collected in the result and never stop the
batch; only failing to build the item list aborts a start request.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Mapping, Sequence

from catalog.reconciler import build_matcher, import_owned_game
from config import MATCH_CONFIDENCE_THRESHOLD, STEAM_LIBRARY_FETCH_DETAILS
from covers.selection import select_best
from db import repository
from errors import NotFoundError, ProviderError, ValidationError
from helpers import extract_release_year, now_utc_iso
from jobs.limiter import ConcurrencyLimiter
from jobs.manager import (
    JOB_TYPE_CATALOG,
    JOB_TYPE_COVERS,
    JOB_TYPE_GENRES,
    JOB_TYPE_HORIZONTAL_COVERS,
    JOB_TYPE_LIBRARY,
    JOB_TYPE_METADATA,
    JOB_TYPE_RATINGS,
    JobRegistry,
)
from providers import igdb as igdb_provider
from providers import steam as steam_provider
from providers import steamgriddb as steamgriddb_provider
from providers import steamspy as steamspy_provider
from providers.igdb import IGDBClient
from providers.steam import SteamClient
from providers.steamgriddb import SteamGridDBClient
from providers.steamspy import SteamSpyClient, extract_top_tags, parse_genres

logger = logging.getLogger(__name__)

ProgressCallback = Callable[..., None]

OUTCOME_SUCCESS = 'success'
OUTCOME_SKIPPED = 'skipped'

DEFAULT_MAX_WORKERS = 8


@dataclass
class ProviderClients:
    steam: SteamClient
    igdb: IGDBClient
    steamspy: SteamSpyClient
    steamgriddb: SteamGridDBClient


def _item_label(item: Mapping[str, Any]) -> str:
    return str(item.get('title') or item.get('id') or '')


def _error_entry(item: Mapping[str, Any], exc: BaseException) -> dict[str, Any]:
    entry: dict[str, Any] = {'title': _item_label(item), 'error': str(exc)}
    for source, target in (('id', 'gameId'), ('steam_app_id', 'steamAppId')):
        if item.get(source) is not None:
            entry[target] = item[source]
    return entry


def run_bulk(
    items: Sequence[Mapping[str, Any]],
    worker: Callable[[Mapping[str, Any]], str],
    *,
    limiter: ConcurrencyLimiter,
    update_progress: ProgressCallback | None = None,
    max_workers: int | None = None,
) -> dict[str, Any]:
    """Run ``worker`` once per item and tally the outcomes.

    The worker returns :data:`OUTCOME_SUCCESS` or :data:`OUTCOME_SKIPPED`;
    any exception counts the item as failed.  Completion order follows
    whichever worker finishes first.
    """

    total = len(items)
    result: dict[str, Any] = {
        'total': total,
        'success': 0,
        'failed': 0,
        'skipped': 0,
        'errors': [],
    }
    if update_progress is not None:
        update_progress(current=0, total=total, message='Starting…')
    if total == 0:
        return result

    def gated(item: Mapping[str, Any]) -> str:
        with limiter:
            return worker(item)

    worker_count = max(1, min(total, max_workers or DEFAULT_MAX_WORKERS))
    completed = 0
    with ThreadPoolExecutor(max_workers=worker_count) as executor:
        futures = {executor.submit(gated, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                outcome = future.result()
            except Exception as exc:
                logger.warning('Enrichment of %r failed: %s', _item_label(item), exc)
                result['failed'] += 1
                result['errors'].append(_error_entry(item, exc))
            else:
                if outcome == OUTCOME_SKIPPED:
                    result['skipped'] += 1
                else:
                    result['success'] += 1
            completed += 1
            if update_progress is not None:
                update_progress(current=completed, total=total, message=_item_label(item))

    return result


def _write_game_fields(
    db_lock: Any, get_db: Callable[[], Any], game_id: int, fields: Mapping[str, Any]
) -> None:
    with db_lock:
        conn = get_db()
        try:
            repository.update_game_fields(conn, game_id, fields)
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _store_rating(
    db_lock: Any, get_db: Callable[[], Any], game_id: int, reviews: Mapping[str, Any]
) -> None:
    _write_game_fields(
        db_lock,
        get_db,
        game_id,
        {
            'steam_rating': reviews['rating'],
            'steam_rating_count': reviews['totalReviews'],
            'rating_synced_at': now_utc_iso(),
        },
    )


def sync_genre_item(
    item: Mapping[str, Any],
    *,
    db_lock: Any,
    get_db: Callable[[], Any],
    steamspy: SteamSpyClient,
) -> str:
    data = steamspy.fetch_app_details(int(item['steam_app_id']))
    if data is None:
        raise NotFoundError('App not found or API error')
    genres = parse_genres(data['genreString'])
    tags = extract_top_tags(data['tagVotes'])
    if not genres and not tags:
        return OUTCOME_SKIPPED
    fields: dict[str, Any] = {'genres_synced_at': now_utc_iso()}
    if genres:
        fields['genres'] = genres
    if tags:
        fields['tags'] = tags
    _write_game_fields(db_lock, get_db, int(item['id']), fields)
    return OUTCOME_SUCCESS


def sync_cover_item(
    item: Mapping[str, Any],
    *,
    db_lock: Any,
    get_db: Callable[[], Any],
    steamgriddb: SteamGridDBClient,
) -> str:
    game = None
    if item.get('steam_app_id') is not None:
        game = steamgriddb.get_game_by_steam_app_id(int(item['steam_app_id']))
    if game is None:
        game = steamgriddb.search_game(str(item.get('title') or ''))
    if game is None:
        raise NotFoundError('Game not found on SteamGridDB')
    best = select_best(steamgriddb.get_grids(game['providerId']))
    if best is None:
        raise NotFoundError(f"No 600x900 covers found for {game['name']!r}")
    _write_game_fields(
        db_lock,
        get_db,
        int(item['id']),
        {
            'cover_image_url': best['url'],
            'steamgrid_id': game['providerId'],
            'cover_synced_at': now_utc_iso(),
        },
    )
    return OUTCOME_SUCCESS


def sync_rating_item(
    item: Mapping[str, Any],
    *,
    db_lock: Any,
    get_db: Callable[[], Any],
    steam: SteamClient,
) -> str:
    reviews = steam.fetch_reviews(int(item['steam_app_id']))
    if reviews is None:
        raise NotFoundError('Could not fetch reviews from Steam')
    _store_rating(db_lock, get_db, int(item['id']), reviews)
    return OUTCOME_SUCCESS


def sync_metadata_item(
    item: Mapping[str, Any],
    *,
    db_lock: Any,
    get_db: Callable[[], Any],
    igdb: IGDBClient,
) -> str:
    metadata = None
    if item.get('steam_app_id') is not None:
        metadata = igdb.find_by_steam_app_id(int(item['steam_app_id']))
    if metadata is None:
        metadata = igdb.search(
            str(item.get('title') or ''),
            release_year=extract_release_year(item.get('release_date')),
        )
    if metadata is None:
        raise NotFoundError('No IGDB match')

    game_id = int(item['id'])
    with db_lock:
        conn = get_db()
        try:
            game = repository.get_game(conn, game_id)
            if game is None:
                return OUTCOME_SKIPPED
            fields: dict[str, Any] = {'igdb_id': metadata['id']}
            if not game.get('description') and metadata.get('summary'):
                fields['description'] = metadata['summary']
            if not game.get('genres') and metadata.get('genres'):
                fields['genres'] = metadata['genres']
            repository.update_game_fields(conn, game_id, fields)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    return OUTCOME_SUCCESS


def import_library_item(
    item: Mapping[str, Any],
    *,
    db_lock: Any,
    get_db: Callable[[], Any],
    steam: SteamClient,
    matcher: Any,
    fetch_details: bool,
) -> str:
    details = steam.fetch_app_details(int(item['externalId'])) if fetch_details else None
    with db_lock:
        conn = get_db()
        try:
            import_owned_game(conn, matcher, item, details)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    return OUTCOME_SUCCESS


def library_import_job(
    update_progress: ProgressCallback,
    *,
    owned: Sequence[Mapping[str, Any]],
    db_lock: Any,
    get_db: Callable[[], Any],
    steam: SteamClient,
    fetch_details: bool = STEAM_LIBRARY_FETCH_DETAILS,
    threshold: int = MATCH_CONFIDENCE_THRESHOLD,
) -> dict[str, Any]:
    with db_lock:
        matcher = build_matcher(get_db(), threshold=threshold)
    # Items carry ``title`` so progress and errors read like the other jobs.
    items = [dict(game, steam_app_id=game.get('externalId')) for game in owned]
    worker = partial(
        import_library_item,
        db_lock=db_lock,
        get_db=get_db,
        steam=steam,
        matcher=matcher,
        fetch_details=fetch_details,
    )
    return run_bulk(
        items, worker, limiter=ConcurrencyLimiter(1), update_progress=update_progress
    )


@dataclass(frozen=True)
class JobFamily:
    job_type: str
    select_items: Callable[[Any], list[dict[str, Any]]]
    worker: Callable[..., str]
    client_attr: str
    max_concurrency: int
    seconds_per_item: float


JOB_FAMILIES: dict[str, JobFamily] = {
    JOB_TYPE_GENRES: JobFamily(
        JOB_TYPE_GENRES,
        repository.games_missing_genres,
        sync_genre_item,
        'steamspy',
        steamspy_provider.MAX_CONCURRENT,
        steamspy_provider.RATE_LIMIT_DELAY,
    ),
    JOB_TYPE_COVERS: JobFamily(
        JOB_TYPE_COVERS,
        repository.games_missing_covers,
        sync_cover_item,
        'steamgriddb',
        1,
        steamgriddb_provider.RATE_LIMIT_DELAY * 2,
    ),
    JOB_TYPE_HORIZONTAL_COVERS: JobFamily(
        JOB_TYPE_HORIZONTAL_COVERS,
        repository.games_with_horizontal_covers,
        sync_cover_item,
        'steamgriddb',
        1,
        steamgriddb_provider.RATE_LIMIT_DELAY * 2,
    ),
    JOB_TYPE_RATINGS: JobFamily(
        JOB_TYPE_RATINGS,
        repository.games_with_steam_app_id,
        sync_rating_item,
        'steam',
        1,
        steam_provider.RATE_LIMIT_DELAY,
    ),
    JOB_TYPE_METADATA: JobFamily(
        JOB_TYPE_METADATA,
        repository.games_missing_igdb_id,
        sync_metadata_item,
        'igdb',
        1,
        igdb_provider.RATE_LIMIT_DELAY * 2,
    ),
}


def enrichment_job(
    update_progress: ProgressCallback,
    *,
    family: JobFamily,
    games: Sequence[Mapping[str, Any]],
    client: Any,
    db_lock: Any,
    get_db: Callable[[], Any],
) -> dict[str, Any]:
    worker = partial(
        family.worker, db_lock=db_lock, get_db=get_db, **{family.client_attr: client}
    )
    return run_bulk(
        games,
        worker,
        limiter=ConcurrencyLimiter(family.max_concurrency),
        update_progress=update_progress,
    )


def start_job(
    registry: JobRegistry,
    job_type: str,
    *,
    clients: ProviderClients,
    db_lock: Any,
    get_db: Callable[[], Any],
    quick: bool | None = None,
) -> dict[str, Any]:
    """Select the items for ``job_type`` and launch it on ``registry``.

    Raises :class:`errors.ConflictError` when that job is already running and
    lets selection failures (including the owned-library fetch) propagate.
    ``quick`` skips the per-game store details of a library sync; when it is
    ``None`` the configured default applies.
    """

    if job_type == JOB_TYPE_CATALOG:
        raise ValidationError(
            'Catalog jobs run through /api/sync/catalog/import and /api/sync/catalog/sync'
        )
    registry.ensure_idle(job_type)

    if job_type == JOB_TYPE_LIBRARY:
        fetch_details = STEAM_LIBRARY_FETCH_DETAILS if quick is None else not quick
        owned = clients.steam.fetch_owned_games()
        runner = partial(
            library_import_job,
            owned=owned,
            db_lock=db_lock,
            get_db=get_db,
            steam=clients.steam,
            fetch_details=fetch_details,
        )
        seconds = len(owned) * (steam_provider.RATE_LIMIT_DELAY if fetch_details else 0.05)
        return registry.start(
            job_type, runner, total=len(owned), estimated_seconds=seconds
        )

    family = JOB_FAMILIES.get(job_type)
    if family is None:
        startable = (JOB_TYPE_LIBRARY, *JOB_FAMILIES)
        raise ValidationError(
            f'Unknown job type: {job_type}. Must be one of: {", ".join(startable)}'
        )
    with db_lock:
        games = family.select_items(get_db())
    runner = partial(
        enrichment_job,
        family=family,
        games=games,
        client=getattr(clients, family.client_attr),
        db_lock=db_lock,
        get_db=get_db,
    )
    seconds = len(games) * family.seconds_per_item / family.max_concurrency
    return registry.start(job_type, runner, total=len(games), estimated_seconds=seconds)


def refresh_game_rating(
    game_id: int,
    *,
    db_lock: Any,
    get_db: Callable[[], Any],
    steam: SteamClient,
) -> dict[str, Any]:
    """Refresh one game's community rating from Steam reviews."""

    with db_lock:
        game = repository.get_game(get_db(), game_id)
    if game is None:
        raise NotFoundError('Game not found')
    app_id = game.get('steam_app_id')
    if app_id is None:
        raise ValidationError('Game does not have a Steam App ID')

    reviews = steam.fetch_reviews(int(app_id))
    if reviews is None:
        raise ProviderError('Could not fetch reviews from Steam', provider=steam_provider.PROVIDER)

    _store_rating(db_lock, get_db, game_id, reviews)
    return {
        'steamRating': reviews['rating'],
        'steamRatingCount': reviews['totalReviews'],
        'reviewScoreDesc': reviews['reviewScoreDesc'],
        'totalPositive': reviews['totalPositive'],
        'totalNegative': reviews['totalNegative'],
    }


__all__ = [
    'JOB_FAMILIES',
    'OUTCOME_SKIPPED',
    'OUTCOME_SUCCESS',
    'JobFamily',
    'ProviderClients',
    'enrichment_job',
    'library_import_job',
    'refresh_game_rating',
    'run_bulk',
    'start_job',
]
