from __future__ import annotations

import threading
import time

import pytest

from db import repository
from errors import ConflictError, NotFoundError, ProviderError, ValidationError
from jobs.enrichment import (
    JOB_FAMILIES,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCESS,
    enrichment_job,
    library_import_job,
    refresh_game_rating,
    run_bulk,
    start_job,
)
from jobs.limiter import ConcurrencyLimiter
from jobs.manager import JobRegistry
from providers.steam import default_header_image
from tests.app_helpers import (
    FakeIGDB,
    FakeSteam,
    FakeSteamGridDB,
    FakeSteamSpy,
    fake_clients,
    grid,
    seed_game,
)


def reviews(rating, total=100):
    return {
        'rating': rating,
        'totalReviews': total,
        'totalPositive': rating,
        'totalNegative': total - rating,
        'reviewScoreDesc': 'Mostly Positive',
    }


def run_family(conn, lock, job_type, client):
    family = JOB_FAMILIES[job_type]
    progress = []
    result = enrichment_job(
        lambda **kwargs: progress.append(kwargs),
        family=family,
        games=family.select_items(conn),
        client=client,
        db_lock=lock,
        get_db=lambda: conn,
    )
    return result, progress


def test_run_bulk_tallies_outcomes_and_reports_progress():
    items = [{'id': index, 'title': f'Game {index}'} for index in range(1, 6)]

    def worker(item):
        if item['id'] == 2:
            raise NotFoundError('App not found or API error')
        if item['id'] == 4:
            return OUTCOME_SKIPPED
        return OUTCOME_SUCCESS

    progress = []
    result = run_bulk(
        items,
        worker,
        limiter=ConcurrencyLimiter(2),
        update_progress=lambda **kwargs: progress.append(kwargs),
    )

    assert result['total'] == 5
    assert result['success'] == 3
    assert result['skipped'] == 1
    assert result['failed'] == 1
    assert result['errors'] == [
        {'title': 'Game 2', 'error': 'App not found or API error', 'gameId': 2}
    ]
    assert progress[0] == {'current': 0, 'total': 5, 'message': 'Starting…'}
    assert [entry['current'] for entry in progress[1:]] == [1, 2, 3, 4, 5]


def test_run_bulk_with_no_items():
    progress = []

    result = run_bulk(
        [], lambda item: OUTCOME_SUCCESS, limiter=ConcurrencyLimiter(1),
        update_progress=lambda **kwargs: progress.append(kwargs),
    )

    assert result == {'total': 0, 'success': 0, 'failed': 0, 'skipped': 0, 'errors': []}
    assert len(progress) == 1


def test_run_bulk_respects_limiter():
    active = 0
    peak = 0
    guard = threading.Lock()

    def worker(item):
        nonlocal active, peak
        with guard:
            active += 1
            peak = max(peak, active)
        time.sleep(0.005)
        with guard:
            active -= 1
        return OUTCOME_SUCCESS

    result = run_bulk(
        [{'id': index} for index in range(12)], worker, limiter=ConcurrencyLimiter(2)
    )

    assert result['success'] == 12
    assert peak <= 2


def test_genre_job_writes_genres_and_tags(conn, lock):
    tagged = seed_game(conn, 'Elden Ring', steam_app_id=1)
    missing = seed_game(conn, 'Gone Game', steam_app_id=2)
    empty = seed_game(conn, 'Quiet Game', steam_app_id=3)
    seed_game(conn, 'No App Id')
    already = seed_game(conn, 'Done', steam_app_id=4, genres=['Action'])
    steamspy = FakeSteamSpy(
        {
            1: {'genreString': 'action, rpg', 'tagVotes': {'Souls-like': 50, 'Dark': 70}},
            3: {'genreString': '', 'tagVotes': {}},
        }
    )

    result, progress = run_family(conn, lock, 'genres', steamspy)

    assert (result['total'], result['success'], result['skipped'], result['failed']) == (3, 1, 1, 1)
    assert result['errors'][0]['gameId'] == missing
    game = repository.get_game(conn, tagged)
    assert game['genres'] == ['Action', 'RPG']
    assert game['tags'] == ['Dark', 'Souls-like']
    assert game['genres_synced_at']
    assert repository.get_game(conn, empty)['genres'] == []
    assert repository.get_game(conn, already)['genres'] == ['Action']
    assert progress[-1]['current'] == 3


def test_cover_job_prefers_safe_high_scoring_grids(conn, lock):
    by_app = seed_game(conn, 'Hades', steam_app_id=10)
    by_title = seed_game(conn, 'Celeste')
    unknown = seed_game(conn, 'Nowhere To Be Found')
    seed_game(conn, 'Has Cover', cover_image_url='https://img/has.jpg')
    steamgriddb = FakeSteamGridDB(
        by_app_id={10: {'providerId': 100, 'name': 'Hades'}},
        by_title={'Celeste': {'providerId': 200, 'name': 'Celeste'}},
        grids={
            100: [grid(1, 5), grid(2, 9, nsfw=True), grid(3, 7)],
            200: [grid(4, 1, humor=True)],
        },
    )

    result, _ = run_family(conn, lock, 'covers', steamgriddb)

    assert (result['total'], result['success'], result['failed']) == (3, 2, 1)
    assert result['errors'][0]['gameId'] == unknown
    hades = repository.get_game(conn, by_app)
    assert hades['cover_image_url'] == grid(3)['url']
    assert hades['steamgrid_id'] == 100
    # Only an unsafe grid exists, so it is used rather than nothing.
    assert repository.get_game(conn, by_title)['cover_image_url'] == grid(4)['url']


def test_rating_job_stores_review_percentage(conn, lock):
    rated = seed_game(conn, 'Portal', steam_app_id=400)
    unrated = seed_game(conn, 'Obscure', steam_app_id=401)
    steam = FakeSteam(reviews={400: reviews(97, 1000)})

    result, _ = run_family(conn, lock, 'ratings', steam)

    assert (result['success'], result['failed']) == (1, 1)
    game = repository.get_game(conn, rated)
    assert game['steam_rating'] == 97
    assert game['steam_rating_count'] == 1000
    assert game['rating_synced_at']
    assert repository.get_game(conn, unrated)['steam_rating'] is None


def test_metadata_job_fills_only_missing_fields(conn, lock):
    with_app = seed_game(conn, 'Portal', steam_app_id=400, description='Keep me')
    by_title = seed_game(conn, 'Hollow Knight', release_date='2017-02-24')
    unmatched = seed_game(conn, 'Mystery')
    igdb = FakeIGDB(
        by_app_id={400: {'id': 71, 'summary': 'Replace me', 'genres': ['Puzzle']}},
        by_title={'Hollow Knight': {'id': 14593, 'summary': 'Bugs.', 'genres': []}},
    )

    result, _ = run_family(conn, lock, 'metadata', igdb)

    assert (result['success'], result['failed']) == (2, 1)
    portal = repository.get_game(conn, with_app)
    assert portal['igdb_id'] == 71
    assert portal['description'] == 'Keep me'
    assert portal['genres'] == ['Puzzle']
    knight = repository.get_game(conn, by_title)
    assert knight['igdb_id'] == 14593
    assert knight['description'] == 'Bugs.'
    assert repository.get_game(conn, unmatched)['igdb_id'] is None


def test_library_job_imports_owned_games(conn, lock):
    existing = seed_game(conn, 'Grounded', platforms={'gamepass': 'gr'}, primary='gamepass')
    owned = [
        {'externalId': 962130, 'title': 'Grounded', 'minutesPlayed': 30},
        {'externalId': 620, 'title': 'Portal 2', 'minutesPlayed': 0},
    ]
    steam = FakeSteam(details={620: {'title': 'Portal 2', 'genres': ['Puzzle']}})

    result = library_import_job(
        lambda **kwargs: None,
        owned=owned,
        db_lock=lock,
        get_db=lambda: conn,
        steam=steam,
        fetch_details=True,
    )

    assert (result['total'], result['success'], result['failed']) == (2, 2, 0)
    assert repository.get_game(conn, existing)['steam_app_id'] == 962130
    portal = repository.get_game_by_steam_app_id(conn, 620)
    assert portal['genres'] == ['Puzzle']
    assert repository.count_games(conn) == 2


def test_start_job_runs_family_in_background(conn, lock):
    game_id = seed_game(conn, 'Portal', steam_app_id=400)
    registry = JobRegistry()
    clients = fake_clients(steam=FakeSteam(reviews={400: reviews(90)}))

    started = start_job(
        registry, 'ratings', clients=clients, db_lock=lock, get_db=lambda: conn
    )
    assert started['total'] == 1
    assert registry.wait('ratings', timeout=5)

    assert registry.status('ratings')['result']['success'] == 1
    assert repository.get_game(conn, game_id)['steam_rating'] == 90


def test_start_library_job_fetches_owned_list_up_front(conn, lock):
    registry = JobRegistry()
    clients = fake_clients(
        steam=FakeSteam(owned=[{'externalId': 70, 'title': 'Half-Life', 'minutesPlayed': 5}])
    )

    started = start_job(registry, 'library', clients=clients, db_lock=lock, get_db=lambda: conn)
    registry.wait('library', timeout=5)

    assert started['total'] == 1
    assert repository.get_game_by_steam_app_id(conn, 70)['title'] == 'Half-Life'


def test_start_library_job_owned_fetch_failure_is_not_started(conn, lock):
    registry = JobRegistry()
    clients = fake_clients(steam=FakeSteam(owned_error=ProviderError('down', provider='steam')))

    with pytest.raises(ProviderError):
        start_job(registry, 'library', clients=clients, db_lock=lock, get_db=lambda: conn)

    assert registry.status('library') == {
        'inProgress': False,
        'progress': None,
        'result': None,
        'elapsedSeconds': 0,
    }


def test_start_job_conflicts_with_running_job(conn, lock):
    registry = JobRegistry()
    release = threading.Event()
    registry.start('genres', lambda progress: release.wait(5) and None, total=1)

    try:
        with pytest.raises(ConflictError):
            start_job(
                registry, 'genres', clients=fake_clients(), db_lock=lock, get_db=lambda: conn
            )
    finally:
        release.set()
        registry.wait('genres', timeout=5)


def test_start_job_rejects_unknown_type(conn, lock):
    with pytest.raises(ValidationError):
        start_job(
            JobRegistry(), 'achievements', clients=fake_clients(), db_lock=lock,
            get_db=lambda: conn,
        )


@pytest.mark.parametrize('quick, description', [(True, None), (False, 'Classic shooter.')])
def test_start_library_job_quick_flag_controls_store_details(conn, lock, quick, description):
    registry = JobRegistry()
    clients = fake_clients(
        steam=FakeSteam(
            owned=[{'externalId': 70, 'title': 'Half-Life', 'minutesPlayed': 5}],
            details={70: {'title': 'Half-Life', 'description': 'Classic shooter.'}},
        )
    )

    start_job(
        registry, 'library', clients=clients, db_lock=lock, get_db=lambda: conn, quick=quick
    )
    assert registry.wait('library', timeout=5)

    assert repository.get_game_by_steam_app_id(conn, 70)['description'] == description


def test_horizontal_cover_job_replaces_store_headers(conn, lock):
    wide = seed_game(
        conn, 'Portal 2', steam_app_id=620, cover_image_url=default_header_image(620)
    )
    tall = seed_game(
        conn, 'Hades', steam_app_id=10, cover_image_url='https://img/hades-600x900.png'
    )
    seed_game(conn, 'Celeste')
    assert [game['id'] for game in repository.games_with_horizontal_covers(conn)] == [wide]
    steamgriddb = FakeSteamGridDB(
        by_app_id={620: {'providerId': 5, 'name': 'Portal 2'}},
        grids={5: [grid(51, 3)]},
    )

    result, _ = run_family(conn, lock, 'horizontal-covers', steamgriddb)

    assert (result['total'], result['success'], result['failed']) == (1, 1, 0)
    portal = repository.get_game(conn, wide)
    assert portal['cover_image_url'] == grid(51)['url']
    assert portal['steamgrid_id'] == 5
    assert repository.get_game(conn, tall)['cover_image_url'] == 'https://img/hades-600x900.png'
    assert repository.games_with_horizontal_covers(conn) == []


def test_start_job_sends_catalog_requests_to_the_catalog_endpoints(conn, lock):
    with pytest.raises(ValidationError, match='/api/sync/catalog/import'):
        start_job(
            JobRegistry(), 'catalog', clients=fake_clients(), db_lock=lock,
            get_db=lambda: conn,
        )


def test_unknown_job_type_lists_startable_types(conn, lock):
    with pytest.raises(ValidationError) as excinfo:
        start_job(
            JobRegistry(), 'achievements', clients=fake_clients(), db_lock=lock,
            get_db=lambda: conn,
        )

    message = str(excinfo.value)
    assert 'horizontal-covers' in message
    assert 'library' in message
    assert 'catalog' not in message


def test_refresh_game_rating(conn, lock):
    game_id = seed_game(conn, 'Portal', steam_app_id=400)

    data = refresh_game_rating(
        game_id, db_lock=lock, get_db=lambda: conn, steam=FakeSteam(reviews={400: reviews(88)})
    )

    assert data == {
        'steamRating': 88,
        'steamRatingCount': 100,
        'reviewScoreDesc': 'Mostly Positive',
        'totalPositive': 88,
        'totalNegative': 12,
    }
    assert repository.get_game(conn, game_id)['steam_rating'] == 88


def test_refresh_game_rating_errors(conn, lock):
    no_app = seed_game(conn, 'Catalog Only')
    no_reviews = seed_game(conn, 'Quiet', steam_app_id=5)
    kwargs = {'db_lock': lock, 'get_db': lambda: conn, 'steam': FakeSteam()}

    with pytest.raises(NotFoundError):
        refresh_game_rating(9999, **kwargs)
    with pytest.raises(ValidationError):
        refresh_game_rating(no_app, **kwargs)
    with pytest.raises(ProviderError):
        refresh_game_rating(no_reviews, **kwargs)
