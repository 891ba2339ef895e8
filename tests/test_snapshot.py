import pytest

from catalog.snapshot import validate_snapshot
from errors import ValidationError


def test_valid_snapshot_is_parsed():
    snapshot = validate_snapshot(
        {
            'platform': 'gamepass',
            'updated': '2024-05-01',
            'source': 'xbox.com',
            'games': [
                {
                    'title': '  DOOM Eternal ',
                    'external_id': 'doom-e',
                    'steam_app_id': '782330',
                    'release_date': '2020-03-20',
                    'genres': 'Action, Shooter',
                },
                {'title': 'Hades'},
            ],
        }
    )

    assert snapshot.platform == 'gamepass'
    assert snapshot.updated == '2024-05-01'
    first, second = snapshot.games
    assert first.title == 'DOOM Eternal'
    assert first.steam_app_id == 782330
    assert first.release_year == 2020
    assert first.genres == ['Action', 'Shooter']
    assert second.external_id is None
    assert second.steam_app_id is None
    assert snapshot.titles() == {'doom eternal', 'hades'}


@pytest.mark.parametrize(
    'payload, message',
    [
        ([], 'expected object'),
        ({'games': []}, 'missing or invalid platform'),
        ({'platform': 'steam', 'games': []}, 'Invalid platform: steam'),
        ({'platform': 'eaplay', 'games': {}}, 'games must be an array'),
        ({'platform': 'eaplay', 'games': ['Hades']}, 'index 0: expected object'),
        ({'platform': 'eaplay', 'games': [{'title': 'Ok'}, {'title': '  '}]}, 'index 1'),
    ],
)
def test_invalid_snapshots_are_rejected(payload, message):
    with pytest.raises(ValidationError, match=message):
        validate_snapshot(payload)
