import json

from covers.history import CoverHistory


def make_history(tmp_path, start=1_700_000_000_000):
    ticks = iter(range(start, start + 1000))
    return CoverHistory(tmp_path / 'history.json', clock_ms=lambda: next(ticks))


def test_missing_file_is_empty(tmp_path):
    history = make_history(tmp_path)

    assert history.load() == {}
    assert history.tried(1) == ([], [])
    assert not history.path.exists()


def test_record_is_idempotent(tmp_path):
    history = make_history(tmp_path)

    history.record(7, 101, 'https://cdn/101.png')
    entry = history.record(7, 101, 'https://cdn/101.png')
    history.record(7, 102, 'https://cdn/102.png')

    assert entry['gridIds'] == [101]
    assert history.tried(7) == ([101, 102], ['https://cdn/101.png', 'https://cdn/102.png'])
    stored = json.loads(history.path.read_text('utf-8'))
    assert stored['7']['lastTryTime'] == 1_700_000_000_002
    assert not (tmp_path / 'history.json.tmp').exists()


def test_legacy_lists_are_upgraded_and_saved(tmp_path):
    path = tmp_path / 'history.json'
    path.write_text(json.dumps({'5': [1, 2], '6': {'gridIds': [3], 'lastTryTime': 9}}), 'utf-8')
    history = CoverHistory(path, clock_ms=lambda: 42)

    loaded = history.load()

    assert loaded == {
        '5': {'gridIds': [1, 2], 'triedUrls': [], 'lastTryTime': 42},
        '6': {'gridIds': [3], 'triedUrls': [], 'lastTryTime': 9},
    }
    assert json.loads(path.read_text('utf-8')) == loaded


def test_unreadable_file_is_treated_as_empty(tmp_path):
    path = tmp_path / 'history.json'
    path.write_text('{not json', 'utf-8')

    assert CoverHistory(path).load() == {}


def test_clear_single_game_and_all(tmp_path):
    history = make_history(tmp_path)
    history.record(1, 10, 'u1')
    history.record(2, 20, 'u2')

    assert history.clear(1) is True
    assert history.clear(1) is False
    assert list(history.load()) == ['2']

    history.clear_all()
    assert history.load() == {}
