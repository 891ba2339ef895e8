from __future__ import annotations

from urllib.error import URLError

import pytest

from errors import ProviderError
from providers.fetch import FetchClient, FetchResponse, ProviderPacer, parse_retry_after
from tests.app_helpers import FakeHTTPResponse, ScriptedOpener, http_error

URL = 'https://api.example.com/thing'


def make_client(opener, sleeps, **kwargs):
    return FetchClient(
        opener=opener,
        sleep=sleeps.append,
        clock=lambda: 0.0,
        initial_backoff=1.0,
        max_attempts=3,
        **kwargs,
    )


def test_server_errors_retry_with_exponential_backoff_then_raise():
    opener = ScriptedOpener(
        http_error(URL, 500, b'boom'),
        http_error(URL, 502),
        http_error(URL, 503),
    )
    sleeps: list[float] = []
    client = make_client(opener, sleeps)

    with pytest.raises(ProviderError) as excinfo:
        client.call(URL, provider='steam')

    assert len(opener.requests) == 3
    # No sleep after the final attempt.
    assert sleeps == [1.0, 2.0]
    assert excinfo.value.status == 503
    assert excinfo.value.provider == 'steam'
    assert excinfo.value.status_code == 502


def test_recovers_when_a_retry_succeeds():
    opener = ScriptedOpener(http_error(URL, 500), FakeHTTPResponse(b'{"ok": true}'))
    sleeps: list[float] = []

    status, payload = make_client(opener, sleeps).get_json(URL)

    assert status == 200
    assert payload == {'ok': True}
    assert sleeps == [1.0]


def test_rate_limit_honours_retry_after_seconds():
    opener = ScriptedOpener(
        http_error(URL, 429, headers={'Retry-After': '5'}),
        FakeHTTPResponse(b'[]'),
    )
    sleeps: list[float] = []

    response = make_client(opener, sleeps).call(URL)

    assert response.ok
    assert sleeps == [5.0]


def test_rate_limit_without_hint_uses_backoff():
    opener = ScriptedOpener(
        http_error(URL, 429),
        http_error(URL, 429),
        FakeHTTPResponse(b'[]'),
    )
    sleeps: list[float] = []

    make_client(opener, sleeps).call(URL)

    assert sleeps == [1.0, 2.0]


def test_client_errors_are_returned_without_retry():
    opener = ScriptedOpener(http_error(URL, 404, b'missing'))
    sleeps: list[float] = []
    client = make_client(opener, sleeps)

    response = client.call(URL)

    assert response.status == 404
    assert not response.ok
    assert response.text() == 'missing'
    assert sleeps == []
    assert len(opener.requests) == 1


def test_get_json_reports_client_error_as_empty_payload():
    opener = ScriptedOpener(http_error(URL, 403))

    assert make_client(opener, []).get_json(URL) == (403, None)


def test_network_errors_are_retried_and_then_raised():
    opener = ScriptedOpener(
        URLError('connection refused'),
        URLError('connection refused'),
        TimeoutError('timed out'),
    )
    sleeps: list[float] = []

    with pytest.raises(ProviderError, match='timed out'):
        make_client(opener, sleeps).call(URL, provider='igdb')

    assert sleeps == [1.0, 2.0]


def test_timeout_and_headers_are_applied_to_every_attempt():
    opener = ScriptedOpener(http_error(URL, 500), FakeHTTPResponse(b''))
    client = make_client(opener, [], timeout=7, user_agent='CatalogTests/1.0')

    client.call(URL, headers={'Authorization': 'Bearer abc'})

    assert opener.timeouts == [7, 7]
    for request in opener.requests:
        assert request.get_header('User-agent') == 'CatalogTests/1.0'
        assert request.get_header('Authorization') == 'Bearer abc'


def test_single_attempt_client_does_not_sleep():
    opener = ScriptedOpener(http_error(URL, 500))
    sleeps: list[float] = []
    client = FetchClient(opener=opener, sleep=sleeps.append, max_attempts=1)

    with pytest.raises(ProviderError):
        client.call(URL)

    assert sleeps == []


def test_zero_attempts_is_clamped_and_raises_the_last_failure():
    failure = http_error(URL, 504)
    opener = ScriptedOpener(failure)
    client = FetchClient(opener=opener, sleep=lambda _: None, max_attempts=0)

    with pytest.raises(ProviderError) as excinfo:
        client.call(URL, provider='steamspy')

    assert client.max_attempts == 1
    assert len(opener.requests) == 1
    assert excinfo.value.status == 504
    assert excinfo.value.__cause__ is failure


def test_invalid_json_body_raises_provider_error():
    response = FetchResponse(status=200, url=URL, body=b'<html>')

    with pytest.raises(ProviderError):
        response.json()


def test_parse_retry_after_accepts_seconds_and_http_dates():
    assert parse_retry_after('12') == 12.0
    assert parse_retry_after('-3') == 0.0
    assert parse_retry_after('Thu, 01 Jan 1970 00:00:30 GMT', now=10.0) == 20.0
    assert parse_retry_after('Thu, 01 Jan 1970 00:00:30 GMT', now=100.0) == 0.0
    assert parse_retry_after('soon') is None
    assert parse_retry_after(None) is None


def test_pacer_spreads_calls_by_interval():
    sleeps: list[float] = []
    pacer = ProviderPacer(1.5, sleep=sleeps.append, clock=lambda: 100.0)

    delays = [pacer.wait(), pacer.wait(), pacer.wait()]

    assert delays == [0.0, 1.5, 3.0]
    assert sleeps == [1.5, 3.0]


def test_pacer_does_not_wait_once_interval_has_elapsed():
    now = iter([0.0, 10.0])
    sleeps: list[float] = []
    pacer = ProviderPacer(1.0, sleep=sleeps.append, clock=lambda: next(now))

    pacer.wait()
    pacer.wait()

    assert sleeps == []
