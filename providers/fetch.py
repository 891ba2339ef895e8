"""Resilient HTTP client shared by every provider adapter.

The client wraps :func:`urllib.request.urlopen` with a hard per-call timeout,
bounded retries and rate-limit handling:

* ``429`` honours a ``Retry-After`` hint (delta seconds or an HTTP-date) and
  otherwise falls back to exponential backoff.
* ``5xx`` and network failures back off exponentially
  (``initial_backoff * 2 ** attempt``).
* any other ``4xx`` is returned to the caller immediately so adapters can treat
  it as a miss.

Sleeps only happen *between* attempts; once every attempt has failed the
last failure is raised as :class:`errors.ProviderError`.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from config import (
    FETCH_INITIAL_BACKOFF_SECONDS,
    FETCH_MAX_ATTEMPTS,
    FETCH_TIMEOUT_SECONDS,
    HTTP_USER_AGENT,
)
from errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class FetchResponse:
    status: int
    url: str
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace") if self.body else ""

    def json(self) -> Any:
        text = self.text()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                f"invalid JSON response from {self.url}", status=self.status, url=self.url
            ) from exc


def parse_retry_after(value: Any, *, now: float | None = None) -> float | None:
    """Return the delay in seconds encoded by a ``Retry-After`` header value."""

    if value in (None, ""):
        return None
    text = str(value).strip()
    try:
        return max(float(text), 0.0)
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if target is None:
        return None
    reference = time.time() if now is None else now
    return max(target.timestamp() - reference, 0.0)


def _format_http_error(prefix: str, error: HTTPError, body: bytes) -> str:
    message = f"{prefix}: {error.code}"
    detail = ""
    if body:
        detail = body.decode("utf-8", errors="replace").strip()[:200]
    if not detail and error.reason:
        detail = str(error.reason)
    if detail:
        message = f"{message} {detail}"
    return message


class FetchClient:
    """Execute HTTP requests with timeout, retry and backoff."""

    def __init__(
        self,
        *,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        max_attempts: int = FETCH_MAX_ATTEMPTS,
        initial_backoff: float = FETCH_INITIAL_BACKOFF_SECONDS,
        user_agent: str | None = None,
        request_factory: Callable[..., Any] | None = None,
        opener: Callable[..., Any] | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._timeout = timeout if timeout and timeout > 0 else FETCH_TIMEOUT_SECONDS
        self._max_attempts = max(1, int(max_attempts or 1))
        self._initial_backoff = max(float(initial_backoff), 0.0)
        self._user_agent = (user_agent or HTTP_USER_AGENT).strip()
        self._request_factory = request_factory or Request
        self._opener = opener or urlopen
        self._sleep = sleep or time.sleep
        self._clock = clock or time.time

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def backoff_delay(self, attempt: int) -> float:
        return self._initial_backoff * (2 ** attempt)

    def _build_request(
        self,
        url: str,
        method: str,
        headers: Mapping[str, str] | None,
        data: bytes | None,
    ) -> Any:
        request = self._request_factory(url, data=data, method=method)
        merged = {"User-Agent": self._user_agent, "Accept": "application/json"}
        merged.update(headers or {})
        for key, value in merged.items():
            request.add_header(key, value)
        return request

    def call(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        data: bytes | None = None,
        timeout: float | None = None,
        provider: str = "",
    ) -> FetchResponse:
        """Perform ``method url`` and return the response.

        Non-retryable client errors come back as a :class:`FetchResponse` with
        ``ok == False``; exhausted retries raise :class:`ProviderError`.
        """

        effective_timeout = timeout if timeout and timeout > 0 else self._timeout
        label = provider or "provider"
        attempt = 0
        while True:
            request = self._build_request(url, method, headers, data)
            try:
                with self._opener(request, timeout=effective_timeout) as response:
                    body = response.read()
                    status = getattr(response, "status", None) or response.getcode()
                    response_headers = dict(getattr(response, "headers", {}) or {})
                return FetchResponse(
                    status=int(status or 200),
                    url=url,
                    body=body or b"",
                    headers=response_headers,
                )
            except HTTPError as exc:
                try:
                    error_body = exc.read() or b""
                except OSError:  # pragma: no cover - connection dropped mid-body
                    error_body = b""
                error_headers = dict(exc.headers or {})
                if exc.code == 429:
                    delay = parse_retry_after(
                        error_headers.get("Retry-After") or error_headers.get("retry-after"),
                        now=self._clock(),
                    )
                    if delay is None:
                        delay = self.backoff_delay(attempt)
                elif exc.code >= 500:
                    delay = self.backoff_delay(attempt)
                else:
                    return FetchResponse(
                        status=exc.code, url=url, body=error_body, headers=error_headers
                    )
                error = ProviderError(
                    _format_http_error(f"{label} request failed", exc, error_body),
                    provider=provider,
                    status=exc.code,
                    url=url,
                )
                error.__cause__ = exc
            except (URLError, OSError) as exc:
                reason = getattr(exc, "reason", None) or exc
                error = ProviderError(
                    f"{label} request failed: {reason}", provider=provider, url=url
                )
                error.__cause__ = exc
                delay = self.backoff_delay(attempt)

            attempt += 1
            if attempt >= self._max_attempts:
                logger.error("%s call to %s gave up: %s", label, url, error)
                raise error
            logger.warning(
                "%s call to %s failed (attempt %s/%s): %s; retrying in %.2fs",
                label,
                url,
                attempt,
                self._max_attempts,
                error,
                delay,
            )
            if delay > 0:
                self._sleep(delay)

    def get_json(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        provider: str = "",
    ) -> tuple[int, Any]:
        """Return ``(status, payload)``; payload is ``None`` for non-2xx replies."""

        response = self.call(url, headers=headers, provider=provider)
        if not response.ok:
            return response.status, None
        return response.status, response.json()


class ProviderPacer:
    """Enforce a minimum spacing between calls to one provider.

    Each caller reserves the next free slot under a lock and sleeps outside
    it, so concurrent workers are spread ``min_interval`` apart.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._interval = max(float(min_interval), 0.0)
        self._sleep = sleep or time.sleep
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._next_slot: float | None = None

    def wait(self) -> float:
        with self._lock:
            now = self._clock()
            slot = now if self._next_slot is None else max(now, self._next_slot)
            self._next_slot = slot + self._interval
        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay


__all__ = ["FetchClient", "FetchResponse", "ProviderPacer", "parse_retry_after"]
