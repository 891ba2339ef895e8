"""Counting permit pool that bounds simultaneous provider calls."""

from __future__ import annotations

import threading
from collections import deque
from typing import Any


class ConcurrencyLimiter:
    """Hand out at most ``max_concurrency`` permits at once.

    ``acquire`` blocks until a permit is free.  ``release`` passes the permit
    straight to the oldest waiter, or returns it to the free pool when nobody
    is waiting, so waiters are served in arrival order.
    """

    def __init__(self, max_concurrency: int) -> None:
        if int(max_concurrency) < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._max = int(max_concurrency)
        self._available = self._max
        self._lock = threading.Lock()
        self._waiters: deque[threading.Event] = deque()

    @property
    def max_concurrency(self) -> int:
        return self._max

    @property
    def available(self) -> int:
        with self._lock:
            return self._available

    @property
    def waiting(self) -> int:
        with self._lock:
            return len(self._waiters)

    def acquire(self) -> None:
        with self._lock:
            if self._available > 0:
                self._available -= 1
                return
            waiter = threading.Event()
            self._waiters.append(waiter)
        # The releasing thread has already transferred its permit to us.
        waiter.wait()

    def release(self) -> None:
        with self._lock:
            if self._waiters:
                self._waiters.popleft().set()
                return
            if self._available >= self._max:
                raise RuntimeError("release() called more times than acquire()")
            self._available += 1

    def __enter__(self) -> 'ConcurrencyLimiter':
        self.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


__all__ = ["ConcurrencyLimiter"]
