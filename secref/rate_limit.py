#!/usr/bin/env python3
"""
Rate limiting primitives shared by every OpenFIGI caller in the process.

- SlidingWindowRateLimiter: at most N acquisitions in any rolling window
- ConcurrencyGate: at most K batches in flight
- backoff_delay: capped exponential backoff with jitter

Clocks and sleep functions are injectable so tests never wait in real time.
"""

import random
import threading
import time
from collections import deque
from typing import Callable, Dict, Optional, Tuple

from loguru import logger

from secref.exceptions import RateLimitTimeoutError


class SlidingWindowRateLimiter:
    """
    Allow at most ``max_requests`` acquisitions per ``window_seconds``.

    Timestamps of recent acquisitions live in a ring buffer. A caller that
    finds the window full sleeps until the oldest timestamp leaves the
    window (plus a small buffer) and checks again.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        buffer_seconds: float = 0.05,
        max_wait_seconds: Optional[float] = None,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.sleep = sleep
        self.buffer_seconds = buffer_seconds
        self.max_wait_seconds = max_wait_seconds
        self._timestamps = deque()
        self._lock = threading.Lock()
        self.total_wait = 0.0

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def acquire(self) -> float:
        """
        Block until a request slot is free, then take it.

        Returns:
            Seconds spent waiting

        Raises:
            RateLimitTimeoutError: If the wait would exceed max_wait_seconds
        """
        waited = 0.0
        while True:
            with self._lock:
                now = self.clock()
                self._evict(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    self.total_wait += waited
                    return waited
                delay = self._timestamps[0] + self.window_seconds - now + self.buffer_seconds

            if self.max_wait_seconds is not None and waited + delay > self.max_wait_seconds:
                raise RateLimitTimeoutError(
                    f"Rate limit slot not available within {self.max_wait_seconds:.1f}s"
                )
            logger.debug(f"Rate limiting: waiting {delay:.2f} seconds...")
            self.sleep(delay)
            waited += delay

    def in_window(self) -> int:
        """Acquisitions counted in the current window."""
        with self._lock:
            self._evict(self.clock())
            return len(self._timestamps)


class ConcurrencyGate:
    """Bounded number of in-flight batches, usable as a context manager."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._semaphore = threading.BoundedSemaphore(limit)
        self._lock = threading.Lock()
        self.in_flight = 0
        self.peak_in_flight = 0

    def __enter__(self) -> "ConcurrencyGate":
        self._semaphore.acquire()
        with self._lock:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        with self._lock:
            self.in_flight -= 1
        self._semaphore.release()


def backoff_delay(
    attempt: int,
    base: float = 1.0,
    cap: float = 60.0,
    jitter: float = 0.2,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    base * 2**(attempt-1), capped, plus up to ``jitter`` seconds of noise.
    """
    delay = min(cap, base * (2 ** max(0, attempt - 1)))
    return delay + rand() * jitter


_shared_limits: Dict[Tuple[int, int], Tuple[SlidingWindowRateLimiter, ConcurrencyGate]] = {}
_shared_lock = threading.Lock()


def get_shared_limits(
    requests_per_minute: int, concurrency: int
) -> Tuple[SlidingWindowRateLimiter, ConcurrencyGate]:
    """
    Process-wide limiter and gate for one quota configuration.

    Every OpenFIGI client built with the same quota shares one pair, so the
    service's global limit holds across callers.
    """
    key = (requests_per_minute, concurrency)
    with _shared_lock:
        if key not in _shared_limits:
            _shared_limits[key] = (
                SlidingWindowRateLimiter(requests_per_minute, window_seconds=60.0),
                ConcurrencyGate(concurrency),
            )
        return _shared_limits[key]


def reset_shared_limits() -> None:
    """Forget the process-wide limiters (test isolation)."""
    with _shared_lock:
        _shared_limits.clear()
