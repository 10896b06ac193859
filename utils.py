#!/usr/bin/env python3
"""
Utility classes and functions shared across the report pipeline.

Contains the token bucket rate limiter used to pace platform, analyzer and
email calls, the retry helper, the keyed async lock that serializes report
generation per key, and small formatting helpers.
"""

from asyncio import Lock, sleep
from contextlib import asynccontextmanager
from time import monotonic
from typing import AsyncIterator, Dict, Optional

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class RateLimiter:
    """A token bucket rate limiter for controlling request rates.

    Tokens refill continuously at ``requests_per_minute / 60`` per second up to
    ``burst``. Each ``acquire()`` consumes one token, waiting when the bucket is
    empty. With ``burst=1`` consecutive acquisitions are spaced by
    ``60 / requests_per_minute`` seconds, and the first one never waits.
    """

    def __init__(self, requests_per_minute: float, burst: int = 1, name: str = "default"):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Sustained rate. If 0 or negative, no rate limiting is applied.
            burst: Bucket capacity (maximum back-to-back requests).
            name: Label used in log messages.
        """
        self.requests_per_minute = requests_per_minute
        self.name = name
        self.capacity = max(1, int(burst))
        self.rate_per_second = requests_per_minute / 60.0 if requests_per_minute > 0 else 0.0
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self._tokens = float(self.capacity)
        self._updated = monotonic()
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self.rate_per_second > 0

    def _refill(self) -> None:
        now = monotonic()
        elapsed = now - self._updated
        self._updated = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate_per_second)

    async def acquire(self) -> float:
        """Acquire permission to make a request, waiting if necessary.

        Returns:
            The number of seconds spent waiting.
        """
        if not self.enabled:
            return 0.0

        async with self._lock:
            self._refill()
            waited = 0.0
            if self._tokens < 1:
                waited = (1 - self._tokens) / self.rate_per_second
                logger.debug(f"Rate limiting ({self.name}): waiting {waited:.2f} seconds")
                await sleep(waited)
                self._refill()
            self._tokens = max(0.0, self._tokens - 1)
            return waited


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given (0-based) retry attempt."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


class KeyedLock:
    """A map of key -> asyncio.Lock, so at most one holder per key runs at a time.

    Locks are created on first use and dropped once no task holds or waits for them.
    """

    def __init__(self):
        self._locks: Dict[str, Lock] = {}
        self._waiters: Dict[str, int] = {}

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[bool]:
        """Hold the lock for ``key``.

        Yields:
            True when the lock was already held by someone else on entry
            (this caller had to wait), False otherwise.
        """
        lock = self._locks.setdefault(key, Lock())
        # Count holders and queued waiters, including a woken waiter that has not acquired yet
        contended = self._waiters.get(key, 0) > 0
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield contended
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] <= 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: Optional[str], max_length: int, suffix: str = "...") -> Optional[str]:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix
