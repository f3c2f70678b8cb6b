"""Fixed-window rate limiters for incoming requests, in memory or in Redis."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from typing import Any, Callable

log = logging.getLogger(__name__)

Clock = Callable[[], float]

_NS_PER_SECOND = 1_000_000_000


def _duration_ns(duration: timedelta | float) -> int:
    if isinstance(duration, timedelta):
        return duration // timedelta(microseconds=1) * 1000
    return int(round(float(duration) * _NS_PER_SECOND))


def _truncate(now: float, duration: timedelta | float) -> int:
    """Round ``now`` (seconds) down to a multiple of ``duration``, in whole seconds."""
    now_ns = int(round(now * _NS_PER_SECOND))
    step = _duration_ns(duration)
    if step > 0:
        now_ns -= now_ns % step
    return now_ns // _NS_PER_SECOND


def truncate_now(duration: timedelta | float) -> int:
    """Return the current Unix time rounded down to a multiple of ``duration``."""
    return _truncate(time.time(), duration)


class _LimitedKeys:
    """Usage counts of one time window."""

    def __init__(self, trunc_ts: int):
        self.trunc_ts = trunc_ts
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def take(self, key: str, limit: int) -> bool:
        with self._lock:
            used = self._counts.get(key, 0)
            self._counts[key] = used + 1
            return used < limit


class MemoryFrontendRateLimiter:
    """Keeps the counts of the current window in local memory.

    The counts are dropped as soon as the window changes.
    """

    def __init__(self, duration: timedelta | float, limit: int, clock: Clock = time.time):
        self.duration = duration
        self.limit = limit
        self._clock = clock
        self._generation: _LimitedKeys | None = None
        self._lock = threading.Lock()

    def take(self, key: str) -> bool:
        """Use one request for ``key``; False when it is over the limit."""
        with self._lock:
            trunc_ts = _truncate(self._clock(), self.duration)
            if self._generation is None or self._generation.trunc_ts != trunc_ts:
                self._generation = _LimitedKeys(trunc_ts)
            generation = self._generation
        return generation.take(key, self.limit)


class RedisFrontendRateLimiter:
    """Counts requests per window in Redis, with keys that expire with the window."""

    def __init__(
        self,
        client: Any,
        duration: timedelta | float,
        limit: int,
        prefix: str = "",
        clock: Clock = time.time,
    ):
        self.client = client
        self.duration = duration
        self.limit = limit
        self.prefix = prefix
        self._clock = clock

    def _key(self, key: str, trunc_ts: int) -> str:
        return f"rate_limit:{self.prefix}:{key}:{trunc_ts}"

    def take(self, key: str) -> bool:
        """Use one request for ``key``; False when over the limit.

        Errors of the Redis client are logged and raised.
        """
        trunc_ts = _truncate(self._clock(), self.duration)
        full_key = self._key(key, trunc_ts)
        expire_ms = _duration_ns(self.duration) // 1_000_000 - 1
        try:
            pipe = self.client.pipeline(transaction=False)
            pipe.incr(full_key)
            pipe.pexpire(full_key, expire_ms)
            count, _ = pipe.execute()
        except Exception as exc:
            log.error("frontend rate limit take failed err=%s", exc)
            raise
        return int(count) - 1 < self.limit


class NoopFrontendRateLimiter:
    """Never limits; only counts how many requests it let through."""

    def __init__(self) -> None:
        self.taken = 0
        self._lock = threading.Lock()

    def take(self, key: str) -> bool:
        """Let the request for ``key`` through."""
        with self._lock:
            self.taken += 1
        log.debug("noop rate limiter take key=%s", key)
        return True