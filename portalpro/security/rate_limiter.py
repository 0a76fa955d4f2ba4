"""Sliding window rate limiters guarding tenant mutations."""

from __future__ import annotations

import logging
import time
import uuid
from collections import defaultdict, deque
from threading import Lock
from typing import Deque, Final, Protocol

from redis import Redis
from redis.exceptions import RedisError

from ..config import Settings

logger = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def allow(self, key: str) -> bool: ...


def rate_key(action: str, account_id: str) -> str:
    """Budgets are per tenant and per action, e.g. ``upload:<account>``."""
    return f"{action}:{account_id}"


class SlidingWindowRateLimiter:
    """Thread-safe in-process sliding window limiter."""

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._events: defaultdict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Return ``True`` when the request is within the configured rate limit."""
        now = time.monotonic()
        with self._lock:
            window = self._events[key]
            while window and now - window[0] > self._window:
                window.popleft()
            if len(window) >= self._max_requests:
                return False
            window.append(now)
            return True


class RedisSlidingWindowRateLimiter:
    """Sliding window shared by every API worker, one sorted set per budget key.

    Members are request ids scored by arrival time in milliseconds; the
    prune, count and add run as one script so concurrent workers cannot
    both take the last slot.
    """

    _ADMIT: Final[str] = """
    local window_start = tonumber(ARGV[1]) - tonumber(ARGV[2])
    redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', window_start)
    if redis.call('ZCARD', KEYS[1]) >= tonumber(ARGV[3]) then
        return 0
    end
    redis.call('ZADD', KEYS[1], ARGV[1], ARGV[4])
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "portalpro:rate",
    ) -> None:
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._admit = client.register_script(self._ADMIT)

    def allow(self, key: str) -> bool:
        """Admit one request against ``key`` (see :func:`rate_key`) if the window has room."""
        now_ms = int(time.time() * 1000)
        admitted = self._admit(
            keys=[f"{self._key_prefix}:{key}"],
            args=[now_ms, self._window_ms, self._max_requests, uuid.uuid4().hex],
        )
        return int(admitted) == 1


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Instantiate the configured backend, preferring Redis when it is reachable."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            client = Redis.from_url(settings.redis_url)
            client.ping()
        except RedisError as exc:
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)
        else:
            logger.info("rate limiter configured for redis backend")
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
