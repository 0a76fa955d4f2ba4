"""Tests for the sliding window rate limiters."""

from __future__ import annotations

import time

import fakeredis
import pytest

from portalpro.config import Settings
from portalpro.security.rate_limiter import (
    RedisSlidingWindowRateLimiter,
    SlidingWindowRateLimiter,
    build_rate_limiter,
    rate_key,
)


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def test_rate_key_is_per_action_and_account():
    assert rate_key("upload", "acct-1") == "upload:acct-1"
    assert rate_key("upload", "acct-1") != rate_key("invite", "acct-1")


def test_memory_limiter_isolates_keys():
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60)
    assert limiter.allow("upload:acct-1")
    assert not limiter.allow("upload:acct-1")
    assert limiter.allow("upload:acct-2")


def test_redis_rate_limiter_allows_within_threshold(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=3, window_seconds=1, key_prefix="test"
    )
    key = "upload:account"
    assert limiter.allow(key)
    assert limiter.allow(key)
    assert limiter.allow(key)


def test_redis_rate_limiter_blocks_excess(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=2, window_seconds=1, key_prefix="test"
    )
    key = "upload:account"
    assert limiter.allow(key)
    assert limiter.allow(key)
    assert not limiter.allow(key)


def test_redis_rate_limiter_expires_entries(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=1, window_seconds=1, key_prefix="test"
    )
    key = "upload:account"
    assert limiter.allow(key)
    assert not limiter.allow(key)
    time.sleep(1.1)
    assert limiter.allow(key)


def test_build_falls_back_to_memory_when_redis_unreachable():
    settings = Settings(rate_limit_backend="redis", redis_url="redis://127.0.0.1:1/0")

    assert isinstance(build_rate_limiter(settings), SlidingWindowRateLimiter)


def test_build_defaults_to_memory():
    assert isinstance(build_rate_limiter(Settings(rate_limit_backend="memory")), SlidingWindowRateLimiter)


def test_redis_rate_limiter_counts_requests_in_the_same_millisecond(redis_client, monkeypatch):
    frozen = time.time()
    monkeypatch.setattr(time, "time", lambda: frozen)
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=3, window_seconds=1, key_prefix="test"
    )

    assert limiter.allow("upload:account")
    assert limiter.allow("upload:account")
    assert redis_client.zcard("test:upload:account") == 2
