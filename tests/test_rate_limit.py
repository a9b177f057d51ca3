from __future__ import annotations

import fakeredis
import pytest

from relay.rate_limit import LEDGER_TTL_WINDOWS, MemoryRateLimiter, RedisRateLimiter


@pytest.mark.asyncio
async def test_second_write_inside_cooldown_is_refused() -> None:
    limiter = MemoryRateLimiter(cooldown_ms=2000)

    assert await limiter.admit("1.2.3.4", now=10_000) is True
    assert await limiter.admit("1.2.3.4", now=11_999) is False
    # A refused attempt doesn't push the window forward.
    assert await limiter.admit("1.2.3.4", now=12_000) is True


@pytest.mark.asyncio
async def test_identities_are_throttled_independently() -> None:
    limiter = MemoryRateLimiter(cooldown_ms=2000)

    assert await limiter.admit("a", now=0) is True
    assert await limiter.admit("b", now=1) is True
    assert await limiter.admit("a", now=2) is False
    assert len(limiter) == 2


@pytest.mark.asyncio
async def test_zero_cooldown_admits_everything() -> None:
    limiter = MemoryRateLimiter(cooldown_ms=0)
    assert all([await limiter.admit("a", now=5) for _ in range(3)])


@pytest.mark.asyncio
async def test_redis_ledger_matches_memory_contract() -> None:
    r = fakeredis.FakeRedis(decode_responses=True)
    limiter = RedisRateLimiter(r=r, cooldown_ms=1000)

    assert await limiter.admit("1.2.3.4", now=50_000) is True
    assert await limiter.admit("1.2.3.4", now=50_500) is False
    assert await limiter.admit("5.6.7.8", now=50_500) is True
    assert await limiter.admit("1.2.3.4", now=51_000) is True

    key = "relay:ratelimit:1.2.3.4"
    assert r.get(key) == "51000"
    ttl = r.pttl(key)
    assert 0 < ttl <= 1000 * LEDGER_TTL_WINDOWS


@pytest.mark.asyncio
async def test_redis_ledger_ignores_garbage_entries() -> None:
    r = fakeredis.FakeRedis(decode_responses=True)
    r.set("relay:ratelimit:x", "not-a-number")
    limiter = RedisRateLimiter(r=r, cooldown_ms=1000)

    assert await limiter.admit("x", now=1) is True
    assert r.get("relay:ratelimit:x") == "1"
