from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import redis

from relay.clock import now_ms

logger = logging.getLogger(__name__)

# Redis ledger keys outlive the cooldown by this many windows, then expire.
LEDGER_TTL_WINDOWS = 5


class RateLimiter(Protocol):
    cooldown_ms: int

    async def admit(self, identity: str, now: int | None = None) -> bool: ...


class MemoryRateLimiter:
    """Per-identity cooldown gate over an in-process ledger.

    Entries are never evicted; the ledger grows with the number of distinct
    identities seen during the process lifetime.
    """

    def __init__(self, *, cooldown_ms: int) -> None:
        self.cooldown_ms = cooldown_ms
        self._last: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def admit(self, identity: str, now: int | None = None) -> bool:
        t = now_ms() if now is None else now
        async with self._lock:
            last = self._last.get(identity)
            if last is not None and t - last < self.cooldown_ms:
                return False
            self._last[identity] = t
            return True

    def __len__(self) -> int:
        return len(self._last)


class RedisRateLimiter:
    """Same contract, ledger kept in Redis so several relays can share it.

    Keys carry a TTL, so idle identities drop out of the ledger on their own.
    """

    def __init__(self, *, r: redis.Redis, cooldown_ms: int, prefix: str = "relay:ratelimit:") -> None:
        self.cooldown_ms = cooldown_ms
        self._r = r
        self._prefix = prefix
        self._lock = asyncio.Lock()

    def _key(self, identity: str) -> str:
        return f"{self._prefix}{identity}"

    async def admit(self, identity: str, now: int | None = None) -> bool:
        t = now_ms() if now is None else now
        key = self._key(identity)
        ttl_ms = max(1, self.cooldown_ms * LEDGER_TTL_WINDOWS)
        async with self._lock:
            raw = self._r.get(key)
            if raw is not None:
                try:
                    last = int(raw)
                except ValueError:
                    logger.warning("Discarding unreadable rate-limit entry %s=%r", key, raw)
                else:
                    if t - last < self.cooldown_ms:
                        return False
            self._r.set(key, str(t), px=ttl_ms)
            return True
