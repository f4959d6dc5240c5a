from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol
import time

import redis.asyncio as redis

MAX_ATTEMPTS = 5
WINDOW_SECONDS = 15 * 60
LOCK_SECONDS = 15 * 60


@dataclass
class AttemptRecord:
    count: int
    first_attempt: float
    last_attempt: float
    locked_until: float = 0.0


class AttemptStore(Protocol):  # pragma: no cover - Protocol
    async def get(self, key: str) -> Optional[AttemptRecord]:
        ...

    async def put(self, key: str, record: AttemptRecord,
                  ttl_seconds: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class MemoryAttemptStore:
    def __init__(self) -> None:
        self._records: Dict[str, AttemptRecord] = {}

    async def get(self, key: str) -> Optional[AttemptRecord]:
        return self._records.get(key)

    async def put(self, key: str, record: AttemptRecord,
                  ttl_seconds: int) -> None:
        self._records[key] = record

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)


def k_attempts(key: str) -> str: return f"login_attempts:{key}"


class RedisAttemptStore:
    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def get(self, key: str) -> Optional[AttemptRecord]:
        h = await self.r.hgetall(k_attempts(key))
        if not h:
            return None
        return AttemptRecord(
            count=int(h["count"]),
            first_attempt=float(h["first_attempt"]),
            last_attempt=float(h["last_attempt"]),
            locked_until=float(h.get("locked_until", "0")),
        )

    async def put(self, key: str, record: AttemptRecord,
                  ttl_seconds: int) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_attempts(key), mapping={
            "count": str(record.count),
            "first_attempt": str(record.first_attempt),
            "last_attempt": str(record.last_attempt),
            "locked_until": str(record.locked_until),
        })
        pipe.expire(k_attempts(key), max(1, int(ttl_seconds)))
        await pipe.execute()

    async def delete(self, key: str) -> None:
        await self.r.delete(k_attempts(key))


class BruteForceProtection:
    """Failed-login counter per identifier (email or IP) with lockout.

    `max_attempts` failures inside `window` seconds lock the identifier for
    `lock_duration` seconds.
    """

    def __init__(
        self,
        store: AttemptStore,
        *,
        clock: Callable[[], float] = time.time,
        max_attempts: int = MAX_ATTEMPTS,
        window: int = WINDOW_SECONDS,
        lock_duration: int = LOCK_SECONDS,
    ) -> None:
        self.store = store
        self.clock = clock
        self.max_attempts = max_attempts
        self.window = window
        self.lock_duration = lock_duration

    async def record_failed_attempt(self, key: str) -> AttemptRecord:
        now = self.clock()
        rec = await self.store.get(key)
        if rec is None or (now - rec.first_attempt > self.window
                           and rec.locked_until <= now):
            rec = AttemptRecord(count=0, first_attempt=now, last_attempt=now)
        rec.count += 1
        rec.last_attempt = now
        if rec.count >= self.max_attempts and rec.locked_until <= now:
            rec.locked_until = now + self.lock_duration
        ttl = max(self.window, rec.locked_until - now)
        await self.store.put(key, rec, int(ttl) + 1)
        return rec

    async def is_locked(self, key: str) -> bool:
        return await self.get_remaining_lock_time(key) > 0

    async def get_remaining_lock_time(self, key: str) -> int:
        """Seconds until the lock ends, 0 when not locked."""
        rec = await self.store.get(key)
        if rec is None:
            return 0
        left = rec.locked_until - self.clock()
        if left <= 0:
            return 0
        return int(left + 0.999)

    async def clear_attempts(self, key: str) -> None:
        await self.store.delete(key)
