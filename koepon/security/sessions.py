from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Callable, Dict, List, Optional, Protocol, Tuple
import time

import redis.asyncio as redis

from ..logger import get_logger

log = get_logger(__name__)

MAX_SESSIONS_PER_USER = 5
INACTIVITY_TIMEOUT = 30 * 60
ABSOLUTE_TIMEOUT = 8 * 3600


@dataclass
class SessionRecord:
    user_id: str
    created_at: float
    last_activity: float
    user_agent: str
    ip_address: str


class SessionStore(Protocol):  # pragma: no cover - Protocol
    async def get(self, session_id: str) -> Optional[SessionRecord]:
        ...

    async def put(self, session_id: str, record: SessionRecord,
                  ttl_seconds: int) -> None:
        ...

    async def delete(self, session_id: str) -> None:
        ...

    async def list_for_user(
        self, user_id: str
    ) -> List[Tuple[str, SessionRecord]]:
        ...

    async def all_session_ids(self) -> List[str]:
        ...


class MemorySessionStore:
    """Process-local store; single instance deployments and tests."""

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionRecord] = {}

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._sessions.get(session_id)

    async def put(self, session_id: str, record: SessionRecord,
                  ttl_seconds: int) -> None:
        self._sessions[session_id] = record

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def list_for_user(
        self, user_id: str
    ) -> List[Tuple[str, SessionRecord]]:
        return [(sid, rec) for sid, rec in self._sessions.items()
                if rec.user_id == user_id]

    async def all_session_ids(self) -> List[str]:
        return list(self._sessions)


# ---- keys
def k_sess(session_id: str) -> str: return f"sess:{session_id}"
def k_user_sessions(user_id: str) -> str: return f"user_sessions:{user_id}"


class RedisSessionStore:
    """Shared store: sessions survive restarts and span instances."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        h = await self.r.hgetall(k_sess(session_id))
        if not h:
            return None
        return SessionRecord(
            user_id=h["user_id"],
            created_at=float(h["created_at"]),
            last_activity=float(h["last_activity"]),
            user_agent=h.get("user_agent", ""),
            ip_address=h.get("ip_address", ""),
        )

    async def put(self, session_id: str, record: SessionRecord,
                  ttl_seconds: int) -> None:
        mapping = {k: str(v) for k, v in asdict(record).items()}
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_sess(session_id), mapping=mapping)
        pipe.expire(k_sess(session_id), max(1, int(ttl_seconds)))
        pipe.sadd(k_user_sessions(record.user_id), session_id)
        pipe.expire(k_user_sessions(record.user_id), ABSOLUTE_TIMEOUT)
        await pipe.execute()

    async def delete(self, session_id: str) -> None:
        user_id = await self.r.hget(k_sess(session_id), "user_id")
        pipe = self.r.pipeline(transaction=True)
        pipe.delete(k_sess(session_id))
        if user_id:
            pipe.srem(k_user_sessions(user_id), session_id)
        await pipe.execute()

    async def list_for_user(
        self, user_id: str
    ) -> List[Tuple[str, SessionRecord]]:
        out = []
        for sid in await self.r.smembers(k_user_sessions(user_id)):
            rec = await self.get(sid)
            if rec is None:
                # expired by TTL
                await self.r.srem(k_user_sessions(user_id), sid)
                continue
            out.append((sid, rec))
        return out

    async def all_session_ids(self) -> List[str]:
        return [key.split(":", 1)[1]
                async for key in self.r.scan_iter(match="sess:*")]


class SessionSecurity:
    def __init__(
        self,
        store: SessionStore,
        *,
        clock: Callable[[], float] = time.time,
        max_sessions: int = MAX_SESSIONS_PER_USER,
        inactivity_timeout: int = INACTIVITY_TIMEOUT,
        absolute_timeout: int = ABSOLUTE_TIMEOUT,
    ) -> None:
        self.store = store
        self.clock = clock
        self.max_sessions = max_sessions
        self.inactivity_timeout = inactivity_timeout
        self.absolute_timeout = absolute_timeout

    def _ttl(self, rec: SessionRecord, now: float) -> int:
        left = rec.created_at + self.absolute_timeout - now
        return int(max(1, min(self.inactivity_timeout, left)))

    def _expired(self, rec: SessionRecord, now: float) -> bool:
        return (now - rec.last_activity > self.inactivity_timeout
                or now - rec.created_at > self.absolute_timeout)

    async def create_session(
        self, session_id: str, user_id: str, user_agent: str, ip_address: str
    ) -> SessionRecord:
        now = self.clock()
        sessions = await self.store.list_for_user(user_id)
        live = []
        for sid, rec in sessions:
            if self._expired(rec, now):
                await self.store.delete(sid)
            else:
                live.append((sid, rec))
        # make room: evict least recently active
        live.sort(key=lambda item: item[1].last_activity)
        while len(live) >= self.max_sessions:
            sid, _ = live.pop(0)
            await self.store.delete(sid)
            log.info("evicted oldest session", extra={"user_id": user_id})

        rec = SessionRecord(
            user_id=user_id,
            created_at=now,
            last_activity=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        await self.store.put(session_id, rec, self._ttl(rec, now))
        return rec

    async def validate_session(
        self, session_id: str, user_agent: str, ip_address: str
    ) -> Optional[SessionRecord]:
        """The refreshed session, or None if it is unknown/expired/rebound."""
        rec = await self.store.get(session_id)
        if rec is None:
            return None
        now = self.clock()
        if self._expired(rec, now):
            await self.store.delete(session_id)
            return None
        if rec.user_agent != user_agent or rec.ip_address != ip_address:
            # device/IP binding: a moved session is treated as hijacked
            log.warning("session binding mismatch",
                        extra={"user_id": rec.user_id})
            await self.store.delete(session_id)
            return None
        rec.last_activity = now
        await self.store.put(session_id, rec, self._ttl(rec, now))
        return rec

    async def destroy_session(self, session_id: str) -> None:
        await self.store.delete(session_id)

    async def active_sessions(self, user_id: str) -> List[str]:
        now = self.clock()
        return [sid for sid, rec in await self.store.list_for_user(user_id)
                if not self._expired(rec, now)]

    async def cleanup_expired_sessions(self) -> int:
        now = self.clock()
        removed = 0
        for sid in await self.store.all_session_ids():
            rec = await self.store.get(sid)
            if rec is not None and self._expired(rec, now):
                await self.store.delete(sid)
                removed += 1
        return removed
