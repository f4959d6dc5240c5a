import os
from typing import Optional, Callable, AsyncContextManager, Union
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ._postgres import PaymentIntentStore as PgPaymentIntentStore
from ._redis import PaymentIntentStore as RedisPaymentIntentStore

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("PAYSESSION_BACKEND", "pg").lower()  # 'redis' | 'pg'

PaymentIntentStore = Union[PgPaymentIntentStore, RedisPaymentIntentStore]


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: Optional[str] = None, *,
              db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 24 * 3600,
              gated: Gated = None) -> PaymentIntentStore:
    backend = (backend or BACKEND).lower()
    if backend == "pg":
        if db is None:
            raise RuntimeError(
                "PaymentIntentStore(pg) requires db=AsyncSession"
            )
        if gated is None:
            raise RuntimeError(
                "PaymentIntentStore(pg) requires gated=Gated"
            )
        return PgPaymentIntentStore(db=db, ttl_seconds=ttl_seconds,
                                    gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "PaymentIntentStore(redis) requires r=redis.Redis"
            )
        return RedisPaymentIntentStore(r=r, ttl_seconds=ttl_seconds)
    raise ValueError(f"unknown payment session backend: {backend}")


__all__ = ["PaymentIntentStore", "new_store", "BACKEND"]
