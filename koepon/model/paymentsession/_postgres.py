from __future__ import annotations
from typing import Optional, Dict, Any
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection
import time
from typing import Callable, AsyncContextManager


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_PAYMENT_INTENTS = r"""
-- payment intents created for a draw, keyed by the provider's intent id
CREATE TABLE IF NOT EXISTS payment_intents (
  intent_id    TEXT PRIMARY KEY,
  user_id      TEXT NOT NULL,
  gacha_id     TEXT NOT NULL,
  pull_type    TEXT NOT NULL,
  draw_count   INTEGER NOT NULL,
  amount       INTEGER NOT NULL,
  currency     TEXT NOT NULL,
  status       TEXT NOT NULL,
  created_at   DOUBLE PRECISION NOT NULL,
  expires_at   DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_DRAW_GATES = r"""
-- draw gate: one row per intent whose draw has started
CREATE TABLE IF NOT EXISTS draw_gates (
  intent_id  TEXT PRIMARY KEY,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_DRAW_RESULTS = r"""
-- the finished draw per intent, replayed on retries
CREATE TABLE IF NOT EXISTS draw_results (
  intent_id   TEXT PRIMARY KEY,
  result_json TEXT NOT NULL,
  created_at  DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDEMPOTENCY_KEYS = r"""
-- webhook event ids already processed
CREATE TABLE IF NOT EXISTS idempotency_keys (
  key TEXT PRIMARY KEY,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_PI_USER = r"""
CREATE INDEX IF NOT EXISTS idx_payment_intents_user
  ON payment_intents (user_id, created_at DESC);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_PAYMENT_INTENTS))
    await exec_(text(SQL_CREATE_DRAW_GATES))
    await exec_(text(SQL_CREATE_DRAW_RESULTS))
    await exec_(text(SQL_CREATE_IDEMPOTENCY_KEYS))
    await exec_(text(SQL_CREATE_IDX_PI_USER))


class PaymentIntentStore:
    def __init__(
        self, *, db: AsyncSession, ttl_seconds: int,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.ttl = ttl_seconds
        self.gated = gated

    async def save_intent(self, intent_id: str, mapping: Dict[str, Any]) -> None:
        m = mapping.copy()
        created_at = float(m.get("created_at") or time.time())
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO payment_intents(
                    intent_id, user_id, gacha_id, pull_type, draw_count,
                    amount, currency, status, created_at, expires_at
                  ) VALUES (
                    :intent_id, :user_id, :gacha_id, :pull_type, :draw_count,
                    :amount, :currency, :status, :created_at, :expires_at
                  )
                  ON CONFLICT (intent_id) DO UPDATE SET
                    status=EXCLUDED.status,
                    expires_at=EXCLUDED.expires_at
                """), {
                    "intent_id": intent_id,
                    "user_id": m["user_id"],
                    "gacha_id": m["gacha_id"],
                    "pull_type": m["pull_type"],
                    "draw_count": int(m["draw_count"]),
                    "amount": int(m["amount"]),
                    "currency": m.get("currency", "jpy"),
                    "status": m.get("status", "requires_confirmation"),
                    "created_at": created_at,
                    "expires_at": created_at + self.ttl,
                })

    async def get_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                # expired rows are gone, like a redis key past its TTL
                row = (await self.db.execute(text("""
                  SELECT * FROM payment_intents
                  WHERE intent_id=:id AND expires_at > :now
                """), {"id": intent_id, "now": time.time()})).mappings().first()
                return dict(row) if row else None

    async def set_status(self, intent_id: str, status: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  UPDATE payment_intents SET status=:s
                  WHERE intent_id=:id
                  RETURNING intent_id
                """), {"id": intent_id, "s": status})).first()
        return row is not None

    async def acquire_draw_gate(self, intent_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO draw_gates(intent_id, created_at)
                  VALUES(:id, :now)
                  ON CONFLICT (intent_id) DO NOTHING
                  RETURNING intent_id
                """), {"id": intent_id, "now": time.time()})).first()
                return row is not None

    async def release_draw_gate(self, intent_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM draw_gates WHERE intent_id=:id"),
                    {"id": intent_id},
                )

    async def save_draw_result(self, intent_id: str, result_json: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO draw_results(intent_id, result_json, created_at)
                  VALUES(:id, :r, :now)
                  ON CONFLICT (intent_id) DO NOTHING
                """), {"id": intent_id, "r": result_json, "now": time.time()})

    async def get_draw_result(self, intent_id: str) -> Optional[str]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT result_json FROM draw_results WHERE intent_id=:id
                """), {"id": intent_id})).first()
        return row[0] if row else None

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO idempotency_keys(key, created_at)
                  VALUES(:k, :now)
                  ON CONFLICT (key) DO NOTHING
                  RETURNING key
                """), {"k": evt_id, "now": time.time()})).first()
        return row is not None
