# model/accounting/_postgres.py
"""
SQL medal accounting backend mirroring the TigerBeetle semantics:
- credits are posted entries, idempotent on their transfer key
- spending is a time-limited pending debit ("hold") on the wallet
- commit posts the hold, release voids it, expired holds no longer count
- balances are derived from the entries

Runs on PostgreSQL in production and on SQLite for development and tests.
"""

from __future__ import annotations
import time
import uuid
from typing import Dict, Optional
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection
from sqlalchemy import text

from typing import Callable, AsyncContextManager

from ...logger import get_logger

Gated = Callable[[], AsyncContextManager[None]]

log = get_logger(__name__)


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


# Entry statuses
E_PENDING = "pending"
E_POSTED = "posted"
E_VOIDED = "voided"


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------

SQL_CREATE_WALLETS = r"""
-- One row per user; updated on every balance-changing statement so that
-- concurrent holds on the same wallet serialize on this row.
CREATE TABLE IF NOT EXISTS medal_wallets (
    user_id     TEXT PRIMARY KEY,
    created_at  DOUBLE PRECISION NOT NULL,
    updated_at  DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_ENTRIES = r"""
-- Entries: credits (always posted) and debits (pending/posted/voided).
--   expires_at : epoch seconds when a pending debit times out
CREATE TABLE IF NOT EXISTS medal_entries (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL REFERENCES medal_wallets(user_id),
    kind        TEXT NOT NULL CHECK (kind IN ('credit','debit')),
    amount      BIGINT NOT NULL CHECK (amount > 0),
    status      TEXT NOT NULL CHECK (status IN ('pending','posted','voided')),
    expires_at  DOUBLE PRECISION,
    created_at  DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_ENTRIES_IDX = r"""
CREATE INDEX IF NOT EXISTS medal_entries_user_status_idx
    ON medal_entries(user_id, kind, status);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection) -> None:
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_WALLETS))
    await exec_(text(SQL_CREATE_ENTRIES))
    await exec_(text(SQL_CREATE_ENTRIES_IDX))


async def create_accounts(db: AsyncConnection) -> bool:
    """For parity with TB: ensures the schema. Returns True on success."""
    await create_schema(db)
    log.info("medal accounting schema ready")
    return True


# ------------------------------------------------------------------------------
# Core logic
# ------------------------------------------------------------------------------

# UN-GATED internal function
async def _touch_wallet(db: AsyncSession, user_id: str, now: float) -> None:
    await db.execute(text("""
        INSERT INTO medal_wallets(user_id, created_at, updated_at)
        VALUES(:u, :now, :now)
        ON CONFLICT (user_id) DO UPDATE SET updated_at=EXCLUDED.updated_at
    """), {"u": user_id, "now": now})


# UN-GATED internal function
async def _balance(db: AsyncSession, user_id: str, now: float) -> Dict[str, int]:
    """
    earned    = sum(credits)
    used      = sum(debits WHERE posted)
    locked    = sum(debits WHERE pending AND not expired)
    available = earned - used - locked
    total     = available + locked
    """
    row = (await db.execute(text("""
        SELECT
          COALESCE(SUM(CASE WHEN kind='credit' AND status='posted'
                            THEN amount ELSE 0 END), 0) AS earned,
          COALESCE(SUM(CASE WHEN kind='debit' AND status='posted'
                            THEN amount ELSE 0 END), 0) AS used,
          COALESCE(SUM(CASE WHEN kind='debit' AND status='pending'
                             AND (expires_at IS NULL OR expires_at > :now)
                            THEN amount ELSE 0 END), 0) AS locked
        FROM medal_entries
        WHERE user_id=:u
    """), {"u": user_id, "now": now})).mappings().first()
    earned = int(row["earned"])
    used = int(row["used"])
    locked = int(row["locked"])
    available = earned - used - locked
    return {
        "earned": earned,
        "used": used,
        "locked": locked,
        "available": available,
        "total": available + locked,
    }


# Public API (parallels TB impl)

async def ensure_wallet(db: GatedAsyncSession, user_id: str) -> None:
    async with db.gated():
        async with db.session.begin():
            await _touch_wallet(db.session, user_id, time.time())


async def credit(
    db: GatedAsyncSession, user_id: str, amount: int, transfer_key: str,
) -> bool:
    """
    Post a credit. Returns False when `transfer_key` was already applied.
    """
    if amount <= 0:
        raise ValueError("amount must be positive")
    now = time.time()
    async with db.gated():
        async with db.session.begin():
            await _touch_wallet(db.session, user_id, now)
            row = (await db.session.execute(text("""
                INSERT INTO medal_entries(
                    id, user_id, kind, amount, status, expires_at, created_at)
                VALUES(:id, :u, 'credit', :a, 'posted', NULL, :c)
                ON CONFLICT (id) DO NOTHING
                RETURNING id
            """), {"id": f"credit:{transfer_key}", "u": user_id, "a": amount,
                   "c": now})).first()
    return row is not None


async def reserve(
    db: GatedAsyncSession, user_id: str, amount: int, timeout_seconds: int,
) -> Optional[str]:
    """
    Create a PENDING debit if the wallet covers it.
    Returns the hold id, or None when the available balance is too low.
    """
    if amount <= 0:
        raise ValueError("amount must be positive")
    now = time.time()
    expires_at = now + timeout_seconds if timeout_seconds > 0 else None
    hold_id = uuid.uuid4().hex
    async with db.gated():
        async with db.session.begin():
            # row lock on the wallet first, then read the balance
            await _touch_wallet(db.session, user_id, now)
            bal = await _balance(db.session, user_id, now)
            if bal["available"] < amount:
                return None
            await db.session.execute(text("""
                INSERT INTO medal_entries(
                    id, user_id, kind, amount, status, expires_at, created_at)
                VALUES(:id, :u, 'debit', :a, 'pending', :e, :c)
            """), {"id": hold_id, "u": user_id, "a": amount, "e": expires_at,
                   "c": now})
    return hold_id


async def commit(
    db: GatedAsyncSession, hold_id: str, user_id: str, amount: int,
) -> bool:
    """POST a pending hold. False if it is unknown, expired or not pending."""
    now = time.time()
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE medal_entries
                SET status='posted', expires_at=NULL
                WHERE id=:id
                  AND user_id=:u
                  AND kind='debit'
                  AND status='pending'
                  AND (expires_at IS NULL OR expires_at > :now)
                RETURNING id
            """), {"id": hold_id, "u": user_id, "now": now})).first()
    return row is not None


async def release(
    db: GatedAsyncSession, hold_id: str, user_id: str, amount: int,
) -> None:
    """VOID a pending hold (best-effort)."""
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE medal_entries
                SET status='voided'
                WHERE id=:id
                  AND user_id=:u
                  AND kind='debit'
                  AND status='pending'
            """), {"id": hold_id, "u": user_id})


async def balance(db: GatedAsyncSession, user_id: str) -> Dict[str, int]:
    async with db.gated():
        async with db.session.begin():
            return await _balance(db.session, user_id, time.time())
