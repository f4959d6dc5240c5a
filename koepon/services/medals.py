from __future__ import annotations
from types import ModuleType
from typing import Any, Callable, AsyncContextManager, Dict, List, Optional, Tuple

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, InsufficientBalance, NotFoundError, ValidationError
from ..helpers import end_of_day_ts, from_iso, now_ts
from ..infra.timings import timeit
from ..logger import get_logger
from ..model.medal import (
    MedalBalance, MedalSource, MedalTransaction, Pagination, TransactionType,
    VTuberBalance,
)
from ..model.orm import ExchangeItem, MedalTransactionRow, VTuber

Gated = Callable[[], AsyncContextManager[None]]

log = get_logger(__name__)

MAX_PAGE_SIZE = 100


def _row_to_tx(row: MedalTransactionRow) -> MedalTransaction:
    return MedalTransaction(
        id=row.id,
        type=TransactionType(row.type),
        amount=row.amount,
        source=MedalSource(row.source),
        description=row.description,
        created_at=row.created_at,
        vtuber_id=row.vtuber_id,
        vtuber_name=row.vtuber_name,
    )


class MedalService:
    """Authoritative medal balances.

    Amounts live in the accounting backend (`ledger` with its handle `ac`);
    the descriptive transaction log lives in SQL and feeds history and
    per-VTuber sub-balances.
    """

    def __init__(
        self,
        db: AsyncSession,
        gated: Gated,
        ledger: ModuleType,
        ac: Any,
        hold_ttl_seconds: int = 300,
    ) -> None:
        self.db = db
        self.gated = gated
        self.ledger = ledger
        self.ac = ac
        self.hold_ttl_seconds = hold_ttl_seconds

    async def _vtuber_balances(self, user_id: str) -> List[VTuberBalance]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(
                        MedalTransactionRow.vtuber_id,
                        func.max(MedalTransactionRow.vtuber_name),
                        MedalTransactionRow.type,
                        func.sum(MedalTransactionRow.amount),
                    )
                    .where(MedalTransactionRow.user_id == user_id,
                           MedalTransactionRow.vtuber_id.is_not(None))
                    .group_by(MedalTransactionRow.vtuber_id,
                              MedalTransactionRow.type)
                    .order_by(MedalTransactionRow.vtuber_id)
                )).all()
        by_vtuber: Dict[str, VTuberBalance] = {}
        for vtuber_id, vtuber_name, tx_type, total in rows:
            vb = by_vtuber.setdefault(
                vtuber_id, VTuberBalance(vtuber_id=vtuber_id)
            )
            vb.vtuber_name = vb.vtuber_name or vtuber_name or ""
            if tx_type == TransactionType.EARNED.value:
                vb.total_earned += int(total)
            else:
                vb.total_used += int(total)
        for vb in by_vtuber.values():
            vb.balance = vb.total_earned - vb.total_used
        return list(by_vtuber.values())

    async def get_balance(self, user_id: str) -> MedalBalance:
        async with timeit("accounting.balance"):
            acct = await self.ledger.balance(self.ac, user_id)
        return MedalBalance(
            total_medals=acct["total"],
            available_medals=acct["available"],
            used_medals=acct["used"],
            locked_medals=acct["locked"],
            vtuber_balances=await self._vtuber_balances(user_id),
            last_updated=now_ts(),
        )

    async def credit(
        self,
        user_id: str,
        amount: int,
        source: MedalSource,
        transaction_id: str,
        description: str = "",
        vtuber_id: Optional[str] = None,
        vtuber_name: Optional[str] = None,
    ) -> bool:
        """Credit once per `transaction_id`. False on a replay."""
        if amount <= 0:
            raise ValidationError("amount must be positive")
        async with timeit("accounting.credit"):
            applied = await self.ledger.credit(
                self.ac, user_id, amount, transaction_id
            )
        async with self.gated():
            async with self.db.begin():
                # a replay still repairs a missing log row
                existing = await self.db.get(
                    MedalTransactionRow, transaction_id
                )
                if existing is None:
                    self.db.add(MedalTransactionRow(
                        id=transaction_id,
                        user_id=user_id,
                        type=TransactionType.EARNED.value,
                        amount=amount,
                        source=MedalSource(source).value,
                        description=description,
                        vtuber_id=vtuber_id,
                        vtuber_name=vtuber_name,
                        created_at=now_ts(),
                    ))
        if not applied:
            log.info("duplicate medal credit ignored",
                     extra={"user_id": user_id})
        return applied

    async def list_transactions(
        self,
        user_id: str,
        filters: Optional[Dict[str, str]] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[MedalTransaction], Pagination]:
        filters = filters or {}
        page = max(1, page)
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))

        conds = [MedalTransactionRow.user_id == user_id]
        try:
            if filters.get("type"):
                conds.append(MedalTransactionRow.type
                             == TransactionType(filters["type"]).value)
            if filters.get("source"):
                conds.append(MedalTransactionRow.source
                             == MedalSource(filters["source"]).value)
            start = from_iso(filters.get("startDate"))
            end = end_of_day_ts(filters.get("endDate"))
        except ValueError:
            raise ValidationError("検索条件が正しくありません")
        if start is not None:
            conds.append(MedalTransactionRow.created_at >= start)
        if end is not None:
            conds.append(MedalTransactionRow.created_at <= end)

        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(
                    select(func.count()).select_from(MedalTransactionRow)
                    .where(*conds)
                )).scalar_one()
                rows = (await self.db.execute(
                    select(MedalTransactionRow)
                    .where(*conds)
                    .order_by(MedalTransactionRow.created_at.desc(),
                              MedalTransactionRow.id)
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )).scalars().all()
        return (
            [_row_to_tx(r) for r in rows],
            Pagination(page=page, page_size=page_size, total=int(total)),
        )

    async def exchange(self, user_id: str, item_id: str) -> Dict[str, Any]:
        """Spend medals on a catalog item: reserve, redeem, commit.

        The hold is released whenever redemption fails, so a failed exchange
        never costs medals.
        """
        async with self.gated():
            async with self.db.begin():
                item = await self.db.get(ExchangeItem, item_id)
                vtuber = (
                    await self.db.get(VTuber, item.vtuber_id)
                    if item is not None and item.vtuber_id else None
                )
        if item is None:
            raise NotFoundError("交換アイテムが見つかりません")
        cost = int(item.cost)

        if item.vtuber_id:
            subs = {vb.vtuber_id: vb
                    for vb in await self._vtuber_balances(user_id)}
            sub = subs.get(item.vtuber_id)
            if sub is None or sub.balance < cost:
                raise InsufficientBalance()

        async with timeit("accounting.reserve"):
            hold_id = await self.ledger.reserve(
                self.ac, user_id, cost, self.hold_ttl_seconds
            )
        if hold_id is None:
            raise InsufficientBalance()

        tx_id = f"exchange:{hold_id}"
        try:
            await self._redeem(user_id, item, vtuber, tx_id)
        except Exception:
            async with timeit("accounting.release"):
                await self.ledger.release(self.ac, hold_id, user_id, cost)
            raise

        async with timeit("accounting.commit"):
            committed = await self.ledger.commit(
                self.ac, hold_id, user_id, cost
            )
        if not committed:
            # hold expired between reserve and commit: undo the redemption
            await self._unredeem(item.id, tx_id)
            raise ConflictError("交換処理がタイムアウトしました")

        return {
            "transactionId": tx_id,
            "itemId": item.id,
            "cost": cost,
            "balance": (await self.get_balance(user_id)).to_dict(),
        }

    async def _redeem(self, user_id: str, item: ExchangeItem,
                      vtuber: Optional[VTuber], tx_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    UPDATE exchange_items SET stock = stock - 1
                    WHERE id=:id AND stock IS NOT NULL AND stock > 0
                    RETURNING id
                """), {"id": item.id})).first()
                if row is None and item.stock is not None:
                    raise ConflictError("在庫切れです")
                self.db.add(MedalTransactionRow(
                    id=tx_id,
                    user_id=user_id,
                    type=TransactionType.USED.value,
                    amount=int(item.cost),
                    source=MedalSource.EXCHANGE.value,
                    description=f"{item.name}と交換",
                    vtuber_id=item.vtuber_id,
                    vtuber_name=vtuber.name if vtuber else None,
                    created_at=now_ts(),
                ))

    async def _unredeem(self, item_id: str, tx_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    UPDATE exchange_items SET stock = stock + 1
                    WHERE id=:id AND stock IS NOT NULL
                """), {"id": item_id})
                await self.db.execute(
                    text("DELETE FROM medal_transactions WHERE id=:id"),
                    {"id": tx_id},
                )
