from __future__ import annotations
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import InsufficientBalance, KoeponError, ValidationError
from ..helpers import now_ts
from ..logger import get_logger
from ..model.medal import (
    FILTER_KEYS, MedalBalance, MedalSource, MedalTransaction, Pagination,
    VTuberBalance, empty_filters,
)
from .api import ApiClient

log = get_logger(__name__)


class MedalLedger:
    """Client-side medal state: balance, per-VTuber sub-balances and
    transaction history.

    `medal_balance` stays None until the first successful fetch (or
    `set_medal_balance`). Exchanges are two-phase: `reserve` moves medals
    from available to locked, then `commit` or `release` settles the hold.
    """

    def __init__(
        self,
        api: ApiClient,
        *,
        fallback_on_error: bool = False,
        page_size: int = 20,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.api = api
        self.fallback_on_error = fallback_on_error
        self.clock = clock

        self.medal_balance: Optional[MedalBalance] = None
        self.medal_balance_loading = False
        self.medal_balance_error: Optional[str] = None

        self.transactions: List[MedalTransaction] = []
        self.transactions_loading = False
        self.transactions_error: Optional[str] = None
        self.transaction_filters: Dict[str, str] = empty_filters()
        self.pagination = Pagination(page=1, page_size=page_size)

        self._applied: Set[str] = set()
        # hold id -> (cost, vtuber id)
        self._holds: Dict[str, tuple] = {}

    # ----------------------------
    # balance
    # ----------------------------
    async def fetch_medal_balance(self) -> Optional[MedalBalance]:
        self.medal_balance_loading = True
        self.medal_balance_error = None
        try:
            data = await self.api.get("/api/v1/medals/balance")
            self.medal_balance = MedalBalance.from_dict(data)
        except KoeponError as e:
            if self.fallback_on_error:
                log.warning("balance fetch failed, keeping last known: %s",
                            e.message)
                if self.medal_balance is None:
                    self.medal_balance = MedalBalance(
                        last_updated=self.clock())
            else:
                self.medal_balance_error = e.message
        finally:
            self.medal_balance_loading = False
        return self.medal_balance

    async def retry_fetch_balance(self) -> Optional[MedalBalance]:
        self.medal_balance_error = None
        return await self.fetch_medal_balance()

    def set_medal_balance(self, balance: Optional[MedalBalance]) -> None:
        self.medal_balance = balance.copy() if balance is not None else None

    def get_medal_balance(self) -> Optional[MedalBalance]:
        return self.medal_balance

    def check_sufficient_balance(self, amount: int) -> bool:
        if self.medal_balance is None:
            return False
        return self.medal_balance.available_medals >= amount

    def get_medal_balance_by_vtuber(
        self, vtuber_id: str
    ) -> Optional[VTuberBalance]:
        if self.medal_balance is None:
            return None
        return self.medal_balance.vtuber(vtuber_id)

    def check_sufficient_balance_for_vtuber(self, vtuber_id: str,
                                            amount: int) -> bool:
        vb = self.get_medal_balance_by_vtuber(vtuber_id)
        return vb is not None and vb.balance >= amount

    # ----------------------------
    # earn
    # ----------------------------
    def earn_medals(
        self,
        amount: int,
        source: MedalSource | str = MedalSource.GACHA_DRAW,
        description: str = "",
        vtuber_id: Optional[str] = None,
        vtuber_name: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> bool:
        """Add medals locally. Returns False when nothing was applied."""
        if amount <= 0:
            log.warning("earn_medals ignored: non-positive amount %s", amount)
            return False
        if self.medal_balance is None:
            log.warning("earn_medals ignored: balance not loaded")
            return False
        source = MedalSource(source)
        if transaction_id is not None:
            if transaction_id in self._applied:
                log.warning("earn_medals ignored: %s already applied",
                            transaction_id)
                return False
            self._applied.add(transaction_id)

        b = self.medal_balance
        b.total_medals += amount
        b.available_medals += amount
        if vtuber_id:
            vb = b.vtuber(vtuber_id)
            if vb is None:
                vb = VTuberBalance(vtuber_id=vtuber_id,
                                   vtuber_name=vtuber_name or "")
                b.vtuber_balances.append(vb)
            vb.balance += amount
            vb.total_earned += amount
        b.last_updated = self.clock()
        log.info("medals earned: %s from %s (%s)", amount,
                 source.value, description)
        return True

    # ----------------------------
    # exchange
    # ----------------------------
    def reserve(self, cost: int, vtuber_id: Optional[str] = None) -> str:
        if cost <= 0:
            raise ValidationError("cost must be positive")
        b = self.medal_balance
        if b is None or b.available_medals < cost:
            raise InsufficientBalance()
        if vtuber_id and not self.check_sufficient_balance_for_vtuber(
                vtuber_id, cost):
            raise InsufficientBalance()
        hold_id = uuid.uuid4().hex
        b.available_medals -= cost
        b.locked_medals += cost
        b.last_updated = self.clock()
        self._holds[hold_id] = (cost, vtuber_id)
        return hold_id

    def _take_hold(self, hold_id: str) -> tuple:
        try:
            return self._holds.pop(hold_id)
        except KeyError:
            raise ValidationError(f"unknown hold: {hold_id}")

    def commit(self, hold_id: str) -> None:
        cost, vtuber_id = self._take_hold(hold_id)
        b = self.medal_balance
        b.locked_medals -= cost
        b.total_medals -= cost
        b.used_medals += cost
        if vtuber_id:
            vb = b.vtuber(vtuber_id)
            if vb is not None:
                vb.balance -= cost
                vb.total_used += cost
        b.last_updated = self.clock()

    def release(self, hold_id: str) -> None:
        cost, _ = self._take_hold(hold_id)
        b = self.medal_balance
        b.locked_medals -= cost
        b.available_medals += cost
        b.last_updated = self.clock()

    async def exchange_medals(self, item_id: str, cost: int,
                              vtuber_id: Optional[str] = None
                              ) -> Dict[str, Any]:
        hold_id = self.reserve(cost, vtuber_id)
        try:
            data = await self.api.post("/api/v1/medals/exchange",
                                       {"itemId": item_id})
        except BaseException:
            # includes cancellation: a hold never outlives its request
            self.release(hold_id)
            raise
        self.commit(hold_id)
        server = data.get("balance") if isinstance(data, dict) else None
        if isinstance(server, dict) and not self._holds:
            self.medal_balance = MedalBalance.from_dict(server)
        return data

    # ----------------------------
    # history
    # ----------------------------
    def set_transaction_filters(self, filters: Optional[Dict[str, str]] = None,
                                **kw: str) -> None:
        updates = dict(filters or {}, **kw)
        unknown = set(updates) - set(FILTER_KEYS)
        if unknown:
            raise ValidationError(
                f"unknown filter: {', '.join(sorted(unknown))}"
            )
        self.transaction_filters.update(
            {k: v or "" for k, v in updates.items()}
        )
        self.pagination.page = 1

    def clear_transaction_filters(self) -> None:
        self.transaction_filters = empty_filters()
        self.pagination.page = 1

    async def fetch_transaction_history(
        self, page: Optional[int] = None
    ) -> List[MedalTransaction]:
        page = page or self.pagination.page
        self.transactions_loading = True
        self.transactions_error = None
        try:
            data = await self.api.get(
                "/api/v1/medals/transactions",
                page=page,
                pageSize=self.pagination.page_size,
                **self.transaction_filters,
            )
            self.transactions = [
                MedalTransaction.from_dict(t) for t in data.get("items", [])
            ]
            self.pagination = Pagination.from_dict(
                data.get("pagination") or {"page": page}
            )
        except KoeponError as e:
            self.transactions_error = e.message
        finally:
            self.transactions_loading = False
        return self.transactions
