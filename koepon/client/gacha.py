from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..errors import InvalidTransition, KoeponError, ValidationError
from ..logger import get_logger
from ..model.gacha import (
    HISTORY_FILTER_KEYS, PULL_PRICES, DrawResult, DrawState, PullType,
)
from ..model.medal import MedalSource, Pagination
from .api import ApiClient
from .medal import MedalLedger
from .payment import PaymentIntentClient

log = get_logger(__name__)

TRANSITIONS = {
    DrawState.IDLE: {DrawState.PAYMENT},
    DrawState.PAYMENT: {DrawState.DRAWING, DrawState.ERROR},
    DrawState.DRAWING: {DrawState.COMPLETE, DrawState.ERROR},
    DrawState.COMPLETE: {DrawState.IDLE},
    # error -> drawing is reserved for retry_draw()
    DrawState.ERROR: {DrawState.IDLE, DrawState.DRAWING},
}


@dataclass
class PendingDraw:
    """A confirmed payment that has not produced a draw result yet."""
    gacha_id: str
    count: int
    payment_intent_id: str


class DrawOrchestrator:
    def __init__(self, api: ApiClient, payments: PaymentIntentClient,
                 medals: MedalLedger, history_page_size: int = 20) -> None:
        self.api = api
        self.payments = payments
        self.medals = medals

        self.state = DrawState.IDLE
        self.error: Optional[str] = None
        self.draw_result: Optional[DrawResult] = None
        self.pending_payment: Optional[PendingDraw] = None

        self.gachas: List[Dict[str, Any]] = []
        self.current_gacha: Optional[Dict[str, Any]] = None
        self.gacha_loading = False
        self.gacha_error: Optional[str] = None

        self.history: List[DrawResult] = []
        self.history_filters: Dict[str, str] = {
            k: "" for k in HISTORY_FILTER_KEYS
        }
        self.history_pagination = Pagination(page_size=history_page_size)
        self.history_error: Optional[str] = None

    # ----------------------------
    # state machine
    # ----------------------------
    def _transition(self, to: DrawState, *, retry: bool = False) -> None:
        frm = self.state
        allowed = to in TRANSITIONS[frm]
        if frm is DrawState.ERROR and to is DrawState.DRAWING and not retry:
            allowed = False
        if not allowed:
            raise InvalidTransition(
                f"invalid draw transition: {frm.value} -> {to.value}"
            )
        log.debug("draw state %s -> %s", frm.value, to.value)
        self.state = to

    def _fail(self, message: str) -> None:
        self.error = message
        self._transition(DrawState.ERROR)

    async def execute_draw(self, gacha_id: str,
                           count: int) -> Optional[DrawResult]:
        """Pay for and run a draw. Returns None when it ended in `error`."""
        try:
            pull_type = PullType.for_count(count)
        except ValueError:
            raise ValidationError("抽選回数は1回または10回です")
        self._transition(DrawState.PAYMENT)
        self.error = None
        self.draw_result = None

        try:
            secret = await self.payments.create_payment_intent(
                gacha_id, PULL_PRICES[pull_type], pull_type
            )
            outcome = await self.payments.confirm_payment(secret)
        except KoeponError as e:
            self._fail(e.message)
            return None
        if outcome.get("error"):
            self._fail(outcome["error"])
            return None

        self.pending_payment = PendingDraw(
            gacha_id=gacha_id,
            count=count,
            payment_intent_id=self.payments.payment_intent_id,
        )
        self._transition(DrawState.DRAWING)
        return await self._draw()

    async def retry_draw(self) -> Optional[DrawResult]:
        """Re-run the draw for a paid intent after a failed draw call."""
        if self.state is not DrawState.ERROR or self.pending_payment is None:
            raise InvalidTransition("no paid draw to retry")
        self._transition(DrawState.DRAWING, retry=True)
        self.error = None
        return await self._draw()

    async def _draw(self) -> Optional[DrawResult]:
        p = self.pending_payment
        path = "/api/gacha/draw" if p.count == 1 else "/api/gacha/draw-multi"
        try:
            data = await self.api.post(path, {
                "gachaId": p.gacha_id,
                "count": p.count,
                "paymentIntentId": p.payment_intent_id,
            })
            result = DrawResult.from_dict(data["result"])
        except KoeponError as e:
            # keep the paid intent so the draw can be retried
            self._fail(e.message)
            return None
        except (KeyError, ValueError, TypeError):
            self._fail("抽選結果を読み込めませんでした")
            return None

        self.pending_payment = None
        self.draw_result = result
        self._transition(DrawState.COMPLETE)
        self.apply_result_medals(result)
        return result

    def apply_result_medals(self, result: DrawResult) -> bool:
        """Credit a result's medals locally, at most once per result id."""
        if result.medals_earned <= 0:
            return False
        return self.medals.earn_medals(
            result.medals_earned,
            MedalSource.GACHA_DRAW,
            description=f"ガチャ{result.draw_count}回",
            vtuber_id=result.vtuber_id,
            vtuber_name=result.vtuber_name,
            transaction_id=f"draw:{result.id}",
        )

    def clear_draw_result(self) -> None:
        self._transition(DrawState.IDLE)
        self.draw_result = None
        self.error = None
        self.pending_payment = None
        self.payments.reset()

    # ----------------------------
    # catalog & history
    # ----------------------------
    async def fetch_gacha_list(self) -> List[Dict[str, Any]]:
        self.gacha_loading = True
        self.gacha_error = None
        try:
            data = await self.api.get("/api/gacha")
            self.gachas = list(data.get("items", []))
        except KoeponError as e:
            self.gacha_error = e.message
        finally:
            self.gacha_loading = False
        return self.gachas

    async def fetch_gacha_detail(
        self, gacha_id: str
    ) -> Optional[Dict[str, Any]]:
        self.gacha_loading = True
        self.gacha_error = None
        try:
            self.current_gacha = await self.api.get(f"/api/gacha/{gacha_id}")
        except KoeponError as e:
            self.gacha_error = e.message
            self.current_gacha = None
        finally:
            self.gacha_loading = False
        return self.current_gacha

    def set_history_filters(self, **filters: str) -> None:
        unknown = set(filters) - set(HISTORY_FILTER_KEYS)
        if unknown:
            raise ValidationError(
                f"unknown filter: {', '.join(sorted(unknown))}"
            )
        self.history_filters.update({k: v or "" for k, v in filters.items()})
        self.history_pagination.page = 1

    def clear_history_filters(self) -> None:
        self.history_filters = {k: "" for k in HISTORY_FILTER_KEYS}
        self.history_pagination.page = 1

    async def fetch_draw_history(
        self, page: Optional[int] = None
    ) -> List[DrawResult]:
        page = page or self.history_pagination.page
        self.history_error = None
        try:
            data = await self.api.get(
                "/api/gacha/history",
                page=page,
                pageSize=self.history_pagination.page_size,
                **self.history_filters,
            )
            self.history = [DrawResult.from_dict(d)
                            for d in data.get("items", [])]
            self.history_pagination = Pagination.from_dict(
                data.get("pagination") or {"page": page}
            )
        except KoeponError as e:
            self.history_error = e.message
        return self.history
