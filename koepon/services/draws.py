from __future__ import annotations
import json
import uuid
from collections import Counter
from typing import Any, Callable, AsyncContextManager, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    AuthorizationError, DrawInProgress, NotFoundError, PaymentProviderError,
    ValidationError,
)
from ..helpers import end_of_day_ts, from_iso, now_ts, to_iso
from ..infra.timings import timeit
from ..logger import get_logger
from ..mockpay import PaymentAdapter
from ..model.gacha import PULL_PRICES, DrawItem, DrawResult, PullType, Rarity
from ..model.medal import MedalSource, Pagination
from ..model.orm import DrawRecord, Gacha, GachaItem, VTuber
from .draw_algorithm import DrawAlgorithm, DrawableItem, medals_for_draw
from .medals import MedalService

Gated = Callable[[], AsyncContextManager[None]]

log = get_logger(__name__)


def _item_to_drawable(i: GachaItem) -> DrawableItem:
    return DrawableItem(
        id=i.id,
        name=i.name,
        rarity=Rarity(i.rarity),
        drop_rate=float(i.drop_rate),
        image_url=i.image_url or "",
        max_count=i.max_count,
        current_count=i.current_count or 0,
    )


def _record_to_result(rec: DrawRecord, vtuber_id: Optional[str] = None,
                      vtuber_name: Optional[str] = None) -> DrawResult:
    return DrawResult(
        id=rec.id,
        gacha_id=rec.gacha_id,
        items=[DrawItem.from_dict(d) for d in json.loads(rec.items_json)],
        medals_earned=rec.medals_earned,
        payment_id=rec.payment_intent_id,
        payment_amount=rec.payment_amount,
        draw_count=rec.draw_count,
        timestamp=rec.created_at,
        vtuber_id=vtuber_id,
        vtuber_name=vtuber_name,
    )


def gacha_to_dict(g: Gacha, vtuber: Optional[VTuber],
                  items: Optional[List[GachaItem]] = None) -> Dict[str, Any]:
    d = {
        "id": g.id,
        "name": g.name,
        "description": g.description,
        "vtuberId": g.vtuber_id,
        "vtuberName": vtuber.name if vtuber else "",
        "medalReward": g.medal_reward,
        "status": g.status,
        "totalDraws": g.total_draws,
        "startDate": to_iso(g.start_at),
        "endDate": to_iso(g.end_at),
        "prices": {pt.value: price for pt, price in PULL_PRICES.items()},
    }
    if items is not None:
        d["items"] = [{
            "id": i.id,
            "name": i.name,
            "rarity": i.rarity,
            "dropRate": i.drop_rate,
            "imageUrl": i.image_url,
            "maxCount": i.max_count,
            "remaining": (None if i.max_count is None
                          else max(0, i.max_count - i.current_count)),
        } for i in items]
    return d


class DrawService:
    """Server side of a paid draw.

    The payment intent id is the idempotency key: the first successful call
    draws, persists and credits; any later call with the same intent replays
    the stored result.
    """

    def __init__(
        self,
        db: AsyncSession,
        gated: Gated,
        store,
        adapter: PaymentAdapter,
        medals: MedalService,
        algorithm: Optional[DrawAlgorithm] = None,
    ) -> None:
        self.db = db
        self.gated = gated
        self.store = store
        self.adapter = adapter
        self.medals = medals
        self.algorithm = algorithm or DrawAlgorithm()

    # ----------------------------
    # catalog
    # ----------------------------
    async def list_gachas(self, include_inactive: bool = False):
        stmt = select(Gacha, VTuber).join(VTuber, VTuber.id == Gacha.vtuber_id)
        if not include_inactive:
            stmt = stmt.where(Gacha.status == "active")
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    stmt.order_by(Gacha.created_at.desc())
                )).all()
        return [gacha_to_dict(g, v) for g, v in rows]

    async def _load_gacha(
        self, gacha_id: str
    ) -> Tuple[Gacha, Optional[VTuber], List[GachaItem]]:
        async with self.gated():
            async with self.db.begin():
                gacha = await self.db.get(Gacha, gacha_id)
                if gacha is None:
                    raise NotFoundError("ガチャが見つかりません")
                vtuber = await self.db.get(VTuber, gacha.vtuber_id)
                items = (await self.db.execute(
                    select(GachaItem).where(GachaItem.gacha_id == gacha_id)
                    .order_by(GachaItem.id)
                )).scalars().all()
        return gacha, vtuber, list(items)

    async def get_gacha(self, gacha_id: str) -> Dict[str, Any]:
        gacha, vtuber, items = await self._load_gacha(gacha_id)
        return gacha_to_dict(gacha, vtuber, items)

    async def require_active_gacha(
        self, gacha_id: str
    ) -> Tuple[Gacha, Optional[VTuber], List[GachaItem]]:
        gacha, vtuber, items = await self._load_gacha(gacha_id)
        now = now_ts()
        if (gacha.status != "active"
                or (gacha.start_at is not None and gacha.start_at > now)
                or (gacha.end_at is not None and gacha.end_at < now)):
            raise ValidationError("このガチャは現在利用できません")
        return gacha, vtuber, items

    # ----------------------------
    # draw
    # ----------------------------
    async def execute(
        self, user_id: str, gacha_id: str, count: int, payment_intent_id: str,
    ) -> Tuple[DrawResult, bool]:
        """Returns (result, replayed)."""
        try:
            pull_type = PullType.for_count(count)
        except ValueError:
            raise ValidationError("抽選回数は1回または10回です")

        intent = await self.store.get_intent(payment_intent_id)
        if intent is None:
            raise NotFoundError("決済情報が見つかりません")
        if intent["user_id"] != user_id:
            raise AuthorizationError()
        if (intent["gacha_id"] != gacha_id
                or int(intent["draw_count"]) != count
                or intent["pull_type"] != pull_type.value):
            raise ValidationError("決済内容と抽選内容が一致しません")

        stored = await self.store.get_draw_result(payment_intent_id)
        if stored:
            return DrawResult.from_dict(json.loads(stored)), True

        record = await self._record_for_intent(payment_intent_id)
        if record is not None:
            # drawn before, but crediting/caching did not finish
            result = await self._result_from_record(record)
            await self._finish(user_id, result)
            return result, True

        await self._verify_payment(payment_intent_id, intent)

        if not await self.store.acquire_draw_gate(payment_intent_id):
            raise DrawInProgress()
        try:
            result = await self._draw_and_persist(
                user_id, gacha_id, count, payment_intent_id,
                int(intent["amount"]),
            )
        except Exception:
            await self.store.release_draw_gate(payment_intent_id)
            raise

        await self._finish(user_id, result)
        log.info("draw completed", extra={
            "user_id": user_id, "payment_intent_id": payment_intent_id,
        })
        return result, False

    async def _verify_payment(self, intent_id: str,
                              intent: Dict[str, Any]) -> None:
        if intent.get("status") == "succeeded":
            return
        async with timeit("payments.retrieve"):
            provider_status = await self.adapter.retrieve_status(intent_id)
        if provider_status == "succeeded":
            await self.store.set_status(intent_id, "succeeded")
            return
        raise PaymentProviderError("決済が完了していません")

    async def _record_for_intent(self, intent_id: str) -> Optional[DrawRecord]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(DrawRecord)
                    .where(DrawRecord.payment_intent_id == intent_id)
                )).scalars().first()

    async def _result_from_record(self, record: DrawRecord) -> DrawResult:
        async with self.gated():
            async with self.db.begin():
                gacha = await self.db.get(Gacha, record.gacha_id)
                vtuber = await self.db.get(VTuber, gacha.vtuber_id)
        return _record_to_result(record, gacha.vtuber_id,
                                 vtuber.name if vtuber else None)

    async def _draws_since_rare(self, user_id: str, gacha_id: str) -> int:
        threshold = self.algorithm.pity_threshold
        rare = {r.value for r in Rarity
                if r.rank >= self.algorithm.pity_rarity.rank}
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(DrawRecord.items_json)
                    .where(DrawRecord.user_id == user_id,
                           DrawRecord.gacha_id == gacha_id)
                    .order_by(DrawRecord.created_at.desc())
                    .limit(threshold)
                )).scalars().all()
        # newest item first, across records
        since = 0
        for items_json in rows:
            for item in reversed(json.loads(items_json)):
                if item.get("rarity") in rare:
                    return since
                since += 1
        return since

    async def _draw_and_persist(
        self, user_id: str, gacha_id: str, count: int, intent_id: str,
        amount: int,
    ) -> DrawResult:
        gacha, vtuber, items = await self.require_active_gacha(gacha_id)
        since = await self._draws_since_rare(user_id, gacha_id)

        drawn, _ = self.algorithm.draw(
            [_item_to_drawable(i) for i in items], count, since
        )
        result = DrawResult(
            id=uuid.uuid4().hex,
            gacha_id=gacha_id,
            items=[DrawItem(id=d.id, name=d.name, rarity=d.rarity,
                            image_url=d.image_url) for d in drawn],
            medals_earned=medals_for_draw(gacha.medal_reward, count),
            payment_id=intent_id,
            payment_amount=amount,
            draw_count=count,
            timestamp=now_ts(),
            vtuber_id=gacha.vtuber_id,
            vtuber_name=vtuber.name if vtuber else None,
        )
        top = max((d.rarity for d in drawn), key=lambda r: r.rank)

        try:
            async with timeit("db.add_draw"):
                async with self.gated():
                    async with self.db.begin():
                        self.db.add(DrawRecord(
                            id=result.id,
                            user_id=user_id,
                            gacha_id=gacha_id,
                            payment_intent_id=intent_id,
                            draw_count=count,
                            payment_amount=amount,
                            medals_earned=result.medals_earned,
                            items_json=json.dumps(
                                [i.to_dict() for i in result.items]
                            ),
                            top_rarity=top.value,
                            created_at=result.timestamp,
                        ))
                        for item_id, n in Counter(
                                d.id for d in drawn
                                if d.max_count is not None).items():
                            await self.db.execute(
                                update(GachaItem)
                                .where(GachaItem.id == item_id)
                                .values(current_count=(
                                    GachaItem.current_count + n))
                            )
                        await self.db.execute(
                            update(Gacha).where(Gacha.id == gacha_id)
                            .values(total_draws=Gacha.total_draws + count)
                        )
        except IntegrityError:
            # a concurrent call won the insert for this payment intent
            record = await self._record_for_intent(intent_id)
            if record is None:
                raise
            return await self._result_from_record(record)
        return result

    async def _finish(self, user_id: str, result: DrawResult) -> None:
        if result.medals_earned > 0:
            await self.medals.credit(
                user_id,
                result.medals_earned,
                MedalSource.GACHA_DRAW,
                transaction_id=f"draw:{result.id}",
                description=f"ガチャ{result.draw_count}回",
                vtuber_id=result.vtuber_id,
                vtuber_name=result.vtuber_name,
            )
        await self.store.save_draw_result(
            result.payment_id, json.dumps(result.to_dict())
        )

    # ----------------------------
    # history
    # ----------------------------
    async def list_history(
        self,
        user_id: str,
        filters: Optional[Dict[str, str]] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[DrawResult], Pagination]:
        filters = filters or {}
        page = max(1, page)
        page_size = max(1, min(page_size, 100))
        conds = [DrawRecord.user_id == user_id]
        try:
            if filters.get("rarity"):
                rarity = Rarity(filters["rarity"])
                conds.append(DrawRecord.items_json.contains(
                    f'"rarity": "{rarity.value}"'))
            start = from_iso(filters.get("startDate"))
            end = end_of_day_ts(filters.get("endDate"))
        except ValueError:
            raise ValidationError("検索条件が正しくありません")
        if start is not None:
            conds.append(DrawRecord.created_at >= start)
        if end is not None:
            conds.append(DrawRecord.created_at <= end)
        if filters.get("vtuber"):
            conds.append(Gacha.vtuber_id == filters["vtuber"])

        base = (select(DrawRecord, Gacha.vtuber_id, VTuber.name)
                .join(Gacha, Gacha.id == DrawRecord.gacha_id)
                .join(VTuber, VTuber.id == Gacha.vtuber_id)
                .where(*conds))
        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(
                    select(func.count()).select_from(base.subquery())
                )).scalar_one()
                rows = (await self.db.execute(
                    base.order_by(DrawRecord.created_at.desc())
                    .offset((page - 1) * page_size).limit(page_size)
                )).all()
        return (
            [_record_to_result(rec, vid, vname) for rec, vid, vname in rows],
            Pagination(page=page, page_size=page_size, total=int(total)),
        )
