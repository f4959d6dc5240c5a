from __future__ import annotations
import uuid
from typing import Any, Callable, AsyncContextManager, Dict, List, Optional

from sqlalchemy import distinct, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFoundError, ValidationError
from ..helpers import (
    day_start_ts, from_iso, month_start_ts, now_ts, previous_month_start_ts,
    to_iso,
)
from ..logger import get_logger
from ..model.gacha import Rarity
from ..model.orm import (
    DrawRecord, Gacha, GachaItem, MedalTransactionRow, User, VTuber,
)
from .draw_algorithm import (
    DrawableItem, default_rates, normalize_drop_rates, validate_items,
)
from .draws import gacha_to_dict

Gated = Callable[[], AsyncContextManager[None]]

log = get_logger(__name__)

DAY = 24 * 3600
VTUBER_STATUSES = ("pending", "approved", "rejected", "suspended")


def approval_rate(total: int, pending: int) -> float:
    if total <= 0:
        return 0.0
    if pending <= 0:
        return 100.0
    return round((total - pending) / total * 100, 1)


def growth_rate(current: int, previous: int) -> float:
    if previous <= 0:
        return 0.0
    return round((current - previous) / previous * 100, 1)


class AdminService:
    def __init__(self, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def _scalar(self, stmt) -> int:
        return int((await self.db.execute(stmt)).scalar_one() or 0)

    async def dashboard_stats(
        self, timings: Optional[Dict[str, Dict[str, float]]] = None,
        started_at: Optional[float] = None,
    ) -> Dict[str, Any]:
        now = now_ts()
        today = day_start_ts(now)
        month = month_start_ts(now)
        prev_month = previous_month_start_ts(now)
        revenue = func.coalesce(func.sum(DrawRecord.payment_amount), 0)

        db_ok = True
        overview: Dict[str, Any] = {}
        try:
            async with self.gated():
                async with self.db.begin():
                    total_users = await self._scalar(
                        select(func.count()).select_from(User))
                    new_today = await self._scalar(
                        select(func.count()).select_from(User)
                        .where(User.created_at >= today))
                    new_month = await self._scalar(
                        select(func.count()).select_from(User)
                        .where(User.created_at >= month))
                    total_vtubers = await self._scalar(
                        select(func.count()).select_from(VTuber))
                    pending = await self._scalar(
                        select(func.count()).select_from(VTuber)
                        .where(VTuber.status == "pending"))
                    total_revenue = await self._scalar(select(revenue))
                    monthly = await self._scalar(
                        select(revenue).where(DrawRecord.created_at >= month))
                    previous = await self._scalar(
                        select(revenue).where(
                            DrawRecord.created_at >= prev_month,
                            DrawRecord.created_at < month))
                    dau = await self._scalar(
                        select(func.count(distinct(DrawRecord.user_id)))
                        .where(DrawRecord.created_at >= today))
                    mau = await self._scalar(
                        select(func.count(distinct(DrawRecord.user_id)))
                        .where(DrawRecord.created_at >= now - 30 * DAY))
                    total_draws = await self._scalar(
                        select(func.coalesce(
                            func.sum(DrawRecord.draw_count), 0)))
            overview = {
                "totalUsers": total_users,
                "newUsersToday": new_today,
                "newUsersThisMonth": new_month,
                "totalVTubers": total_vtubers,
                "pendingApplications": pending,
                "approvalRate": approval_rate(total_vtubers, pending),
                "totalRevenue": total_revenue,
                "monthlyRevenue": monthly,
                "revenueGrowth": growth_rate(monthly, previous),
                "activeUsersDAU": dau,
                "activeUsersMAU": mau,
                "totalDraws": total_draws,
            }
        except Exception:
            log.exception("dashboard queries failed")
            db_ok = False

        timings = timings or {}
        req = timings.get("http.request", {})
        errs = timings.get("http.error", {})
        n_req = int(req.get("n", 0))
        return {
            "systemOverview": overview,
            "systemStatus": {
                "databaseStatus": "healthy" if db_ok else "down",
                "apiResponseTime": round(req.get("mean", 0.0) * 1000, 2),
                "errorRate": (round(errs.get("n", 0) / n_req * 100, 2)
                              if n_req else 0.0),
                "uptimeSeconds": (int(now - started_at)
                                  if started_at else 0),
            },
            "dateRange": {
                "start": to_iso(now - 30 * DAY),
                "end": to_iso(now),
            },
        }

    async def list_users(self, limit: int = 50,
                         offset: int = 0) -> Dict[str, Any]:
        limit = max(1, min(limit, 200))
        draws = (select(DrawRecord.user_id,
                        func.count().label("draws"),
                        func.sum(DrawRecord.payment_amount).label("spent"))
                 .group_by(DrawRecord.user_id).subquery())
        async with self.gated():
            async with self.db.begin():
                total = await self._scalar(
                    select(func.count()).select_from(User))
                rows = (await self.db.execute(
                    select(User, draws.c.draws, draws.c.spent)
                    .outerjoin(draws, draws.c.user_id == User.id)
                    .order_by(User.created_at.desc())
                    .offset(offset).limit(limit)
                )).all()
                ids = [u.id for u, _, _ in rows]
                medals = {}
                if ids:
                    signed = func.sum(text(
                        "CASE WHEN medal_transactions.type='earned' "
                        "THEN medal_transactions.amount "
                        "ELSE -medal_transactions.amount END"))
                    medals = dict((await self.db.execute(
                        select(MedalTransactionRow.user_id, signed)
                        .where(MedalTransactionRow.user_id.in_(ids))
                        .group_by(MedalTransactionRow.user_id)
                    )).all())
        items = [{
            "id": u.id,
            "email": u.email,
            "displayName": u.display_name,
            "role": u.role,
            "status": u.status,
            "registrationDate": to_iso(u.created_at),
            "lastLoginDate": to_iso(u.last_login_at),
            "totalGachaDraws": int(n or 0),
            "totalSpent": int(spent or 0),
            "medalBalance": int(medals.get(u.id) or 0),
        } for u, n, spent in rows]
        return {"items": items, "total": total, "limit": limit,
                "offset": offset}

    async def list_vtubers(self, status: Optional[str] = None):
        stmt = select(VTuber).order_by(VTuber.created_at.desc())
        if status:
            stmt = stmt.where(VTuber.status == status)
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(stmt)).scalars().all()
        return {"items": [self._vtuber_dict(v) for v in rows]}

    @staticmethod
    def _vtuber_dict(v: VTuber) -> Dict[str, Any]:
        return {
            "id": v.id,
            "name": v.name,
            "channelUrl": v.channel_url,
            "status": v.status,
            "applicationDate": to_iso(v.created_at),
            "reviewedAt": to_iso(v.reviewed_at),
        }

    async def create_vtuber(self, name: str, channel_url: str = "",
                            user_id: Optional[str] = None) -> Dict[str, Any]:
        if not name.strip():
            raise ValidationError("名前を入力してください")
        v = VTuber(id=uuid.uuid4().hex, user_id=user_id, name=name.strip(),
                   channel_url=channel_url, status="pending",
                   created_at=now_ts())
        async with self.gated():
            async with self.db.begin():
                self.db.add(v)
        return self._vtuber_dict(v)

    async def review_vtuber(self, vtuber_id: str,
                            status: str) -> Dict[str, Any]:
        if status not in VTUBER_STATUSES or status == "pending":
            raise ValidationError("審査ステータスが正しくありません")
        async with self.gated():
            async with self.db.begin():
                v = await self.db.get(VTuber, vtuber_id)
                if v is None:
                    raise NotFoundError("VTuberが見つかりません")
                v.status = status
                v.reviewed_at = now_ts()
        return self._vtuber_dict(v)

    async def list_gachas(self) -> Dict[str, Any]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(Gacha, VTuber)
                    .join(VTuber, VTuber.id == Gacha.vtuber_id)
                    .order_by(Gacha.created_at.desc())
                )).all()
        return {"items": [gacha_to_dict(g, v) for g, v in rows]}

    async def create_gacha(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a gacha and its item table; rates are normalized to 1."""
        raw_items: List[Dict[str, Any]] = data.get("items") or []
        try:
            rarities = [Rarity(i["rarity"]) for i in raw_items]
            start_at = from_iso(data.get("startDate"))
            end_at = from_iso(data.get("endDate"))
        except (KeyError, ValueError):
            raise ValidationError("ガチャの入力内容に誤りがあります")
        if start_at and end_at and end_at <= start_at:
            raise ValidationError("終了日は開始日より後にしてください")

        if any(i.get("dropRate") is None for i in raw_items):
            rates = default_rates(rarities)
        else:
            rates = [float(i["dropRate"]) for i in raw_items]
        drawable = [
            DrawableItem(
                id=uuid.uuid4().hex,
                name=i.get("name", ""),
                rarity=r,
                drop_rate=rate,
                image_url=i.get("imageUrl", "") or "",
                max_count=i.get("maxCount"),
            )
            for i, r, rate in zip(raw_items, rarities, rates)
        ]
        validate_items(drawable)
        drawable = normalize_drop_rates(drawable)

        async with self.gated():
            async with self.db.begin():
                vtuber = await self.db.get(VTuber, data.get("vtuberId"))
                if vtuber is None:
                    raise NotFoundError("VTuberが見つかりません")
                gacha = Gacha(
                    id=uuid.uuid4().hex,
                    vtuber_id=vtuber.id,
                    name=data["name"],
                    description=data.get("description", ""),
                    medal_reward=int(data.get("medalReward", 10)),
                    status=data.get("status", "draft"),
                    start_at=start_at,
                    end_at=end_at,
                    total_draws=0,
                    created_at=now_ts(),
                )
                items = [GachaItem(
                    id=d.id, gacha_id=gacha.id, name=d.name,
                    rarity=d.rarity.value, drop_rate=d.drop_rate,
                    image_url=d.image_url, max_count=d.max_count,
                    current_count=0,
                ) for d in drawable]
                self.db.add(gacha)
                await self.db.flush()
                self.db.add_all(items)
        return gacha_to_dict(gacha, vtuber, items)
