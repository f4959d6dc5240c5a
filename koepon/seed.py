"""
Demo catalog and accounts for development.

    fan@koepon.example     / fanpass123     (user, starts with medals)
    vtuber@koepon.example  / vtuberpass123  (vtuber)
    admin@koepon.example   / adminpass123   (admin)
"""
from __future__ import annotations
from typing import Callable, AsyncContextManager

from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import now_ts
from .logger import get_logger
from .model.medal import MedalSource
from .model.orm import ExchangeItem, Gacha, GachaItem, User, VTuber
from .security.passwords import PasswordSecurity
from .services.medals import MedalService

Gated = Callable[[], AsyncContextManager[None]]

log = get_logger(__name__)

DEMO_USERS = [
    ("user-fan", "fan@koepon.example", "ファン太郎", "fanpass123", "user"),
    ("user-vtuber", "vtuber@koepon.example", "星宮ミライ", "vtuberpass123",
     "vtuber"),
    ("user-admin", "admin@koepon.example", "管理者", "adminpass123", "admin"),
]

DEMO_VTUBERS = [
    ("vt-mirai", "user-vtuber", "星宮ミライ",
     "https://www.youtube.com/@hoshimiya-mirai", "approved"),
    ("vt-luna", None, "月城ルナ",
     "https://www.youtube.com/@tsukishiro-luna", "approved"),
    ("vt-sora", None, "天音ソラ",
     "https://www.youtube.com/@amane-sora", "pending"),
]

# (gacha id, vtuber id, name, medal reward, [(item suffix, name, rarity,
# drop rate, max count)])
DEMO_GACHAS = [
    ("gacha-mirai", "vt-mirai", "ミライ ボイスガチャ", 10, [
        ("n", "おはようボイス", "N", 0.56, None),
        ("r", "おやすみボイス", "R", 0.30, None),
        ("sr", "応援ボイス", "SR", 0.10, None),
        ("ssr", "誕生日ボイス", "SSR", 0.03, None),
        ("ur", "直筆サイン入りブロマイド", "UR", 0.01, 10),
    ]),
    ("gacha-luna", "vt-luna", "ルナ 1周年記念ガチャ", 150, [
        ("n", "記念ステッカー", "N", 0.60, None),
        ("r", "記念缶バッジ", "R", 0.30, None),
        ("sr", "記念アクリルスタンド", "SR", 0.10, None),
    ]),
]

DEMO_EXCHANGE_ITEMS = [
    ("ex-voice", "vt-mirai", "限定ボイス", 50, 100),
    ("ex-wallpaper", None, "デジタル壁紙", 30, None),
    ("ex-shikishi", None, "サイン色紙", 500, 3),
]

WELCOME_BONUS = 300
MIRAI_REWARD = 100


async def seed_demo_data(db: AsyncSession, gated: Gated,
                         medals: MedalService,
                         rounds: int = 12) -> bool:
    """Insert the demo rows once. False when they are already there."""
    async with gated():
        async with db.begin():
            if await db.get(User, "user-admin") is not None:
                return False
            now = now_ts()
            for uid, email, name, password, role in DEMO_USERS:
                db.add(User(
                    id=uid, email=email, display_name=name,
                    password_hash=PasswordSecurity.hash_password(
                        password, rounds=rounds),
                    role=role, status="active", created_at=now,
                ))
            await db.flush()
            for vid, uid, name, url, status in DEMO_VTUBERS:
                db.add(VTuber(
                    id=vid, user_id=uid, name=name, channel_url=url,
                    status=status, created_at=now,
                    reviewed_at=now if status != "pending" else None,
                ))
            await db.flush()
            for gid, vid, name, reward, items in DEMO_GACHAS:
                db.add(Gacha(
                    id=gid, vtuber_id=vid, name=name,
                    description=f"{name}の限定アイテムが当たる!",
                    medal_reward=reward, status="active",
                    total_draws=0, created_at=now,
                ))
                await db.flush()
                for suffix, item_name, rarity, rate, max_count in items:
                    db.add(GachaItem(
                        id=f"{gid}-{suffix}", gacha_id=gid, name=item_name,
                        rarity=rarity, drop_rate=rate,
                        image_url=f"/images/{gid}/{suffix}.png",
                        max_count=max_count, current_count=0,
                    ))
            await db.flush()
            for eid, vid, name, cost, stock in DEMO_EXCHANGE_ITEMS:
                db.add(ExchangeItem(id=eid, vtuber_id=vid, name=name,
                                    cost=cost, stock=stock))

    await medals.credit("user-fan", WELCOME_BONUS, MedalSource.BONUS,
                        transaction_id="seed:welcome:user-fan",
                        description="新規登録ボーナス")
    await medals.credit("user-fan", MIRAI_REWARD, MedalSource.REWARD,
                        transaction_id="seed:reward:user-fan:vt-mirai",
                        description="配信視聴報酬",
                        vtuber_id="vt-mirai", vtuber_name="星宮ミライ")
    log.info("demo data seeded")
    return True
