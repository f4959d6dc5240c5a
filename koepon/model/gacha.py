from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..helpers import now_ts, to_iso, from_iso


class Rarity(str, Enum):
    N = "N"
    R = "R"
    SR = "SR"
    SSR = "SSR"
    UR = "UR"

    @property
    def rank(self) -> int:
        return RARITY_ORDER.index(self)


RARITY_ORDER = [Rarity.N, Rarity.R, Rarity.SR, Rarity.SSR, Rarity.UR]

# default weights per rarity, in percent
DEFAULT_RARITY_WEIGHTS = {
    Rarity.N: 56,
    Rarity.R: 30,
    Rarity.SR: 10,
    Rarity.SSR: 3,
    Rarity.UR: 1,
}


class PullType(str, Enum):
    SINGLE = "single"
    TEN = "ten"

    @property
    def draw_count(self) -> int:
        return 1 if self is PullType.SINGLE else 10

    @classmethod
    def for_count(cls, count: int) -> "PullType":
        if count == 1:
            return cls.SINGLE
        if count == 10:
            return cls.TEN
        raise ValueError(f"unsupported draw count: {count}")


# JPY, no decimal subunits
PULL_PRICES = {PullType.SINGLE: 100, PullType.TEN: 1000}


class DrawState(str, Enum):
    IDLE = "idle"
    PAYMENT = "payment"
    DRAWING = "drawing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class DrawItem:
    id: str
    name: str
    rarity: Rarity
    image_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "rarity": self.rarity.value,
            "imageUrl": self.image_url,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DrawItem":
        return cls(
            id=d["id"],
            name=d.get("name", ""),
            rarity=Rarity(d["rarity"]),
            image_url=d.get("imageUrl", "") or "",
        )


@dataclass
class DrawResult:
    id: str
    gacha_id: str
    items: List[DrawItem]
    medals_earned: int
    payment_id: str
    payment_amount: int
    draw_count: int
    timestamp: float = field(default_factory=now_ts)
    vtuber_id: Optional[str] = None
    vtuber_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "gachaId": self.gacha_id,
            "items": [i.to_dict() for i in self.items],
            "medalsEarned": self.medals_earned,
            "paymentId": self.payment_id,
            "paymentAmount": self.payment_amount,
            "drawCount": self.draw_count,
            "timestamp": to_iso(self.timestamp),
            "vtuberId": self.vtuber_id,
            "vtuberName": self.vtuber_name,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DrawResult":
        items = [DrawItem.from_dict(i) for i in d.get("items") or []]
        return cls(
            id=d["id"],
            gacha_id=d.get("gachaId", ""),
            items=items,
            medals_earned=int(d.get("medalsEarned", 0)),
            payment_id=d.get("paymentId", ""),
            payment_amount=int(d.get("paymentAmount", 0)),
            draw_count=int(d.get("drawCount", len(items))),
            timestamp=from_iso(d.get("timestamp")) or now_ts(),
            vtuber_id=d.get("vtuberId"),
            vtuber_name=d.get("vtuberName"),
        )


HISTORY_FILTER_KEYS = ("vtuber", "startDate", "endDate", "rarity")
