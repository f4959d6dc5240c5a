from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from ..helpers import now_ts, to_iso, from_iso


class TransactionType(str, Enum):
    EARNED = "earned"
    USED = "used"


class MedalSource(str, Enum):
    GACHA_DRAW = "gacha-draw"
    EXCHANGE = "exchange"
    PURCHASE = "purchase"
    REWARD = "reward"
    BONUS = "bonus"

    @classmethod
    def _missing_(cls, value):
        # short form used by the draw screens
        if value == "gacha":
            return cls.GACHA_DRAW
        return None


@dataclass
class VTuberBalance:
    vtuber_id: str
    vtuber_name: str = ""
    balance: int = 0
    total_earned: int = 0
    total_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vtuberId": self.vtuber_id,
            "vtuberName": self.vtuber_name,
            "balance": self.balance,
            "totalEarned": self.total_earned,
            "totalUsed": self.total_used,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "VTuberBalance":
        return cls(
            vtuber_id=d["vtuberId"],
            vtuber_name=d.get("vtuberName", ""),
            balance=int(d.get("balance", 0)),
            total_earned=int(d.get("totalEarned", 0)),
            total_used=int(d.get("totalUsed", 0)),
        )


@dataclass
class MedalBalance:
    total_medals: int = 0
    available_medals: int = 0
    used_medals: int = 0
    locked_medals: int = 0
    vtuber_balances: List[VTuberBalance] = field(default_factory=list)
    last_updated: float = field(default_factory=now_ts)

    def vtuber(self, vtuber_id: str) -> Optional[VTuberBalance]:
        for vb in self.vtuber_balances:
            if vb.vtuber_id == vtuber_id:
                return vb
        return None

    def copy(self) -> "MedalBalance":
        return replace(
            self,
            vtuber_balances=[replace(vb) for vb in self.vtuber_balances],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalMedals": self.total_medals,
            "availableMedals": self.available_medals,
            "usedMedals": self.used_medals,
            "lockedMedals": self.locked_medals,
            "vtuberBalances": [vb.to_dict() for vb in self.vtuber_balances],
            "lastUpdated": to_iso(self.last_updated),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MedalBalance":
        return cls(
            total_medals=int(d.get("totalMedals", 0)),
            available_medals=int(d.get("availableMedals", 0)),
            used_medals=int(d.get("usedMedals", 0)),
            locked_medals=int(d.get("lockedMedals", 0)),
            vtuber_balances=[
                VTuberBalance.from_dict(v)
                for v in d.get("vtuberBalances") or []
            ],
            last_updated=from_iso(d.get("lastUpdated")) or now_ts(),
        )


@dataclass
class MedalTransaction:
    id: str
    type: TransactionType
    amount: int
    source: MedalSource
    description: str = ""
    created_at: float = field(default_factory=now_ts)
    vtuber_id: Optional[str] = None
    vtuber_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "type": self.type.value,
            "amount": self.amount,
            "source": self.source.value,
            "description": self.description,
            "createdAt": to_iso(self.created_at),
        }
        if self.vtuber_id:
            d["vtuberId"] = self.vtuber_id
            d["vtuberName"] = self.vtuber_name or ""
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MedalTransaction":
        return cls(
            id=d["id"],
            type=TransactionType(d["type"]),
            amount=int(d["amount"]),
            source=MedalSource(d["source"]),
            description=d.get("description", ""),
            created_at=from_iso(d.get("createdAt")) or now_ts(),
            vtuber_id=d.get("vtuberId"),
            vtuber_name=d.get("vtuberName"),
        )


FILTER_KEYS = ("type", "startDate", "endDate", "source")


def empty_filters() -> Dict[str, str]:
    return {k: "" for k in FILTER_KEYS}


@dataclass
class Pagination:
    page: int = 1
    page_size: int = 20
    total: int = 0

    @property
    def total_pages(self) -> int:
        if self.total <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size

    def to_dict(self) -> Dict[str, int]:
        return {
            "page": self.page,
            "pageSize": self.page_size,
            "total": self.total,
            "totalPages": self.total_pages,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Pagination":
        return cls(
            page=int(d.get("page", 1)),
            page_size=int(d.get("pageSize", 20)),
            total=int(d.get("total", 0)),
        )
