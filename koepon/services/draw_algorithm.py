"""
Weighted random draw over a gacha's item table.

Rates are probabilities in [0, 1]. Items with a `max_count` leave the pool
once exhausted. After `pity_threshold - 1` draws without an item of
`pity_rarity` or better, the next draw is restricted to such items.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
import random
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import ValidationError
from ..model.gacha import DEFAULT_RARITY_WEIGHTS, Rarity

PITY_THRESHOLD = 50


@dataclass
class DrawableItem:
    id: str
    name: str
    rarity: Rarity
    drop_rate: float
    image_url: str = ""
    max_count: Optional[int] = None
    current_count: int = 0

    @property
    def available(self) -> bool:
        return self.max_count is None or self.current_count < self.max_count


def validate_items(items: Sequence[DrawableItem]) -> None:
    if not items:
        raise ValidationError("ガチャに景品が登録されていません")
    for item in items:
        if not 0.0 <= item.drop_rate <= 1.0:
            raise ValidationError(
                f"invalid drop rate for {item.id}: {item.drop_rate}"
            )
        if item.max_count is not None and item.max_count < 0:
            raise ValidationError(f"invalid max count for {item.id}")
        if item.current_count < 0:
            raise ValidationError(f"invalid current count for {item.id}")


def normalize_drop_rates(items: Sequence[DrawableItem]) -> List[DrawableItem]:
    """Copies of `items` whose rates sum to 1 (equal split if all are 0)."""
    if not items:
        return []
    total = sum(i.drop_rate for i in items)
    if total <= 0:
        share = 1.0 / len(items)
        return [replace(i, drop_rate=share) for i in items]
    return [replace(i, drop_rate=i.drop_rate / total) for i in items]


def available_items(items: Iterable[DrawableItem]) -> List[DrawableItem]:
    return [i for i in items if i.available]


def default_rates(rarities: Sequence[Rarity]) -> List[float]:
    """Per-item rates from the default rarity weights, split evenly among
    items of the same rarity."""
    counts: Dict[Rarity, int] = {}
    for r in rarities:
        counts[r] = counts.get(r, 0) + 1
    weight_total = sum(DEFAULT_RARITY_WEIGHTS[r] for r in counts)
    return [
        DEFAULT_RARITY_WEIGHTS[r] / weight_total / counts[r]
        for r in rarities
    ]


def medals_for_draw(medal_reward: int, draw_count: int) -> int:
    return max(0, medal_reward) * draw_count


class DrawAlgorithm:
    def __init__(
        self,
        rng: Optional[random.Random] = None,
        pity_threshold: int = PITY_THRESHOLD,
        pity_rarity: Rarity = Rarity.SR,
    ) -> None:
        self.rng = rng or random.SystemRandom()
        self.pity_threshold = pity_threshold
        self.pity_rarity = pity_rarity

    def _is_rare(self, item: DrawableItem) -> bool:
        return item.rarity.rank >= self.pity_rarity.rank

    def _pick(self, pool: List[DrawableItem]) -> DrawableItem:
        weights = [i.drop_rate for i in pool]
        if sum(weights) <= 0:
            return self.rng.choice(pool)
        return self.rng.choices(pool, weights=weights, k=1)[0]

    def draw(
        self,
        items: Sequence[DrawableItem],
        count: int,
        draws_since_rare: int = 0,
    ) -> Tuple[List[DrawableItem], int]:
        """Draw `count` items.

        Returns the drawn items (with updated `current_count`) and the new
        number of draws since the last rare item. `items` is not mutated.
        """
        if count < 1:
            raise ValidationError("draw count must be positive")
        validate_items(items)
        pool = normalize_drop_rates(available_items(items))
        drawn: List[DrawableItem] = []
        for _ in range(count):
            if not pool:
                raise ValidationError("景品の在庫がありません")
            candidates = pool
            if self.pity_threshold > 0 and (
                    draws_since_rare + 1 >= self.pity_threshold):
                rare = [i for i in pool if self._is_rare(i)]
                if rare:
                    candidates = rare
            chosen = self._pick(candidates)
            chosen.current_count += 1
            drawn.append(replace(chosen))
            if not chosen.available:
                pool = normalize_drop_rates(
                    [i for i in pool if i is not chosen]
                )
            draws_since_rare = 0 if self._is_rare(chosen) else (
                draws_since_rare + 1
            )
        return drawn, draws_since_rare
