from __future__ import annotations

import random
from collections import Counter

import pytest

from koepon.errors import ValidationError
from koepon.model.gacha import Rarity
from koepon.services.draw_algorithm import (
    DrawAlgorithm, DrawableItem, available_items, default_rates,
    medals_for_draw, normalize_drop_rates, validate_items,
)


def _items() -> list[DrawableItem]:
    return [
        DrawableItem("n", "common", Rarity.N, 0.7),
        DrawableItem("r", "rare", Rarity.R, 0.2),
        DrawableItem("sr", "super", Rarity.SR, 0.1),
    ]


def test_normalize_scales_rates_to_one() -> None:
    items = [DrawableItem("a", "a", Rarity.N, 2.0 / 10),
             DrawableItem("b", "b", Rarity.R, 3.0 / 10)]
    out = normalize_drop_rates(items)
    assert [round(i.drop_rate, 6) for i in out] == [0.4, 0.6]
    # inputs untouched
    assert items[0].drop_rate == pytest.approx(0.2)


def test_normalize_all_zero_splits_evenly() -> None:
    items = [DrawableItem(str(k), "x", Rarity.N, 0.0) for k in range(4)]
    assert [i.drop_rate for i in normalize_drop_rates(items)] == [0.25] * 4


def test_validate_rejects_out_of_range_rate() -> None:
    with pytest.raises(ValidationError):
        validate_items([DrawableItem("a", "a", Rarity.N, 1.5)])
    with pytest.raises(ValidationError):
        validate_items([])


def test_available_items_drops_exhausted() -> None:
    items = [DrawableItem("a", "a", Rarity.UR, 0.5, max_count=1,
                          current_count=1),
             DrawableItem("b", "b", Rarity.N, 0.5)]
    assert [i.id for i in available_items(items)] == ["b"]


def test_default_rates_split_within_rarity() -> None:
    rates = default_rates([Rarity.N, Rarity.N, Rarity.UR])
    # N weight 56 shared by two items, UR weight 1
    assert rates[0] == pytest.approx(28 / 57)
    assert rates[1] == pytest.approx(28 / 57)
    assert rates[2] == pytest.approx(1 / 57)
    assert sum(rates) == pytest.approx(1.0)


def test_medals_for_draw_scales_with_count() -> None:
    assert medals_for_draw(10, 1) == 10
    assert medals_for_draw(10, 10) == 100
    assert medals_for_draw(-5, 10) == 0


def test_draw_returns_requested_count_without_mutating_input() -> None:
    algo = DrawAlgorithm(rng=random.Random(7))
    items = _items()
    drawn, _ = algo.draw(items, 10)
    assert len(drawn) == 10
    assert {d.id for d in drawn} <= {"n", "r", "sr"}
    assert all(i.current_count == 0 for i in items)


def test_draw_distribution_follows_rates() -> None:
    algo = DrawAlgorithm(rng=random.Random(1234), pity_threshold=0)
    drawn, _ = algo.draw(_items(), 5000)
    counts = Counter(d.id for d in drawn)
    assert 0.65 < counts["n"] / 5000 < 0.75
    assert 0.07 < counts["sr"] / 5000 < 0.13


def test_limited_item_never_exceeds_max_count() -> None:
    algo = DrawAlgorithm(rng=random.Random(3), pity_threshold=0)
    items = [DrawableItem("ur", "limited", Rarity.UR, 0.9, max_count=2),
             DrawableItem("n", "common", Rarity.N, 0.1)]
    drawn, _ = algo.draw(items, 10)
    assert sum(1 for d in drawn if d.id == "ur") == 2


def test_draw_fails_when_pool_is_exhausted() -> None:
    algo = DrawAlgorithm(rng=random.Random(3))
    items = [DrawableItem("ur", "limited", Rarity.UR, 1.0, max_count=1)]
    with pytest.raises(ValidationError):
        algo.draw(items, 2)


def test_pity_forces_rare_item() -> None:
    algo = DrawAlgorithm(rng=random.Random(5), pity_threshold=10)
    items = [DrawableItem("n", "common", Rarity.N, 1.0),
             DrawableItem("sr", "super", Rarity.SR, 0.0)]
    drawn, since = algo.draw(items, 1, draws_since_rare=9)
    assert drawn[0].id == "sr"
    assert since == 0


def test_draws_since_rare_counts_up() -> None:
    algo = DrawAlgorithm(rng=random.Random(5), pity_threshold=50)
    items = [DrawableItem("n", "common", Rarity.N, 1.0)]
    _, since = algo.draw(items, 10, draws_since_rare=3)
    assert since == 13


def test_draw_rejects_non_positive_count() -> None:
    with pytest.raises(ValidationError):
        DrawAlgorithm().draw(_items(), 0)
