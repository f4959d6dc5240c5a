from __future__ import annotations

import pytest

from koepon.errors import NotFoundError, ValidationError
from koepon.helpers import now_ts
from koepon.services.admin import approval_rate, growth_rate
from koepon.seed import MIRAI_REWARD, WELCOME_BONUS


def test_approval_rate() -> None:
    assert approval_rate(0, 0) == 0.0
    assert approval_rate(4, 0) == 100.0
    assert approval_rate(3, 1) == 66.7


def test_growth_rate() -> None:
    assert growth_rate(150, 100) == 50.0
    assert growth_rate(50, 100) == -50.0
    assert growth_rate(10, 0) == 0.0


async def test_dashboard_counts_seed_and_draws(services):
    created = await services.adapter.create_intent(100, "jpy", {})
    await services.store.save_intent(created["intent_id"], {
        "user_id": "user-fan", "gacha_id": "gacha-mirai",
        "pull_type": "single", "draw_count": 1, "amount": 100,
        "status": "succeeded", "created_at": now_ts(),
    })
    await services.draws.execute("user-fan", "gacha-mirai", 1,
                                 created["intent_id"])
    timings = {"http.request": {"n": 4, "mean": 0.0125, "std": 0.0},
               "http.error": {"n": 1, "mean": 0.01, "std": 0.0}}

    stats = await services.admin.dashboard_stats(
        timings, started_at=now_ts() - 60)

    overview = stats["systemOverview"]
    assert overview["totalUsers"] == 3
    assert overview["newUsersToday"] == 3
    assert overview["totalVTubers"] == 3
    assert overview["pendingApplications"] == 1
    assert overview["approvalRate"] == 66.7
    assert overview["totalRevenue"] == 100
    assert overview["monthlyRevenue"] == 100
    assert overview["totalDraws"] == 1
    assert overview["activeUsersDAU"] == 1
    assert overview["activeUsersMAU"] == 1
    status = stats["systemStatus"]
    assert status["databaseStatus"] == "healthy"
    assert status["apiResponseTime"] == 12.5
    assert status["errorRate"] == 25.0
    assert status["uptimeSeconds"] >= 60


async def test_dashboard_without_timings(services):
    stats = await services.admin.dashboard_stats()
    assert stats["systemStatus"]["errorRate"] == 0.0
    assert stats["systemStatus"]["uptimeSeconds"] == 0
    assert stats["systemOverview"]["revenueGrowth"] == 0.0


async def test_list_users(services):
    out = await services.admin.list_users(limit=10)

    assert out["total"] == 3
    fan = next(u for u in out["items"] if u["id"] == "user-fan")
    assert fan["medalBalance"] == WELCOME_BONUS + MIRAI_REWARD
    assert fan["totalGachaDraws"] == 0
    assert fan["role"] == "user"

    page = await services.admin.list_users(limit=1, offset=1)
    assert len(page["items"]) == 1


async def test_review_vtuber(services):
    pending = await services.admin.list_vtubers("pending")
    assert [v["id"] for v in pending["items"]] == ["vt-sora"]

    out = await services.admin.review_vtuber("vt-sora", "approved")
    assert out["status"] == "approved"
    assert out["reviewedAt"] is not None
    assert (await services.admin.list_vtubers("pending"))["items"] == []

    with pytest.raises(ValidationError):
        await services.admin.review_vtuber("vt-sora", "pending")
    with pytest.raises(NotFoundError):
        await services.admin.review_vtuber("vt-missing", "rejected")


async def test_create_vtuber_is_pending(services):
    out = await services.admin.create_vtuber("新人VTuber", "https://x")
    assert out["status"] == "pending"
    with pytest.raises(ValidationError):
        await services.admin.create_vtuber("  ")


async def test_create_gacha_normalizes_rates(services):
    out = await services.admin.create_gacha({
        "vtuberId": "vt-luna",
        "name": "新春ガチャ",
        "medalReward": 20,
        "status": "active",
        "items": [
            {"name": "a", "rarity": "N", "dropRate": 0.3},
            {"name": "b", "rarity": "SSR", "dropRate": 0.1},
        ],
    })

    rates = [i["dropRate"] for i in out["items"]]
    assert rates == pytest.approx([0.75, 0.25])
    assert out["vtuberName"] == "月城ルナ"
    listed = await services.admin.list_gachas()
    assert out["id"] in {g["id"] for g in listed["items"]}


async def test_create_gacha_default_rates(services):
    out = await services.admin.create_gacha({
        "vtuberId": "vt-luna",
        "name": "デフォルト",
        "items": [{"name": "a", "rarity": "N"},
                  {"name": "b", "rarity": "UR"}],
    })
    rates = [i["dropRate"] for i in out["items"]]
    assert rates == pytest.approx([56 / 57, 1 / 57])
    assert out["status"] == "draft"


async def test_create_gacha_rejects_bad_input(services):
    with pytest.raises(NotFoundError):
        await services.admin.create_gacha({
            "vtuberId": "vt-missing", "name": "x",
            "items": [{"name": "a", "rarity": "N", "dropRate": 1}],
        })
    with pytest.raises(ValidationError):
        await services.admin.create_gacha({
            "vtuberId": "vt-luna", "name": "x",
            "items": [{"name": "a", "rarity": "XR", "dropRate": 1}],
        })
    with pytest.raises(ValidationError):
        await services.admin.create_gacha({
            "vtuberId": "vt-luna", "name": "x",
            "startDate": "2026-10-02", "endDate": "2026-10-01",
            "items": [{"name": "a", "rarity": "N", "dropRate": 1}],
        })
