from __future__ import annotations

import json

import httpx
import pytest

from koepon.client.gacha import DrawOrchestrator
from koepon.client.medal import MedalLedger
from koepon.client.payment import HttpPaymentConfirmer, PaymentIntentClient
from koepon.errors import InvalidTransition, ValidationError
from koepon.model.gacha import DrawState, Rarity


def _result(count: int = 1, medals: int = 10, rid: str = "res-1"):
    return {
        "id": rid,
        "gachaId": "gacha-1",
        "items": [{"id": f"item-{k}", "name": "voice", "rarity": "SR",
                   "imageUrl": ""} for k in range(count)],
        "medalsEarned": medals,
        "paymentId": "mock_pi_1",
        "paymentAmount": 100 if count == 1 else 1000,
        "drawCount": count,
        "timestamp": "2026-10-01T12:00:00+00:00",
        "vtuberId": "vt-a",
        "vtuberName": "A",
    }


@pytest.fixture
def paid_backend(backend, balance_body):
    backend.on("GET", "/api/v1/medals/balance", balance_body(100))
    backend.on("POST", "/payments/create-intent", {
        "clientSecret": "mock_pi_1_secret_x", "paymentIntentId": "mock_pi_1",
        "amount": 100, "currency": "jpy",
    })
    backend.on("POST", "/payments/confirm", {
        "paymentIntentId": "mock_pi_1", "status": "succeeded", "error": None,
    })
    backend.on("POST", "/api/gacha/draw",
               {"result": _result(), "replayed": False})
    backend.on("POST", "/api/gacha/draw-multi",
               {"result": _result(10, 100, "res-10"), "replayed": False})
    return backend


async def _orchestrator(api, method="pm_card_visa"):
    medals = MedalLedger(api)
    await medals.fetch_medal_balance()
    payments = PaymentIntentClient(api, HttpPaymentConfirmer(api))
    payments.set_payment_method(method)
    return DrawOrchestrator(api, payments, medals)


async def test_single_draw_completes_and_credits(api, paid_backend):
    orch = await _orchestrator(api)

    result = await orch.execute_draw("gacha-1", 1)

    assert orch.state is DrawState.COMPLETE
    assert result.items[0].rarity is Rarity.SR
    assert orch.draw_result is result
    assert orch.pending_payment is None
    assert orch.medals.medal_balance.available_medals == 110
    body = json.loads(paid_backend.calls_to("POST", "/api/gacha/draw")[0]
                      .content)
    assert body == {"gachaId": "gacha-1", "count": 1,
                    "paymentIntentId": "mock_pi_1"}


async def test_ten_draw_uses_multi_endpoint(api, paid_backend):
    orch = await _orchestrator(api)

    result = await orch.execute_draw("gacha-1", 10)

    assert len(result.items) == 10
    assert paid_backend.calls_to("POST", "/api/gacha/draw") == []
    intent = json.loads(
        paid_backend.calls_to("POST", "/payments/create-intent")[0].content)
    assert intent["amount"] == 1000
    assert intent["pullType"] == "ten"
    assert orch.medals.medal_balance.available_medals == 200


async def test_invalid_count_is_rejected_before_payment(api, paid_backend):
    orch = await _orchestrator(api)
    with pytest.raises(ValidationError):
        await orch.execute_draw("gacha-1", 5)
    assert orch.state is DrawState.IDLE
    assert paid_backend.calls_to("POST", "/payments/create-intent") == []


async def test_declined_payment_ends_in_error(api, paid_backend):
    paid_backend.on("POST", "/payments/confirm", {
        "paymentIntentId": "mock_pi_1", "status": "failed",
        "error": "Your card was declined.",
    })
    orch = await _orchestrator(api, "pm_card_chargeDeclined")

    assert await orch.execute_draw("gacha-1", 1) is None

    assert orch.state is DrawState.ERROR
    assert orch.error == "Your card was declined."
    assert orch.pending_payment is None
    assert paid_backend.calls_to("POST", "/api/gacha/draw") == []
    with pytest.raises(InvalidTransition):
        await orch.retry_draw()


async def test_failed_draw_keeps_payment_for_retry(api, paid_backend):
    paid_backend.error("POST", "/api/gacha/draw", 409, "draw_in_progress",
                       "この決済の抽選は処理中です")
    orch = await _orchestrator(api)

    assert await orch.execute_draw("gacha-1", 1) is None
    assert orch.state is DrawState.ERROR
    assert orch.pending_payment.payment_intent_id == "mock_pi_1"

    paid_backend.on("POST", "/api/gacha/draw",
                    {"result": _result(), "replayed": True})
    result = await orch.retry_draw()

    assert result.id == "res-1"
    assert orch.state is DrawState.COMPLETE
    # paid once
    assert len(paid_backend.calls_to("POST", "/payments/confirm")) == 1


async def test_replayed_result_is_credited_once(api, paid_backend):
    orch = await _orchestrator(api)
    result = await orch.execute_draw("gacha-1", 1)

    assert orch.apply_result_medals(result) is False
    assert orch.medals.medal_balance.available_medals == 110


async def test_malformed_draw_response(api, paid_backend):
    paid_backend.on("POST", "/api/gacha/draw", {"replayed": False})
    orch = await _orchestrator(api)

    assert await orch.execute_draw("gacha-1", 1) is None
    assert orch.state is DrawState.ERROR
    assert orch.pending_payment is not None


async def test_state_machine_guards(api, paid_backend):
    orch = await _orchestrator(api)
    with pytest.raises(InvalidTransition):
        orch.clear_draw_result()

    await orch.execute_draw("gacha-1", 1)
    with pytest.raises(InvalidTransition):
        await orch.execute_draw("gacha-1", 1)

    orch.clear_draw_result()
    assert orch.state is DrawState.IDLE
    assert orch.draw_result is None
    assert orch.payments.payment_intent_id is None


async def test_fetch_catalog(api, backend):
    backend.on("GET", "/api/gacha", {"items": [{"id": "gacha-1"}]})
    backend.on("GET", "/api/gacha/gacha-1", {"id": "gacha-1", "items": []})
    orch = await _orchestrator(api)

    assert [g["id"] for g in await orch.fetch_gacha_list()] == ["gacha-1"]
    assert (await orch.fetch_gacha_detail("gacha-1"))["id"] == "gacha-1"
    assert await orch.fetch_gacha_detail("missing") is None
    assert orch.gacha_error == "no route"


async def test_history_filters(api, backend):
    def history(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "items": [_result()],
            "pagination": {"page": 1, "pageSize": 20, "total": 1},
        })

    backend.on("GET", "/api/gacha/history", handler=history)
    orch = await _orchestrator(api)
    orch.set_history_filters(rarity="SR", vtuber="vt-a")

    items = await orch.fetch_draw_history()

    assert [r.id for r in items] == ["res-1"]
    params = backend.calls_to("GET", "/api/gacha/history")[0].url.params
    assert params["rarity"] == "SR"
    assert params["vtuber"] == "vt-a"
    assert "startDate" not in params
    with pytest.raises(ValidationError):
        orch.set_history_filters(type="earned")
    orch.clear_history_filters()
    assert all(v == "" for v in orch.history_filters.values())
