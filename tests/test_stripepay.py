from __future__ import annotations

from types import SimpleNamespace

import pytest
import stripe

from koepon.stripepay import StripePay


@pytest.fixture
def adapter() -> StripePay:
    return StripePay(secret_key="sk_test_koepon", webhook_secret="whsec_x")


def _confirm_returns(monkeypatch, **fields):
    calls = []

    def fake_confirm(intent_id, **kw):
        calls.append((intent_id, kw))
        return SimpleNamespace(id=intent_id, **fields)

    monkeypatch.setattr(stripe.PaymentIntent, "confirm", fake_confirm)
    return calls


async def test_processing_is_not_paid(adapter, monkeypatch):
    _confirm_returns(monkeypatch, status="processing")

    outcome = await adapter.confirm_intent("pi_1", "pm_card_visa")

    assert outcome == {"intent_id": "pi_1", "status": "processing",
                       "error": None}


async def test_succeeded_is_paid(adapter, monkeypatch):
    calls = _confirm_returns(monkeypatch, status="succeeded")

    outcome = await adapter.confirm_intent("pi_1", "pm_card_visa")

    assert outcome["status"] == "succeeded"
    assert calls == [("pi_1", {"payment_method": "pm_card_visa",
                               "api_key": "sk_test_koepon"})]


async def test_requires_action(adapter, monkeypatch):
    _confirm_returns(monkeypatch, status="requires_action")
    outcome = await adapter.confirm_intent("pi_1", "pm_card_visa")
    assert outcome["status"] == "requires_action"


async def test_failed_carries_provider_message(adapter, monkeypatch):
    _confirm_returns(
        monkeypatch, status="requires_payment_method",
        last_payment_error=SimpleNamespace(
            message="Your card has insufficient funds."),
    )

    outcome = await adapter.confirm_intent("pi_1", "pm_card_visa")

    assert outcome == {"intent_id": "pi_1", "status": "failed",
                       "error": "Your card has insufficient funds."}


async def test_retrieve_status(adapter, monkeypatch):
    monkeypatch.setattr(
        stripe.PaymentIntent, "retrieve",
        lambda intent_id, **kw: SimpleNamespace(id=intent_id,
                                                status="processing"),
    )
    assert await adapter.retrieve_status("pi_1") == "processing"


def test_event_mapping(adapter) -> None:
    event = {"id": "evt_1", "type": "payment_intent.payment_failed",
             "data": {"object": {"id": "pi_1"}}}
    assert adapter.event_kind(event) == "failed"
    assert adapter.event_ids(event) == ("pi_1", "evt_1")


def test_secret_key_required() -> None:
    with pytest.raises(RuntimeError):
        StripePay(secret_key="", webhook_secret="")
