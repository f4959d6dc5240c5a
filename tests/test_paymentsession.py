from __future__ import annotations

import time

import fakeredis
import pytest

from koepon.model.paymentsession import new_store

INTENT = {
    "user_id": "user-fan",
    "gacha_id": "gacha-mirai",
    "pull_type": "single",
    "draw_count": 1,
    "amount": 100,
    "currency": "jpy",
    "status": "requires_confirmation",
}


@pytest.fixture(params=["pg", "redis"])
async def store(request, sql):
    if request.param == "pg":
        SessionAsync, gated = sql
        async with SessionAsync() as session:
            yield new_store("pg", db=session, gated=gated, ttl_seconds=60)
    else:
        r = fakeredis.FakeAsyncRedis(decode_responses=True)
        yield new_store("redis", r=r, ttl_seconds=60)
        await r.aclose()


async def test_intent_roundtrip_and_status(store):
    created_at = time.time()
    await store.save_intent("pi_1", {**INTENT, "created_at": created_at})

    intent = await store.get_intent("pi_1")
    assert intent["user_id"] == "user-fan"
    assert intent["draw_count"] == 1
    assert intent["amount"] == 100
    assert intent["expires_at"] == pytest.approx(created_at + 60)

    assert await store.set_status("pi_1", "succeeded")
    assert (await store.get_intent("pi_1"))["status"] == "succeeded"
    assert not await store.set_status("pi_missing", "succeeded")
    assert await store.get_intent("pi_missing") is None


async def test_expired_intent_is_gone(store):
    await store.save_intent("pi_old", {**INTENT,
                                       "created_at": time.time() - 120})
    await store.save_intent("pi_new", {**INTENT, "created_at": time.time()})

    assert await store.get_intent("pi_old") is None
    assert await store.get_intent("pi_new") is not None


async def test_draw_gate_is_exclusive(store):
    assert await store.acquire_draw_gate("pi_1")
    assert not await store.acquire_draw_gate("pi_1")
    await store.release_draw_gate("pi_1")
    assert await store.acquire_draw_gate("pi_1")


async def test_first_draw_result_wins(store):
    assert await store.get_draw_result("pi_1") is None
    await store.save_draw_result("pi_1", '{"id": "a"}')
    await store.save_draw_result("pi_1", '{"id": "b"}')
    assert await store.get_draw_result("pi_1") == '{"id": "a"}'


async def test_mark_event_seen_once(store):
    assert await store.mark_event_seen("evt_1")
    assert not await store.mark_event_seen("evt_1")
    # events without an id are always processed
    assert await store.mark_event_seen(None)
    assert await store.mark_event_seen(None)


def test_new_store_requires_handles() -> None:
    with pytest.raises(RuntimeError):
        new_store("pg")
    with pytest.raises(RuntimeError):
        new_store("redis")
    with pytest.raises(ValueError):
        new_store("memcached")
