from __future__ import annotations

import pytest
from sqlalchemy import update

from koepon.errors import (
    ConflictError, InsufficientBalance, NotFoundError, ValidationError,
)
from koepon.model.medal import MedalSource, TransactionType
from koepon.model.orm import ExchangeItem
from koepon.seed import MIRAI_REWARD, WELCOME_BONUS

START = WELCOME_BONUS + MIRAI_REWARD


async def test_seeded_balance(services):
    b = await services.medals.get_balance("user-fan")

    assert b.available_medals == START
    assert b.total_medals == START
    assert b.used_medals == 0
    assert b.locked_medals == 0
    vb = b.vtuber("vt-mirai")
    assert (vb.balance, vb.total_earned) == (MIRAI_REWARD, MIRAI_REWARD)


async def test_credit_once_per_transaction(services):
    medals = services.medals
    assert await medals.credit("user-fan", 25, MedalSource.BONUS,
                               transaction_id="campaign:1")
    assert not await medals.credit("user-fan", 25, MedalSource.BONUS,
                                   transaction_id="campaign:1")

    b = await medals.get_balance("user-fan")
    assert b.available_medals == START + 25
    with pytest.raises(ValidationError):
        await medals.credit("user-fan", 0, MedalSource.BONUS,
                            transaction_id="campaign:2")


async def test_list_transactions_filters_and_pages(services):
    medals = services.medals
    items, page = await medals.list_transactions("user-fan")
    assert page.total == 2
    assert {t.source for t in items} == {MedalSource.BONUS,
                                         MedalSource.REWARD}

    items, page = await medals.list_transactions(
        "user-fan", {"source": "reward"})
    assert [t.vtuber_id for t in items] == ["vt-mirai"]

    items, page = await medals.list_transactions(
        "user-fan", page=2, page_size=1)
    assert len(items) == 1
    assert (page.total, page.total_pages) == (2, 2)

    items, _ = await medals.list_transactions(
        "user-fan", {"endDate": "2000-01-01"})
    assert items == []

    with pytest.raises(ValidationError):
        await medals.list_transactions("user-fan", {"type": "spent"})


async def test_exchange_spends_medals(services):
    medals = services.medals

    out = await medals.exchange("user-fan", "ex-wallpaper")

    assert out["cost"] == 30
    assert out["balance"]["availableMedals"] == START - 30
    assert out["balance"]["usedMedals"] == 30
    assert out["balance"]["lockedMedals"] == 0
    items, _ = await medals.list_transactions("user-fan", {"type": "used"})
    assert [(t.type, t.amount, t.source) for t in items] == [
        (TransactionType.USED, 30, MedalSource.EXCHANGE)]


async def test_vtuber_exchange_uses_sub_balance(services):
    medals = services.medals

    await medals.exchange("user-fan", "ex-voice")

    b = await medals.get_balance("user-fan")
    vb = b.vtuber("vt-mirai")
    assert (vb.balance, vb.total_used) == (MIRAI_REWARD - 50, 50)
    async with services.medals.db.begin():
        item = await services.medals.db.get(
            ExchangeItem, "ex-voice", populate_existing=True)
        assert item.stock == 99


async def test_vtuber_exchange_without_sub_balance(services):
    await services.medals.credit("user-vtuber", 500, MedalSource.BONUS,
                                 transaction_id="bonus:vtuber")
    with pytest.raises(InsufficientBalance):
        await services.medals.exchange("user-vtuber", "ex-voice")


async def test_exchange_beyond_balance_costs_nothing(services):
    with pytest.raises(InsufficientBalance):
        await services.medals.exchange("user-fan", "ex-shikishi")
    b = await services.medals.get_balance("user-fan")
    assert (b.available_medals, b.locked_medals) == (START, 0)


async def test_out_of_stock_releases_hold(services):
    db = services.medals.db
    async with db.begin():
        await db.execute(update(ExchangeItem)
                         .where(ExchangeItem.id == "ex-voice")
                         .values(stock=0))

    with pytest.raises(ConflictError):
        await services.medals.exchange("user-fan", "ex-voice")

    b = await services.medals.get_balance("user-fan")
    assert (b.available_medals, b.locked_medals, b.used_medals) == (
        START, 0, 0)


async def test_exchange_unknown_item(services):
    with pytest.raises(NotFoundError):
        await services.medals.exchange("user-fan", "ex-missing")
