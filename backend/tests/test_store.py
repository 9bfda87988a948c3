from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fakes import BUYER, OTHER, tx_hash
from settlement.errors import DuplicatePurchaseError, PaymentAlreadyUsedError, StoreError
from settlement.store.models import PurchaseRecord


def make_record(token_id="7", buyer=BUYER, n=1, rarity="common", price_usd="18.40", created_at=None):
    return PurchaseRecord(
        token_id=token_id,
        buyer_address=buyer,
        payment_network="polygon",
        payment_tx_hash=tx_hash(n),
        settlement_tx_hash=tx_hash(1000 + n),
        currency="POL",
        amount=Decimal("141.53846154"),
        rarity=rarity,
        price_usd=Decimal(price_usd),
        created_at=created_at or datetime.now(timezone.utc),
    )


async def test_record_and_lookup(store):
    assert not await store.is_sold("7")
    saved = await store.record_purchase(make_record())
    assert saved.id is not None
    assert saved.buyer_address == BUYER.lower()
    assert saved.amount == Decimal("141.53846154")
    assert await store.is_sold("7")
    assert await store.is_sold(7)
    assert (await store.get_by_token("7")).settlement_tx_hash == tx_hash(1001)


async def test_second_record_for_token_is_rejected(store):
    await store.record_purchase(make_record(n=1))
    with pytest.raises(DuplicatePurchaseError) as exc:
        await store.record_purchase(make_record(n=2, buyer=OTHER))
    assert isinstance(exc.value, StoreError)
    assert exc.value.token_id == "7"
    assert (await store.get_by_token("7")).payment_tx_hash == tx_hash(1)


async def test_payment_settles_one_token(store):
    await store.record_purchase(make_record(token_id="7", n=1))
    with pytest.raises(PaymentAlreadyUsedError) as exc:
        await store.record_purchase(make_record(token_id="8", n=1))
    assert exc.value.payment_tx_hash == tx_hash(1)
    assert not await store.is_sold("8")

    # a conflict on both columns reports the token
    with pytest.raises(DuplicatePurchaseError):
        await store.record_purchase(make_record(token_id="7", n=1))


async def test_history_newest_first(store):
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    await store.record_purchase(make_record(token_id="7", n=1, created_at=start))
    await store.record_purchase(make_record(token_id="8", n=2, created_at=start + timedelta(hours=1)))
    await store.record_purchase(make_record(token_id="9", n=3, buyer=OTHER))
    history = await store.get_by_buyer(BUYER.upper().replace("0X", "0x"))
    assert [r.token_id for r in history] == ["8", "7"]


async def test_lookup_by_payment_reference(store):
    await store.record_purchase(make_record(n=5))
    found = await store.get_by_payment_tx(tx_hash(5).upper().replace("0X", "0x"))
    assert found.token_id == "7"
    assert await store.get_by_payment_tx(tx_hash(6)) is None


async def test_sold_token_ids_and_stats(store):
    assert (await store.stats())["count"] == 0
    await store.record_purchase(make_record(token_id="7", n=1, rarity="common", price_usd="18.40"))
    await store.record_purchase(make_record(token_id="8", n=2, rarity="legendary", price_usd="184.00"))
    await store.record_purchase(make_record(token_id="9", n=3, rarity="common", price_usd="18.40"))
    assert await store.sold_token_ids() == ["7", "8", "9"]
    stats = await store.stats()
    assert stats["count"] == 3
    assert stats["revenue_usd"] == Decimal("220.80")
    assert stats["count_by_rarity"] == {"common": 2, "legendary": 1}


async def test_health_check(db):
    assert await db.health_check()
