import asyncio
from decimal import Decimal

import pytest

from fakes import ADMIN_WALLET, BUYER, CUSTODY_ADDRESS, OTHER, native_payment, token_payment, tx_hash
from settlement.errors import StoreError, ValidationError
from settlement.purchase.models import PurchaseRequest, PurchaseState
from settlement.purchase.orchestrator import PurchaseOrchestrator
from settlement.store.models import PurchaseRecord

# 0.008 WETH * 2300 / 0.13 at 8 places
COMMON_IN_POL = "141.53846154"


def request(token_id="7", buyer=BUYER, n=1, network="polygon", currency="POL", rarity="common", **kwargs):
    return PurchaseRequest(
        token_id=token_id,
        buyer_address=buyer,
        network_id=network,
        currency_symbol=currency,
        payment_tx_hash=tx_hash(n),
        rarity_name=rarity,
        **kwargs,
    )


def pay_pol(polygon, n=1, buyer=BUYER, amount=COMMON_IN_POL):
    polygon.eth.add_payment(tx_hash(n), native_payment(buyer, ADMIN_WALLET, amount))


async def test_quote_end_to_end(orchestrator):
    quote = await orchestrator.quote("7", "common", "polygon", "pol")
    assert quote.amount.value == Decimal(COMMON_IN_POL)
    assert quote.amount.symbol == "POL"
    assert quote.price_usd == Decimal("18.40")
    assert quote.receiving_wallet == ADMIN_WALLET
    assert quote.to_dict()["exchangeRates"] == {"WETH": "2300", "POL": "0.13"}


async def test_quote_from_collectible_name(orchestrator):
    quote = await orchestrator.quote("7", None, "polygon", "USDC", collectible_name="MarsPioneer #L1")
    assert quote.rarity.label == "legendary"
    assert quote.amount.value == Decimal("184.00000000")


async def test_quote_rejects_unsupported_pair(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.quote("7", "common", "base", "USDT")


async def test_successful_purchase(orchestrator, polygon, nft, store):
    pay_pol(polygon)
    outcome = await orchestrator.purchase(request())
    assert outcome.success
    assert outcome.transitions == [
        PurchaseState.QUOTED,
        PurchaseState.PAYMENT_SUBMITTED,
        PurchaseState.PAYMENT_VERIFIED,
        PurchaseState.TRANSFER_EXECUTING,
        PurchaseState.COMPLETED,
    ]
    assert nft.owners[7] == BUYER
    record = await store.get_by_token("7")
    assert record.payment_tx_hash == tx_hash(1)
    assert record.settlement_tx_hash == outcome.settlement_tx_hash
    assert record.rarity == "common"
    assert outcome.explorer_urls["settlement"].startswith("https://polygonscan.com/tx/")


async def test_token_payment_purchase(orchestrator, polygon):
    polygon.eth.add_payment(tx_hash(1), token_payment(BUYER, ADMIN_WALLET, "18.40"))
    outcome = await orchestrator.purchase(request(currency="USDC"))
    assert outcome.state is PurchaseState.COMPLETED
    assert outcome.record.currency == "USDC"


async def test_invalid_input_is_quote_rejected(orchestrator, polygon):
    outcome = await orchestrator.purchase(request(buyer="0x123"))
    assert outcome.state is PurchaseState.QUOTE_REJECTED
    assert outcome.step == "quote"
    assert polygon.eth.calls == []

    outcome = await orchestrator.purchase(request(network="solana"))
    assert outcome.state is PurchaseState.QUOTE_REJECTED

    outcome = await orchestrator.purchase(request(rarity="mythic"))
    assert outcome.state is PurchaseState.QUOTE_REJECTED


async def test_already_sold_makes_no_rpc_calls(orchestrator, store, polygon, nft):
    await store.record_purchase(
        PurchaseRecord(
            token_id="7", buyer_address=OTHER, payment_network="polygon", payment_tx_hash=tx_hash(99),
            settlement_tx_hash=tx_hash(199), currency="POL", amount=Decimal("1"), rarity="common",
        )
    )
    reads_before = nft.owner_reads
    pay_pol(polygon)
    outcome = await orchestrator.purchase(request())
    assert outcome.state is PurchaseState.ALREADY_SOLD
    assert outcome.step == "availability"
    assert not outcome.requires_refund
    assert polygon.eth.calls == []
    assert nft.owner_reads == reads_before


async def test_payment_rejected_mutates_nothing(orchestrator, polygon, nft, store):
    polygon.eth.add_payment(tx_hash(1), native_payment(BUYER, OTHER, COMMON_IN_POL))
    outcome = await orchestrator.purchase(request())
    assert outcome.state is PurchaseState.PAYMENT_REJECTED
    assert outcome.step == "payment"
    assert "recipient mismatch" in outcome.error_message
    assert nft.owners[7] == CUSTODY_ADDRESS
    assert polygon.eth.sent == []
    assert not await store.is_sold("7")


async def test_rpc_unavailable_is_upstream_failure(orchestrator, polygon):
    polygon.eth.rpc_error = ConnectionError("down")
    outcome = await orchestrator.purchase(request())
    assert outcome.state is PurchaseState.PAYMENT_REJECTED
    assert outcome.error_code == "UPSTREAM_UNAVAILABLE"


async def test_underpayment_within_tolerance_is_accepted(orchestrator, polygon):
    pay_pol(polygon, amount="139.0")
    outcome = await orchestrator.purchase(request(claimed_amount=Decimal("139.0")))
    assert outcome.success


async def test_ownership_mismatch_is_transfer_failure_with_payment_ref(orchestrator, polygon, nft, store):
    pay_pol(polygon)
    nft.owners[7] = OTHER
    outcome = await orchestrator.purchase(request())
    assert outcome.state is PurchaseState.TRANSFER_FAILED
    assert outcome.step == "ownership"
    assert outcome.requires_refund
    assert tx_hash(1) in outcome.error_message
    assert outcome.to_dict()["paymentTxHash"] == tx_hash(1)
    assert polygon.eth.sent == []
    assert not await store.is_sold("7")


async def test_reverted_transfer_is_not_recorded(orchestrator, polygon, store):
    pay_pol(polygon)
    polygon.eth.mined_status = 0
    outcome = await orchestrator.purchase(request())
    assert outcome.state is PurchaseState.TRANSFER_FAILED
    assert outcome.step == "transfer"
    assert outcome.settlement_tx_hash is not None
    assert not await store.is_sold("7")


async def test_store_failure_after_transfer_is_record_failed(orchestrator, polygon, store, monkeypatch):
    pay_pol(polygon)

    async def broken(record):
        raise StoreError("disk full")

    monkeypatch.setattr(store, "record_purchase", broken)
    outcome = await orchestrator.purchase(request())
    assert outcome.state is PurchaseState.RECORD_FAILED
    assert outcome.step == "record"
    assert outcome.settlement_tx_hash is not None
    assert outcome.payment_tx_hash == tx_hash(1)


async def test_payment_cannot_buy_two_tokens(orchestrator, polygon, nft):
    pay_pol(polygon)
    first = await orchestrator.purchase(request(token_id="7"))
    second = await orchestrator.purchase(request(token_id="8"))
    assert first.success
    assert second.state is PurchaseState.PAYMENT_REJECTED
    assert nft.owners[8] == CUSTODY_ADDRESS


async def test_retry_after_late_settlement_records_the_sale(orchestrator, polygon, nft, store):
    pay_pol(polygon)
    polygon.eth.mine = False
    first = await orchestrator.purchase(request())
    assert first.state is PurchaseState.TRANSFER_FAILED
    assert first.settlement_tx_hash is not None

    # the timed-out transfer lands afterwards
    token_id, to = nft.pending
    nft.owners[token_id] = to

    retry = await orchestrator.purchase(request())
    assert retry.state is PurchaseState.ALREADY_SOLD
    assert not retry.requires_refund
    assert retry.record.payment_tx_hash == tx_hash(1)
    assert await store.is_sold("7")
    assert len(polygon.eth.sent) == 1


async def test_ownership_lost_to_another_wallet_still_owes_refund(orchestrator, polygon, nft, store):
    pay_pol(polygon)
    nft.owners[7] = OTHER
    outcome = await orchestrator.purchase(request())
    assert outcome.state is PurchaseState.TRANSFER_FAILED
    assert outcome.requires_refund
    assert outcome.record is None
    assert not await store.is_sold("7")


async def test_retry_after_completion_is_already_sold(orchestrator, polygon):
    pay_pol(polygon)
    assert (await orchestrator.purchase(request())).success
    retry = await orchestrator.purchase(request())
    assert retry.state is PurchaseState.ALREADY_SOLD


async def test_concurrent_purchases_transfer_once(orchestrator, polygon, nft, store):
    attempts = 5
    for n in range(1, attempts + 1):
        pay_pol(polygon, n=n)
    outcomes = await asyncio.gather(*(orchestrator.purchase(request(n=n)) for n in range(1, attempts + 1)))

    states = [o.state for o in outcomes]
    assert states.count(PurchaseState.COMPLETED) == 1
    assert states.count(PurchaseState.ALREADY_SOLD) == attempts - 1
    for outcome in outcomes:
        if outcome.state is PurchaseState.ALREADY_SOLD:
            # refund is owed only when the payment had already been verified
            assert outcome.requires_refund == (PurchaseState.PAYMENT_VERIFIED in outcome.transitions)
    assert len(polygon.eth.sent) == 1
    assert await store.sold_token_ids() == ["7"]


async def test_duplicate_record_from_other_process_is_already_sold(registry, oracle, verifier, store, transfer, polygon):
    class RacingStore:
        """Reports unsold until the insert, like a second process winning the race."""

        def __init__(self, inner):
            self.inner = inner

        async def is_sold(self, token_id):
            return False

        async def get_by_payment_tx(self, ref):
            return None

        async def record_purchase(self, record):
            await self.inner.record_purchase(
                PurchaseRecord(
                    token_id=record.token_id, buyer_address=OTHER, payment_network="polygon",
                    payment_tx_hash=tx_hash(77), settlement_tx_hash=tx_hash(177), currency="POL",
                    amount=Decimal("1"), rarity="common",
                )
            )
            return await self.inner.record_purchase(record)

    orchestrator = PurchaseOrchestrator(registry, oracle, verifier, RacingStore(store), transfer)
    pay_pol(polygon)
    outcome = await orchestrator.purchase(request())
    assert outcome.state is PurchaseState.ALREADY_SOLD
    assert outcome.requires_refund


async def test_unexpected_error_does_not_escape(orchestrator, monkeypatch):
    async def boom(token_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(orchestrator.store, "is_sold", boom)
    outcome = await orchestrator.purchase(request())
    assert outcome.state.is_terminal
    assert outcome.error_code == "INTERNAL_ERROR"
    assert outcome.step == "availability"


async def test_custody_disabled(registry, oracle, verifier, store):
    orchestrator = PurchaseOrchestrator(registry, oracle, verifier, store, transfer=None)
    outcome = await orchestrator.purchase(request())
    assert outcome.state is PurchaseState.QUOTE_REJECTED
    assert outcome.error_code == "CUSTODY_DISABLED"


async def test_payment_recorded_by_other_process_is_payment_rejected(registry, oracle, verifier, store, transfer, polygon):
    class BlindStore:
        """Misses the payment lookup, as when another process records it in between."""

        def __init__(self, inner):
            self.inner = inner

        async def is_sold(self, token_id):
            return await self.inner.is_sold(token_id)

        async def get_by_payment_tx(self, ref):
            return None

        async def record_purchase(self, record):
            return await self.inner.record_purchase(record)

    await store.record_purchase(
        PurchaseRecord(
            token_id="8", buyer_address=BUYER, payment_network="polygon", payment_tx_hash=tx_hash(1),
            settlement_tx_hash=tx_hash(101), currency="POL", amount=Decimal(COMMON_IN_POL), rarity="common",
        )
    )
    orchestrator = PurchaseOrchestrator(registry, oracle, verifier, BlindStore(store), transfer)
    pay_pol(polygon)
    outcome = await orchestrator.purchase(request(token_id="7"))
    assert outcome.state is PurchaseState.PAYMENT_REJECTED
    assert outcome.step == "record"
    assert "payment already used" in outcome.error_message
    assert outcome.settlement_tx_hash in outcome.error_message
    assert not outcome.requires_refund
    assert not await store.is_sold("7")
