import asyncio
from decimal import Decimal

import pytest

from fakes import ADMIN_WALLET, BUYER, OTHER, USDC_POLYGON, native_payment, token_payment, tx_hash
from settlement.errors import TransactionNotFoundError, UpstreamUnavailableError
from settlement.payment.verifier import (
    REASON_AMOUNT,
    REASON_CONFIRMATIONS,
    REASON_FAILED,
    REASON_INVALID_REFERENCE,
    REASON_NOT_FOUND,
    REASON_RECIPIENT,
    REASON_RPC_UNAVAILABLE,
    REASON_SENDER,
    REASON_TOKEN_CONTRACT,
    REASON_TOKEN_TRANSFER,
    ExpectedPayment,
    PaymentVerifier,
    receipt_succeeded,
)
from settlement.pricing.amounts import Amount

REF = tx_hash(1)


def expected_native(registry, amount="1.0", network="ethereum"):
    network, currency = registry.validate(network, "ETH" if network == "ethereum" else "POL")
    return ExpectedPayment(
        buyer=BUYER,
        receiving_wallet=network.receiving_wallet,
        amount=Amount(Decimal(amount), currency.symbol, currency.decimals),
        currency=currency,
    )


def expected_usdc(registry, amount="18.40"):
    network, currency = registry.validate("polygon", "USDC")
    return ExpectedPayment(
        buyer=BUYER,
        receiving_wallet=network.receiving_wallet,
        amount=Amount(Decimal(amount), "USDC", 6),
        currency=currency,
    )


async def test_valid_native_payment(registry, verifier, ethereum):
    ethereum.eth.add_payment(REF, native_payment(BUYER, ADMIN_WALLET, "1.0"))
    result = await verifier.verify("ethereum", REF, expected_native(registry))
    assert result.is_valid
    assert result.checks.all_passed()
    assert result.actual_amount.value == Decimal("1")
    assert result.confirmations == 10
    assert result.failed_reasons == []


async def test_addresses_compare_case_insensitively(registry, verifier, ethereum):
    ethereum.eth.add_payment(REF, native_payment(BUYER.lower(), ADMIN_WALLET.upper().replace("0X", "0x"), "1.0"))
    result = await verifier.verify("ethereum", REF, expected_native(registry))
    assert result.is_valid


@pytest.mark.parametrize("paid, valid", [("0.985", True), ("1.02", True), ("0.970", False), ("1.03", False)])
async def test_native_tolerance_band(registry, verifier, ethereum, paid, valid):
    ethereum.eth.add_payment(REF, native_payment(BUYER, ADMIN_WALLET, paid))
    result = await verifier.verify("ethereum", REF, expected_native(registry))
    assert result.is_valid is valid
    if not valid:
        assert result.error_message == REASON_AMOUNT


async def test_recipient_mismatch_rejected_even_with_correct_amount(registry, verifier, ethereum):
    ethereum.eth.add_payment(REF, native_payment(BUYER, OTHER, "1.0"))
    result = await verifier.verify("ethereum", REF, expected_native(registry))
    assert not result.is_valid
    assert result.checks.amount
    assert not result.checks.recipient
    assert REASON_RECIPIENT in result.failed_reasons


async def test_sender_mismatch(registry, verifier, ethereum):
    ethereum.eth.add_payment(REF, native_payment(OTHER, ADMIN_WALLET, "1.0"))
    result = await verifier.verify("ethereum", REF, expected_native(registry))
    assert not result.is_valid
    assert result.error_message == REASON_SENDER


async def test_failed_receipt(registry, verifier, ethereum):
    ethereum.eth.add_payment(REF, native_payment(BUYER, ADMIN_WALLET, "1.0", status=0))
    result = await verifier.verify("ethereum", REF, expected_native(registry))
    assert not result.is_valid
    assert REASON_FAILED in result.failed_reasons


async def test_unknown_transaction(registry, verifier):
    result = await verifier.verify("ethereum", REF, expected_native(registry))
    assert not result.is_valid
    assert result.failed_reasons == [REASON_NOT_FOUND]


async def test_malformed_reference_needs_no_rpc(registry, verifier, ethereum):
    result = await verifier.verify("ethereum", "0x1234", expected_native(registry))
    assert result.failed_reasons == [REASON_INVALID_REFERENCE]
    assert ethereum.eth.calls == []


async def test_rpc_error_is_a_result_not_an_exception(registry, verifier, ethereum):
    ethereum.eth.rpc_error = ConnectionError("connection refused")
    result = await verifier.verify("ethereum", REF, expected_native(registry))
    assert not result.is_valid
    assert result.failed_reasons == [REASON_RPC_UNAVAILABLE]


async def test_slow_rpc_times_out(registry, clients, ethereum, monkeypatch):
    async def hang(ref):
        await asyncio.sleep(10)

    monkeypatch.setattr(ethereum.eth, "get_transaction", hang)
    verifier = PaymentVerifier(registry, clients, read_timeout=0.05)
    result = await verifier.verify("ethereum", REF, expected_native(registry))
    assert result.failed_reasons == [REASON_RPC_UNAVAILABLE]


async def test_min_confirmations(registry, clients, ethereum):
    ethereum.eth.add_payment(REF, native_payment(BUYER, ADMIN_WALLET, "1.0", block_number=98))
    verifier = PaymentVerifier(registry, clients, min_confirmations=3)
    result = await verifier.verify("ethereum", REF, expected_native(registry))
    assert result.confirmations == 2
    assert result.failed_reasons == [REASON_CONFIRMATIONS]


async def test_token_payment_decoded_from_transfer_logs(registry, verifier, polygon):
    polygon.eth.add_payment(REF, token_payment(BUYER, ADMIN_WALLET, "18.40"))
    result = await verifier.verify("polygon", REF, expected_usdc(registry))
    assert result.is_valid
    assert result.actual_amount == Amount(Decimal("18.4"), "USDC", 6)
    assert result.to_address == ADMIN_WALLET.lower()


async def test_token_payment_to_other_wallet(registry, verifier, polygon):
    polygon.eth.add_payment(REF, token_payment(BUYER, OTHER, "18.40"))
    result = await verifier.verify("polygon", REF, expected_usdc(registry))
    assert not result.is_valid
    assert REASON_RECIPIENT in result.failed_reasons


async def test_token_payment_underpaid(registry, verifier, polygon):
    polygon.eth.add_payment(REF, token_payment(BUYER, ADMIN_WALLET, "10"))
    result = await verifier.verify("polygon", REF, expected_usdc(registry))
    assert result.error_message == REASON_AMOUNT


async def test_transfer_from_other_token_contract_is_ignored(registry, verifier, polygon):
    fake_token = "0x" + "ee" * 20
    polygon.eth.add_payment(REF, token_payment(BUYER, ADMIN_WALLET, "18.40", token=fake_token))
    result = await verifier.verify("polygon", REF, expected_usdc(registry))
    assert not result.is_valid
    assert REASON_TOKEN_TRANSFER in result.failed_reasons


async def test_token_payment_must_call_the_token_contract(registry, verifier, polygon):
    # a router call that emits a genuine USDC Transfer to the wallet
    tx, receipt = token_payment(BUYER, ADMIN_WALLET, "18.40")
    tx["to"] = OTHER
    polygon.eth.add_payment(REF, (tx, receipt))
    result = await verifier.verify("polygon", REF, expected_usdc(registry))
    assert not result.is_valid
    assert result.failed_reasons == [REASON_TOKEN_CONTRACT]
    assert result.actual_amount == Amount(Decimal("18.4"), "USDC", 6)


async def test_native_value_does_not_count_for_token_payment(registry, verifier, polygon):
    tx, receipt = native_payment(BUYER, ADMIN_WALLET, "18.40")
    polygon.eth.add_payment(REF, (tx, receipt))
    result = await verifier.verify("polygon", REF, expected_usdc(registry))
    assert REASON_TOKEN_TRANSFER in result.failed_reasons


@pytest.mark.parametrize("status, ok", [(1, True), ("0x1", True), (True, True), (0, False), ("0x0", False), (None, False)])
def test_receipt_status_normalization(status, ok):
    assert receipt_succeeded(status) is ok


async def test_transaction_status_for_polling(verifier, polygon):
    polygon.eth.add_payment(REF, token_payment(BUYER, ADMIN_WALLET, "1"))
    status = await verifier.get_transaction_status("polygon", REF)
    assert status["status"] == "success"
    assert status["explorerUrl"] == f"https://polygonscan.com/tx/{REF}"
    assert status["receipt"]["status"] == 1


async def test_transaction_status_pending(verifier, polygon):
    tx, _ = native_payment(BUYER, ADMIN_WALLET, "1")
    polygon.eth.transactions[REF] = tx
    status = await verifier.get_transaction_status("polygon", REF)
    assert status["status"] == "pending"
    assert status["receipt"] is None


async def test_transaction_status_errors(verifier, polygon):
    with pytest.raises(TransactionNotFoundError):
        await verifier.get_transaction_status("polygon", REF)
    polygon.eth.rpc_error = ConnectionError("down")
    with pytest.raises(UpstreamUnavailableError):
        await verifier.get_transaction_status("polygon", REF)


async def test_usdc_on_polygon_address_matches_registry(registry):
    assert registry.get_currency("polygon", "USDC").contract_address == USDC_POLYGON
