"""
PurchaseOrchestrator: drives one purchase attempt through the state machine.

    quoted -> payment_submitted -> payment_verified -> transfer_executing -> completed

Failure exits: quote_rejected, payment_rejected, already_sold,
transfer_failed, record_failed. Every outcome names the failing step and
nothing raises across purchase(). There is no automatic retry; a retry is a
fresh purchase() call and will see already_sold if an earlier attempt
completed, or if its transfer landed on the buyer after that attempt gave up.
"""

import asyncio
import logging
import re
import weakref
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from settlement.chains.registry import CurrencyDescriptor, NetworkDescriptor, NetworkRegistry
from settlement.errors import (
    STEP_AVAILABILITY,
    STEP_OWNERSHIP,
    STEP_PAYMENT,
    STEP_QUOTE,
    STEP_RECORD,
    STEP_TRANSFER,
    AlreadySoldError,
    DuplicatePurchaseError,
    OwnershipMismatchError,
    PaymentAlreadyUsedError,
    PaymentVerificationFailure,
    RecordFailure,
    TransferFailure,
    UpstreamUnavailableError,
    ValidationError,
)
from settlement.payment.verifier import (
    REASON_RPC_UNAVAILABLE,
    TX_HASH_PATTERN,
    ExpectedPayment,
    PaymentVerifier,
)
from settlement.pricing.amounts import Amount, RarityTier
from settlement.pricing.oracle import PriceOracle
from settlement.store.models import PurchaseRecord
from settlement.store.sold_state import SoldStateStore
from settlement.transfer.service import AssetTransferService, TransferErrorCode

from .models import PurchaseOutcome, PurchaseRequest, PurchaseState, Quote

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
TOKEN_ID_PATTERN = re.compile(r"^\d+$")

REASON_PAYMENT_REUSED = "payment already used"

CODE_CUSTODY_DISABLED = "CUSTODY_DISABLED"
CODE_INTERNAL_ERROR = "INTERNAL_ERROR"

# State an unexpected exception ends in, by the step that was running
_INTERNAL_FAILURE_STATES = {
    STEP_QUOTE: PurchaseState.QUOTE_REJECTED,
    STEP_AVAILABILITY: PurchaseState.PAYMENT_REJECTED,
    STEP_PAYMENT: PurchaseState.PAYMENT_REJECTED,
    STEP_OWNERSHIP: PurchaseState.TRANSFER_FAILED,
    STEP_TRANSFER: PurchaseState.TRANSFER_FAILED,
    STEP_RECORD: PurchaseState.RECORD_FAILED,
}


def validate_token_id(token_id) -> str:
    token = str(token_id if token_id is not None else "").strip()
    if not TOKEN_ID_PATTERN.match(token):
        raise ValidationError(f"Invalid tokenId: {token_id!r}", details={"tokenId": token_id})
    return token


def validate_address(address: Optional[str], field_name: str = "buyerAddress") -> str:
    if not address or not ADDRESS_PATTERN.match(address):
        raise ValidationError(f"Invalid {field_name}: {address!r}", details={field_name: address})
    return address


def resolve_rarity(rarity_name: Optional[str], collectible_name: Optional[str] = None) -> RarityTier:
    """Rarity from an explicit tier name, else derived from the collectible name."""
    if rarity_name:
        return RarityTier.parse(rarity_name)
    if collectible_name:
        return RarityTier.from_collectible_name(collectible_name)
    raise ValidationError("rarityName or nftName is required")


class PurchaseOrchestrator:
    """Sequences quote, payment verification, transfer and recording."""

    def __init__(
        self,
        registry: NetworkRegistry,
        oracle: PriceOracle,
        verifier: PaymentVerifier,
        store: SoldStateStore,
        transfer: Optional[AssetTransferService] = None,
    ) -> None:
        self.registry = registry
        self.oracle = oracle
        self.verifier = verifier
        self.store = store
        self.transfer = transfer
        self._token_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._payment_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @staticmethod
    def _lock_for(locks: weakref.WeakValueDictionary, key: str) -> asyncio.Lock:
        lock = locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            locks[key] = lock
        return lock

    # --- Quote ------------------------------------------------------------------

    async def quote(
        self,
        token_id: str,
        rarity_name: Optional[str],
        network_id: str,
        currency_symbol: str,
        collectible_name: Optional[str] = None,
    ) -> Quote:
        """Price a collectible in the chosen currency.

        Raises:
            ValidationError: malformed token id, unknown rarity, unsupported network/currency
        """
        token = validate_token_id(token_id)
        rarity = resolve_rarity(rarity_name, collectible_name)
        network, currency = self.registry.validate(network_id, currency_symbol)
        return await self._build_quote(token, rarity, network, currency)

    async def _build_quote(
        self,
        token_id: str,
        rarity: RarityTier,
        network: NetworkDescriptor,
        currency: CurrencyDescriptor,
    ) -> Quote:
        snapshot = await self.oracle.price_in(rarity.base_amount, currency.symbol, currency.decimals)
        quote = Quote(
            token_id=token_id,
            rarity=rarity,
            base_price=snapshot.base,
            network_id=network.id.value,
            network_name=network.name,
            amount=snapshot.converted,
            price_usd=snapshot.price_usd,
            base_usd_rate=snapshot.base_usd_rate,
            target_usd_rate=snapshot.target_usd_rate,
            receiving_wallet=network.receiving_wallet,
        )
        logger.info(f"Quote for token {token_id} ({rarity.label}): {quote.amount} on {network.name}")
        return quote

    # --- Purchase -----------------------------------------------------------------

    async def purchase(self, request: PurchaseRequest) -> PurchaseOutcome:
        """Run one purchase attempt to a terminal state. Never raises."""
        outcome = PurchaseOutcome(
            token_id=str(request.token_id).strip(),
            payment_tx_hash=(request.payment_tx_hash or "").strip(),
            payment_network=str(request.network_id or "").strip().lower() or None,
        )
        try:
            return await self._run(request, outcome)
        except Exception as e:
            step = self._current_step(outcome)
            logger.exception(f"Unexpected error during purchase of token {outcome.token_id} at step {step}: {e}")
            state = _INTERNAL_FAILURE_STATES.get(step, PurchaseState.PAYMENT_REJECTED)
            return outcome.fail(
                state,
                step,
                CODE_INTERNAL_ERROR,
                f"Internal error during {step}",
                requires_refund=PurchaseState.PAYMENT_VERIFIED in outcome.transitions,
            )

    @staticmethod
    def _current_step(outcome: PurchaseOutcome) -> str:
        if PurchaseState.TRANSFER_EXECUTING in outcome.transitions:
            return STEP_TRANSFER
        if PurchaseState.PAYMENT_VERIFIED in outcome.transitions:
            return STEP_AVAILABILITY
        if PurchaseState.PAYMENT_SUBMITTED in outcome.transitions:
            return STEP_PAYMENT
        if PurchaseState.QUOTED in outcome.transitions:
            return STEP_AVAILABILITY
        return STEP_QUOTE

    async def _run(self, request: PurchaseRequest, outcome: PurchaseOutcome) -> PurchaseOutcome:
        token_id = outcome.token_id
        tx_hash = outcome.payment_tx_hash
        logger.info(f"Purchase request: token {token_id}, buyer {request.buyer_address}, "
                    f"{request.currency_symbol} on {request.network_id}, payment {tx_hash}")

        # 1. Validate the request and quote it
        try:
            token_id, rarity, network, currency, buyer = self._validate(request)
        except ValidationError as e:
            logger.warning(f"Purchase of token {token_id} rejected: {e.message}")
            return outcome.fail(PurchaseState.QUOTE_REJECTED, STEP_QUOTE, e.code, e.message)
        if self.transfer is None:
            return outcome.fail(
                PurchaseState.QUOTE_REJECTED, STEP_QUOTE, CODE_CUSTODY_DISABLED,
                "Transfers are disabled: custody is not configured",
            )
        outcome.token_id = token_id
        outcome.payment_network = network.id.value
        outcome.explorer_urls["payment"] = network.tx_url(tx_hash)
        outcome.advance(PurchaseState.QUOTED)

        # 2. Fast path: already sold, no RPC
        if await self.store.is_sold(token_id):
            logger.info(f"Token {token_id} already sold, rejecting before verification")
            return self._already_sold(outcome, requires_refund=False)
        if await self.store.get_by_payment_tx(tx_hash):
            return self._payment_reused(outcome)

        # 3. Expected amount is re-derived from the rarity, never taken from the client
        quote = await self._build_quote(token_id, rarity, network, currency)
        expected = ExpectedPayment(
            buyer=buyer,
            receiving_wallet=network.receiving_wallet,
            amount=quote.amount,
            currency=currency,
        )
        if request.claimed_amount is not None:
            claimed = Amount(request.claimed_amount, currency.symbol, currency.decimals)
            if not claimed.within_tolerance(quote.amount, self.verifier.tolerance):
                logger.warning(f"Claimed amount {claimed} differs from expected {quote.amount} for token {token_id}")
        outcome.advance(PurchaseState.PAYMENT_SUBMITTED)

        # 4. Verify the payment on its network
        verification = await self.verifier.verify(network.id, tx_hash, expected)
        outcome.verification = verification
        if not verification.is_valid:
            reason = verification.error_message or "payment rejected"
            if reason == REASON_RPC_UNAVAILABLE:
                code = UpstreamUnavailableError.code
            else:
                code = PaymentVerificationFailure.code
            return outcome.fail(PurchaseState.PAYMENT_REJECTED, STEP_PAYMENT, code, f"Payment verification failed: {reason}")
        outcome.advance(PurchaseState.PAYMENT_VERIFIED)

        # 5-8. Availability, transfer and record, serialized per token and per payment
        token_lock = self._lock_for(self._token_locks, token_id)
        payment_lock = self._lock_for(self._payment_locks, tx_hash.lower())
        async with token_lock, payment_lock:
            if await self.store.is_sold(token_id):
                logger.warning(f"Token {token_id} sold while payment {tx_hash} was verified; refund required")
                return self._already_sold(outcome, requires_refund=True)
            if await self.store.get_by_payment_tx(tx_hash):
                return self._payment_reused(outcome)

            outcome.advance(PurchaseState.TRANSFER_EXECUTING)
            result = await self.transfer.transfer(token_id, buyer)
            outcome.transfer = result
            if result.tx_hash:
                outcome.settlement_tx_hash = result.tx_hash
                outcome.explorer_urls["settlement"] = self.transfer.explorer_url(result.tx_hash)
            record = PurchaseRecord(
                token_id=token_id,
                buyer_address=buyer,
                payment_network=network.id.value,
                payment_tx_hash=tx_hash,
                settlement_tx_hash=result.tx_hash or "",
                currency=currency.symbol,
                amount=verification.actual_amount.value if verification.actual_amount else quote.amount.value,
                price_usd=quote.price_usd,
                rarity=rarity.label,
            )
            if not result.success:
                if result.error_code is TransferErrorCode.OWNERSHIP_MISMATCH and await self._delivered_to(token_id, buyer):
                    # an earlier attempt's transfer mined after that attempt gave up
                    logger.warning(f"Token {token_id} already delivered to {buyer}; recording payment {tx_hash}")
                    failure = await self._record(outcome, record, recovered=True)
                    return failure or self._already_sold(outcome, requires_refund=False)
                if result.error_code is TransferErrorCode.OWNERSHIP_MISMATCH:
                    step, code = STEP_OWNERSHIP, OwnershipMismatchError.code
                else:
                    step, code = STEP_TRANSFER, TransferFailure.code
                logger.error(
                    f"Transfer of token {token_id} failed after verified payment {tx_hash}: "
                    f"{result.error_code.value if result.error_code else 'unknown'}"
                )
                return outcome.fail(
                    PurchaseState.TRANSFER_FAILED, step, code,
                    f"{result.error_message} (payment {tx_hash} was verified)",
                    requires_refund=True,
                )

            failure = await self._record(outcome, record)
            if failure is not None:
                return failure

        logger.info(f"Purchase completed: token {token_id} -> {buyer} ({result.tx_hash})")
        return outcome.advance(PurchaseState.COMPLETED)

    async def _delivered_to(self, token_id: str, buyer: str) -> bool:
        try:
            owner = await self.transfer.owner_of(token_id)
        except Exception as e:
            logger.error(f"Owner lookup for token {token_id} failed: {e}")
            return False
        return owner.lower() == buyer.lower()

    async def _record(
        self, outcome: PurchaseOutcome, record: PurchaseRecord, recovered: bool = False
    ) -> Optional[PurchaseOutcome]:
        """Write the record of a delivered collectible. Returns the failed outcome, if any.

        recovered: the buyer already held the collectible before this attempt
        """
        settlement = record.settlement_tx_hash or "unknown transaction"
        try:
            outcome.record = await self.store.record_purchase(record)
        except DuplicatePurchaseError:
            logger.error(f"Token {record.token_id} recorded by another process after transfer {settlement}")
            return self._already_sold(outcome, requires_refund=not recovered)
        except PaymentAlreadyUsedError:
            logger.error(f"Payment {record.payment_tx_hash} recorded for another token after transfer {settlement}")
            return outcome.fail(
                PurchaseState.PAYMENT_REJECTED, STEP_RECORD, PaymentVerificationFailure.code,
                f"Payment verification failed: {REASON_PAYMENT_REUSED}; "
                f"token {record.token_id} was transferred ({settlement}) without a record",
            )
        except Exception as e:
            logger.exception(f"Recording purchase of token {record.token_id} failed after transfer {settlement}: {e}")
            return outcome.fail(
                PurchaseState.RECORD_FAILED, STEP_RECORD, RecordFailure.code,
                f"Collectible transferred ({settlement}) but the purchase record was not written",
            )
        return None

    def _validate(
        self, request: PurchaseRequest
    ) -> Tuple[str, RarityTier, NetworkDescriptor, CurrencyDescriptor, str]:
        token_id = validate_token_id(request.token_id)
        buyer = validate_address(request.buyer_address)
        if not TX_HASH_PATTERN.match((request.payment_tx_hash or "").strip()):
            raise ValidationError(
                f"Invalid payment transaction reference: {request.payment_tx_hash!r}",
                details={"paymentTxHash": request.payment_tx_hash},
            )
        if request.claimed_amount is not None:
            try:
                claimed = Decimal(str(request.claimed_amount))
            except InvalidOperation:
                raise ValidationError(f"Invalid amount: {request.claimed_amount!r}") from None
            if not claimed.is_finite() or claimed < 0:
                raise ValidationError(f"Invalid amount: {request.claimed_amount!r}")
        rarity = resolve_rarity(request.rarity_name, request.collectible_name)
        network, currency = self.registry.validate(request.network_id, request.currency_symbol)
        return token_id, rarity, network, currency, buyer

    @staticmethod
    def _already_sold(outcome: PurchaseOutcome, requires_refund: bool) -> PurchaseOutcome:
        message = f"Token {outcome.token_id} has already been sold"
        if requires_refund:
            message += f"; payment {outcome.payment_tx_hash} requires manual refund"
        return outcome.fail(
            PurchaseState.ALREADY_SOLD, STEP_AVAILABILITY, AlreadySoldError.code, message,
            requires_refund=requires_refund,
        )

    @staticmethod
    def _payment_reused(outcome: PurchaseOutcome) -> PurchaseOutcome:
        logger.warning(f"Payment {outcome.payment_tx_hash} already settled another purchase")
        return outcome.fail(
            PurchaseState.PAYMENT_REJECTED, STEP_PAYMENT, PaymentVerificationFailure.code,
            f"Payment verification failed: {REASON_PAYMENT_REUSED}",
        )
