"""
Purchase pipeline data types: quote, request, state machine outcome.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from settlement.payment.verifier import PaymentVerificationResult
from settlement.pricing.amounts import Amount, RarityTier
from settlement.store.models import PurchaseRecord
from settlement.transfer.service import TransferResult


class PurchaseState(str, Enum):
    QUOTED = "quoted"
    PAYMENT_SUBMITTED = "payment_submitted"
    PAYMENT_VERIFIED = "payment_verified"
    TRANSFER_EXECUTING = "transfer_executing"
    COMPLETED = "completed"
    QUOTE_REJECTED = "quote_rejected"
    PAYMENT_REJECTED = "payment_rejected"
    ALREADY_SOLD = "already_sold"
    TRANSFER_FAILED = "transfer_failed"
    RECORD_FAILED = "record_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        PurchaseState.COMPLETED,
        PurchaseState.QUOTE_REJECTED,
        PurchaseState.PAYMENT_REJECTED,
        PurchaseState.ALREADY_SOLD,
        PurchaseState.TRANSFER_FAILED,
        PurchaseState.RECORD_FAILED,
    }
)


@dataclass(frozen=True)
class Quote:
    """Advisory price of a collectible in the buyer's chosen currency. Never persisted."""
    token_id: str
    rarity: RarityTier
    base_price: Amount
    network_id: str
    network_name: str
    amount: Amount
    price_usd: Decimal
    base_usd_rate: Decimal
    target_usd_rate: Decimal
    receiving_wallet: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "rarity": self.rarity.label,
            "basePrice": str(self.base_price.value),
            "baseCurrency": self.base_price.symbol,
            "network": self.network_id,
            "networkName": self.network_name,
            "currency": self.amount.symbol,
            "price": str(self.amount.value),
            "priceUsd": str(self.price_usd),
            "exchangeRates": {
                self.base_price.symbol: str(self.base_usd_rate),
                self.amount.symbol: str(self.target_usd_rate),
            },
            "adminWallet": self.receiving_wallet,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class PurchaseRequest:
    """A buyer's claim: 'I paid for tokenId with this transaction'."""
    token_id: str
    buyer_address: str
    network_id: str
    currency_symbol: str
    payment_tx_hash: str
    rarity_name: Optional[str] = None
    collectible_name: Optional[str] = None
    claimed_amount: Optional[Decimal] = None


@dataclass
class PurchaseOutcome:
    """Terminal result of one purchase attempt with its state history."""
    token_id: str
    payment_tx_hash: str
    state: Optional[PurchaseState] = None
    transitions: List[PurchaseState] = field(default_factory=list)
    step: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    requires_refund: bool = False
    payment_network: Optional[str] = None
    settlement_tx_hash: Optional[str] = None
    verification: Optional[PaymentVerificationResult] = None
    transfer: Optional[TransferResult] = None
    record: Optional[PurchaseRecord] = None
    explorer_urls: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.state is PurchaseState.COMPLETED

    def advance(self, state: PurchaseState) -> "PurchaseOutcome":
        self.state = state
        self.transitions.append(state)
        return self

    def fail(
        self,
        state: PurchaseState,
        step: str,
        code: str,
        message: str,
        requires_refund: bool = False,
    ) -> "PurchaseOutcome":
        self.step = step
        self.error_code = code
        self.error_message = message
        self.requires_refund = requires_refund
        return self.advance(state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value if self.state else None,
            "transitions": [s.value for s in self.transitions],
            "tokenId": self.token_id,
            "step": self.step,
            "paymentTxHash": self.payment_tx_hash,
            "paymentNetwork": self.payment_network,
            "settlementTxHash": self.settlement_tx_hash,
            "requiresRefund": self.requires_refund,
            "payment": self.verification.to_dict() if self.verification else None,
            "transfer": self.transfer.to_dict() if self.transfer else None,
            "purchase": self.record.to_dict() if self.record else None,
            "explorerUrls": dict(self.explorer_urls),
        }
