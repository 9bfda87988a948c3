"""
Purchase record: ORM row and the immutable record handed to callers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PurchaseRow(Base):
    """One completed sale. token_id and payment_tx_hash are each unique."""
    __tablename__ = "nft_purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_id: Mapped[str] = mapped_column(String(78), nullable=False, unique=True)
    buyer_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    payment_network: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    settlement_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[str] = mapped_column(String(80), nullable=False)
    price_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    rarity: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )


@dataclass(frozen=True)
class PurchaseRecord:
    """A persisted sale, decoupled from the ORM session."""
    token_id: str
    buyer_address: str
    payment_network: str
    payment_tx_hash: str
    settlement_tx_hash: str
    currency: str
    amount: Decimal
    rarity: str
    price_usd: Optional[Decimal] = None
    created_at: datetime = field(default_factory=_utcnow)
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: PurchaseRow) -> "PurchaseRecord":
        return cls(
            id=row.id,
            token_id=row.token_id,
            buyer_address=row.buyer_address,
            payment_network=row.payment_network,
            payment_tx_hash=row.payment_tx_hash,
            settlement_tx_hash=row.settlement_tx_hash,
            currency=row.currency,
            amount=Decimal(row.amount),
            price_usd=row.price_usd,
            rarity=row.rarity,
            created_at=row.created_at,
        )

    def to_row(self) -> PurchaseRow:
        return PurchaseRow(
            token_id=self.token_id,
            buyer_address=self.buyer_address.lower(),
            payment_network=self.payment_network,
            payment_tx_hash=self.payment_tx_hash.lower(),
            settlement_tx_hash=self.settlement_tx_hash,
            currency=self.currency.upper(),
            amount=str(self.amount),
            price_usd=self.price_usd,
            rarity=self.rarity,
            created_at=self.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tokenId": self.token_id,
            "buyerAddress": self.buyer_address,
            "paymentNetwork": self.payment_network,
            "paymentTxHash": self.payment_tx_hash,
            "settlementTxHash": self.settlement_tx_hash,
            "currency": self.currency,
            "amount": str(self.amount),
            "priceUsd": str(self.price_usd) if self.price_usd is not None else None,
            "rarity": self.rarity,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
