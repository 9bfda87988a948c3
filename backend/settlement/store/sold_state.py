"""
SoldStateStore: durable record of which collectibles have been sold.

The unique constraint on token_id is the cross-process guard against
double-sale; callers hold a per-token lock in-process, but a second
process racing on the same token gets DuplicatePurchaseError here. The
unique constraint on payment_tx_hash does the same for a payment spent
twice, as PaymentAlreadyUsedError.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from settlement.errors import DuplicatePurchaseError, PaymentAlreadyUsedError, StoreError

from .database import DatabaseSessionManager
from .models import PurchaseRecord, PurchaseRow

logger = logging.getLogger(__name__)


def _token_key(token_id: Any) -> str:
    return str(token_id).strip()


class SoldStateStore:
    """Purchase records keyed by collectible id."""

    def __init__(self, db: DatabaseSessionManager):
        self.db = db

    async def create_schema(self) -> None:
        await self.db.create_schema()

    async def is_sold(self, token_id: Any) -> bool:
        async with self.db.session() as session:
            found = await session.scalar(
                select(PurchaseRow.id).where(PurchaseRow.token_id == _token_key(token_id))
            )
        return found is not None

    async def record_purchase(self, record: PurchaseRecord) -> PurchaseRecord:
        """
        Insert a purchase record.

        Raises:
            DuplicatePurchaseError: token already has a record
            PaymentAlreadyUsedError: the payment already settles another token
            StoreError: any other storage failure
        """
        token_id = _token_key(record.token_id)
        row = record.to_row()
        row.token_id = token_id
        async with self.db.session() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                conflict = e
            else:
                conflict = None
                await session.refresh(row)
        if conflict is not None:
            raise await self._conflict_error(record, token_id) from conflict
        logger.info(f"Purchase recorded: token {token_id} -> {row.buyer_address} ({row.settlement_tx_hash})")
        return PurchaseRecord.from_row(row)

    async def _conflict_error(self, record: PurchaseRecord, token_id: str) -> StoreError:
        """Which unique constraint an insert ran into."""
        if await self.get_by_token(token_id) is not None:
            logger.warning(f"Duplicate purchase record for token {token_id}")
            return DuplicatePurchaseError(token_id)
        if await self.get_by_payment_tx(record.payment_tx_hash) is not None:
            logger.warning(f"Payment {record.payment_tx_hash} already recorded for another token")
            return PaymentAlreadyUsedError(record.payment_tx_hash)
        return StoreError(f"Purchase record for token {token_id} violated a constraint")

    async def get_by_token(self, token_id: Any) -> Optional[PurchaseRecord]:
        async with self.db.session() as session:
            row = await session.scalar(
                select(PurchaseRow).where(PurchaseRow.token_id == _token_key(token_id))
            )
        return PurchaseRecord.from_row(row) if row else None

    async def get_by_buyer(self, buyer_address: str) -> List[PurchaseRecord]:
        """All purchases by a buyer, newest first."""
        async with self.db.session() as session:
            rows = await session.scalars(
                select(PurchaseRow)
                .where(PurchaseRow.buyer_address == buyer_address.lower())
                .order_by(PurchaseRow.created_at.desc(), PurchaseRow.id.desc())
            )
            return [PurchaseRecord.from_row(row) for row in rows]

    async def get_by_payment_tx(self, payment_tx_hash: str) -> Optional[PurchaseRecord]:
        async with self.db.session() as session:
            row = await session.scalar(
                select(PurchaseRow).where(PurchaseRow.payment_tx_hash == payment_tx_hash.lower())
            )
        return PurchaseRecord.from_row(row) if row else None

    async def sold_token_ids(self) -> List[str]:
        async with self.db.session() as session:
            rows = await session.scalars(select(PurchaseRow.token_id).order_by(PurchaseRow.id))
            return list(rows)

    async def stats(self) -> Dict[str, Any]:
        """Sales count, USD revenue and count per rarity tier."""
        async with self.db.session() as session:
            count, revenue = (
                await session.execute(
                    select(func.count(PurchaseRow.id), func.sum(PurchaseRow.price_usd))
                )
            ).one()
            by_rarity = (
                await session.execute(
                    select(PurchaseRow.rarity, func.count(PurchaseRow.id)).group_by(PurchaseRow.rarity)
                )
            ).all()
        return {
            "count": int(count or 0),
            "revenue_usd": Decimal(str(revenue or 0)).quantize(Decimal("0.01")),
            "count_by_rarity": {rarity: int(n) for rarity, n in by_rarity},
        }
