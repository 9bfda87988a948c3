"""
Service container shared by the API routes.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from settlement.chains.providers import RpcClientManager
from settlement.chains.registry import NetworkRegistry
from settlement.config import SettlementConfig
from settlement.payment.verifier import PaymentVerifier
from settlement.pricing.oracle import PriceOracle
from settlement.purchase.orchestrator import PurchaseOrchestrator
from settlement.store.database import DatabaseSessionManager
from settlement.store.sold_state import SoldStateStore
from settlement.transfer.service import AssetTransferService


@dataclass
class SettlementServices:
    """Components built once at startup."""
    config: SettlementConfig
    registry: NetworkRegistry
    clients: RpcClientManager
    oracle: PriceOracle
    verifier: PaymentVerifier
    db: DatabaseSessionManager
    store: SoldStateStore
    orchestrator: PurchaseOrchestrator
    transfer: Optional[AssetTransferService] = None

    async def aclose(self) -> None:
        await self.oracle.aclose()
        await self.clients.close()
        await self.db.dispose()


def get_services(request: Request) -> SettlementServices:
    return request.app.state.services
