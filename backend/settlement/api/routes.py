"""
Multichain purchase API routes.

Endpoints for supported networks, price quotes, purchases, transaction
status, collectible availability, buyer history and sales stats.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from settlement.errors import STEP_OWNERSHIP, ConfigurationError, UpstreamUnavailableError, ValidationError
from settlement.payment.verifier import TX_HASH_PATTERN
from settlement.purchase.models import PurchaseOutcome, PurchaseRequest, PurchaseState
from settlement.purchase.orchestrator import (
    CODE_CUSTODY_DISABLED,
    CODE_INTERNAL_ERROR,
    validate_address,
    validate_token_id,
)

from .dependencies import SettlementServices, get_services
from .schemas import PriceRequest, PurchaseBody, jsonable_stats, network_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/multichain", tags=["multichain"])


def outcome_status(outcome: PurchaseOutcome) -> int:
    """HTTP status for a purchase outcome."""
    state = outcome.state
    if state is PurchaseState.COMPLETED:
        return 200
    if outcome.error_code == CODE_INTERNAL_ERROR:
        return 500
    if state is PurchaseState.QUOTE_REJECTED:
        return 503 if outcome.error_code == CODE_CUSTODY_DISABLED else 400
    if state is PurchaseState.PAYMENT_REJECTED:
        return 502 if outcome.error_code == UpstreamUnavailableError.code else 400
    if state is PurchaseState.ALREADY_SOLD:
        return 409
    if state is PurchaseState.TRANSFER_FAILED:
        return 404 if outcome.step == STEP_OWNERSHIP else 502
    return 502


def outcome_response(outcome: PurchaseOutcome) -> JSONResponse:
    status = outcome_status(outcome)
    if outcome.success:
        content: Dict[str, Any] = {
            "success": True,
            "message": "Collectible purchased successfully",
            "data": outcome.to_dict(),
        }
    else:
        content = {
            "success": False,
            "error": {
                "code": outcome.error_code,
                "step": outcome.step,
                "message": outcome.error_message,
                "details": outcome.to_dict(),
            },
        }
    return JSONResponse(status_code=status, content=content)


@router.get("/networks")
async def get_networks(services: SettlementServices = Depends(get_services)) -> Dict[str, Any]:
    """Supported payment networks and their currencies."""
    networks = [network_to_dict(n) for n in services.registry.list_networks()]
    return {"success": True, "data": {"networks": networks, "totalNetworks": len(networks)}}


@router.post("/price")
async def get_price_quote(
    body: PriceRequest, services: SettlementServices = Depends(get_services)
) -> Dict[str, Any]:
    """Price quote for a collectible in the chosen currency."""
    quote = await services.orchestrator.quote(
        token_id=str(body.token_id),
        rarity_name=body.rarity_name,
        network_id=body.network_id,
        currency_symbol=body.currency_symbol,
        collectible_name=body.nft_name,
    )
    return {"success": True, "data": quote.to_dict()}


@router.post("/purchase")
async def execute_purchase(
    body: PurchaseBody, services: SettlementServices = Depends(get_services)
) -> JSONResponse:
    """Verify the buyer's payment and transfer the collectible."""
    if services.transfer is None:
        raise ConfigurationError("Collectible transfer service is not configured")

    outcome = await services.orchestrator.purchase(
        PurchaseRequest(
            token_id=str(body.token_id),
            buyer_address=body.buyer_address,
            network_id=body.network_id,
            currency_symbol=body.currency_symbol,
            payment_tx_hash=body.payment_tx_reference,
            rarity_name=body.rarity_name,
            collectible_name=body.nft_name,
            claimed_amount=body.claimed_amount,
        )
    )
    return outcome_response(outcome)


@router.get("/transaction/{network_id}/{tx_reference}")
async def check_transaction(
    network_id: str, tx_reference: str, services: SettlementServices = Depends(get_services)
) -> Dict[str, Any]:
    """Raw transaction and receipt for polling a payment."""
    services.registry.get_network(network_id)
    if not TX_HASH_PATTERN.match(tx_reference):
        raise ValidationError(f"Invalid transaction reference: {tx_reference}")
    status = await services.verifier.get_transaction_status(network_id, tx_reference)
    return {"success": True, "data": status}


@router.get("/check/{token_id}")
async def check_availability(
    token_id: str, services: SettlementServices = Depends(get_services)
) -> Dict[str, Any]:
    """Whether a collectible can still be bought."""
    token = validate_token_id(token_id)
    record = await services.store.get_by_token(token)

    held = None
    if services.transfer is not None and record is None:
        try:
            held = await services.transfer.is_held(token)
        except Exception as e:
            logger.error(f"Ownership lookup for token {token} failed: {e}")
            raise UpstreamUnavailableError(
                "Settlement network is not reachable", step=STEP_OWNERSHIP
            ) from e

    return {
        "success": True,
        "data": {
            "tokenId": token,
            "sold": record is not None,
            "heldByCustody": held,
            "available": record is None and held is not False,
            "purchase": record.to_dict() if record else None,
        },
    }


@router.get("/history/{address}")
async def get_purchase_history(
    address: str, services: SettlementServices = Depends(get_services)
) -> Dict[str, Any]:
    """Purchases made by a buyer, newest first."""
    buyer = validate_address(address, "address")
    records = await services.store.get_by_buyer(buyer)
    return {
        "success": True,
        "data": {
            "address": buyer,
            "purchases": [r.to_dict() for r in records],
            "totalPurchases": len(records),
        },
    }


@router.get("/stats")
async def get_stats(services: SettlementServices = Depends(get_services)) -> Dict[str, Any]:
    """Sales count and revenue."""
    stats = await services.store.stats()
    return {"success": True, "data": jsonable_stats(stats)}
