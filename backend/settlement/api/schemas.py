"""
Request models and JSON projections for the multichain API.
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Union

from pydantic import AliasChoices, BaseModel, Field

from settlement.chains.registry import NetworkDescriptor


class PriceRequest(BaseModel):
    """Request body for a price quote. Either rarityName or nftName is required."""
    token_id: Union[str, int] = Field(validation_alias=AliasChoices("tokenId", "token_id"))
    rarity_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("rarityName", "rarity", "rarity_name")
    )
    nft_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("nftName", "nft_name"))
    network_id: str = Field(validation_alias=AliasChoices("networkId", "network", "network_id"))
    currency_symbol: str = Field(
        validation_alias=AliasChoices("currencySymbol", "currency", "currency_symbol")
    )


class PurchaseBody(PriceRequest):
    """Request body for a purchase: the quote fields plus the buyer's payment claim."""
    buyer_address: str = Field(validation_alias=AliasChoices("buyerAddress", "buyer_address"))
    payment_tx_reference: str = Field(
        validation_alias=AliasChoices("paymentTxReference", "paymentTxHash", "payment_tx_reference")
    )
    claimed_amount: Optional[Decimal] = Field(
        default=None, validation_alias=AliasChoices("claimedAmount", "expectedAmount", "claimed_amount")
    )


def network_to_dict(network: NetworkDescriptor) -> Dict[str, Any]:
    return {
        "id": network.id.value,
        "name": network.name,
        "chainId": network.chain_id,
        "nativeCurrency": network.native_symbol,
        "explorerUrl": network.explorer_url,
        "adminWallet": network.receiving_wallet or None,
        "acceptsPayments": bool(network.receiving_wallet),
        "currencies": [
            {
                "symbol": c.symbol,
                "decimals": c.decimals,
                "isNative": c.is_native,
                "address": c.contract_address,
            }
            for c in network.currencies
        ],
    }


def jsonable_stats(stats: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "totalPurchases": stats["count"],
        "totalRevenueUsd": str(stats["revenue_usd"]),
        "byRarity": dict(stats["count_by_rarity"]),
    }
