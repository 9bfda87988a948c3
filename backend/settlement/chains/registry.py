"""
Static catalog of supported payment networks.

- One descriptor per NetworkId member (checked at import)
- Receiving wallets and RPC overrides are applied once from config
- Lookups are pure; unknown networks and unsupported currencies are rejected
  before any RPC is attempted
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

from settlement.errors import (
    NetworkNotFoundError,
    UnsupportedCombinationError,
    UnsupportedCurrencyError,
)


class NetworkId(str, Enum):
    """Supported payment networks."""
    ETHEREUM = "ethereum"
    POLYGON = "polygon"
    BSC = "bsc"
    ARBITRUM = "arbitrum"
    OPTIMISM = "optimism"
    AVALANCHE = "avalanche"
    BASE = "base"


@dataclass(frozen=True)
class CurrencyDescriptor:
    symbol: str
    decimals: int
    is_native: bool
    contract_address: Optional[str] = None  # None for the native coin


@dataclass(frozen=True)
class NetworkDescriptor:
    id: NetworkId
    name: str
    chain_id: int
    rpc_url: str
    explorer_url: str
    native_symbol: str
    currencies: Tuple[CurrencyDescriptor, ...]
    receiving_wallet: str = ""
    poa: bool = False  # extraData > 32 bytes, needs ExtraDataToPOAMiddleware

    @property
    def native_currency(self) -> CurrencyDescriptor:
        return self.find_currency(self.native_symbol)

    def find_currency(self, symbol: str) -> Optional[CurrencyDescriptor]:
        wanted = symbol.upper()
        for currency in self.currencies:
            if currency.symbol == wanted:
                return currency
        return None

    def tx_url(self, tx_ref: str) -> str:
        return f"{self.explorer_url}/tx/{tx_ref}"


def _native(symbol: str) -> CurrencyDescriptor:
    return CurrencyDescriptor(symbol=symbol, decimals=18, is_native=True)


def _token(symbol: str, address: str, decimals: int) -> CurrencyDescriptor:
    return CurrencyDescriptor(symbol=symbol, decimals=decimals, is_native=False, contract_address=address)


NETWORK_TABLE: Dict[NetworkId, NetworkDescriptor] = {
    NetworkId.ETHEREUM: NetworkDescriptor(
        id=NetworkId.ETHEREUM,
        name="Ethereum",
        chain_id=1,
        rpc_url="https://eth.llamarpc.com",
        explorer_url="https://etherscan.io",
        native_symbol="ETH",
        currencies=(
            _native("ETH"),
            _token("WETH", "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", 18),
            _token("USDT", "0xdAC17F958D2ee523a2206206994597C13D831ec7", 6),
            _token("USDC", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6),
        ),
    ),
    NetworkId.POLYGON: NetworkDescriptor(
        id=NetworkId.POLYGON,
        name="Polygon",
        chain_id=137,
        rpc_url="https://polygon-rpc.com",
        explorer_url="https://polygonscan.com",
        native_symbol="POL",
        currencies=(
            _native("POL"),
            _token("WETH", "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619", 18),
            _token("USDT", "0xc2132D05D31c914a87C6611C10748AEb04B58e8F", 6),
            _token("USDC", "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", 6),
        ),
        poa=True,
    ),
    NetworkId.BSC: NetworkDescriptor(
        id=NetworkId.BSC,
        name="BNB Smart Chain",
        chain_id=56,
        rpc_url="https://bsc-dataseed.binance.org",
        explorer_url="https://bscscan.com",
        native_symbol="BNB",
        currencies=(
            _native("BNB"),
            _token("BUSD", "0xe9e7CEA3DedcA5984780Bafc599bD69ADd087D56", 18),
            _token("USDT", "0x55d398326f99059fF775485246999027B3197955", 18),
        ),
        poa=True,
    ),
    NetworkId.ARBITRUM: NetworkDescriptor(
        id=NetworkId.ARBITRUM,
        name="Arbitrum One",
        chain_id=42161,
        rpc_url="https://arb1.arbitrum.io/rpc",
        explorer_url="https://arbiscan.io",
        native_symbol="ETH",
        currencies=(
            _native("ETH"),
            _token("USDT", "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9", 6),
            _token("USDC", "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", 6),
        ),
    ),
    NetworkId.OPTIMISM: NetworkDescriptor(
        id=NetworkId.OPTIMISM,
        name="Optimism",
        chain_id=10,
        rpc_url="https://mainnet.optimism.io",
        explorer_url="https://optimistic.etherscan.io",
        native_symbol="ETH",
        currencies=(
            _native("ETH"),
            _token("USDT", "0x94b008aA00579c1307B0EF2c499aD98a8ce58e58", 6),
            _token("USDC", "0x7F5c764cBc14f9669B88837ca1490cCa17c31607", 6),
        ),
    ),
    NetworkId.AVALANCHE: NetworkDescriptor(
        id=NetworkId.AVALANCHE,
        name="Avalanche C-Chain",
        chain_id=43114,
        rpc_url="https://api.avax.network/ext/bc/C/rpc",
        explorer_url="https://snowtrace.io",
        native_symbol="AVAX",
        currencies=(
            _native("AVAX"),
            _token("USDT", "0x9702230A8Ea53601f5cD2dc00fDBc13d4dF4A8c7", 6),
            _token("USDC", "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E", 6),
        ),
    ),
    NetworkId.BASE: NetworkDescriptor(
        id=NetworkId.BASE,
        name="Base",
        chain_id=8453,
        rpc_url="https://mainnet.base.org",
        explorer_url="https://basescan.org",
        native_symbol="ETH",
        currencies=(
            _native("ETH"),
            _token("USDC", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6),
        ),
    ),
}

_missing = set(NetworkId) - set(NETWORK_TABLE)
if _missing:
    raise RuntimeError(f"NETWORK_TABLE is missing descriptors for: {sorted(m.value for m in _missing)}")


def parse_network_id(network_id: str) -> NetworkId:
    """Map a request string to a NetworkId or raise NetworkNotFoundError."""
    if isinstance(network_id, NetworkId):
        return network_id
    try:
        return NetworkId((network_id or "").strip().lower())
    except ValueError:
        raise NetworkNotFoundError(network_id) from None


class NetworkRegistry:
    """Read-only lookups over the configured network table."""

    def __init__(self, networks: Dict[NetworkId, NetworkDescriptor]) -> None:
        self._networks = dict(networks)

    @classmethod
    def from_config(cls, config) -> "NetworkRegistry":
        """Apply receiving wallets and RPC overrides from SettlementConfig."""
        networks = {}
        for network_id, descriptor in NETWORK_TABLE.items():
            networks[network_id] = replace(
                descriptor,
                receiving_wallet=config.admin_wallet_for(network_id.value),
                rpc_url=config.rpc_url_for(network_id.value) or descriptor.rpc_url,
            )
        return cls(networks)

    def list_networks(self) -> List[NetworkDescriptor]:
        return list(self._networks.values())

    def get_network(self, network_id: str) -> NetworkDescriptor:
        key = parse_network_id(network_id)
        descriptor = self._networks.get(key)
        if descriptor is None:
            raise NetworkNotFoundError(str(network_id))
        return descriptor

    def get_currency(self, network_id: str, symbol: str) -> CurrencyDescriptor:
        network = self.get_network(network_id)
        currency = network.find_currency(symbol or "")
        if currency is None:
            raise UnsupportedCurrencyError(network.id.value, symbol, network.name)
        return currency

    def validate(self, network_id: str, symbol: str) -> Tuple[NetworkDescriptor, CurrencyDescriptor]:
        """Check that payments in `symbol` on `network_id` can be accepted.

        Returns:
            (network, currency) descriptors

        Raises:
            NetworkNotFoundError, UnsupportedCurrencyError,
            UnsupportedCombinationError (no receiving wallet configured)
        """
        network = self.get_network(network_id)
        currency = self.get_currency(network_id, symbol)
        if not network.receiving_wallet:
            raise UnsupportedCombinationError(
                f"Payments on {network.name} are not accepted: no receiving wallet configured",
                details={"network": network.id.value, "currency": currency.symbol},
            )
        return network, currency

    def explorer_tx_url(self, network_id: str, tx_ref: str) -> str:
        return self.get_network(network_id).tx_url(tx_ref)
