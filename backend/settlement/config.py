"""
Configuration for the settlement service.

Loads and validates environment variables for payment networks, the
settlement network custody account, pricing and storage.
"""

import re
from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings

from settlement.errors import ConfigurationError

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
PRIVATE_KEY_PATTERN = re.compile(r"^(0x)?[a-fA-F0-9]{64}$")


class SettlementConfig(BaseSettings):
    """Settlement service configuration."""

    # Receiving wallets (per-network override falls back to admin_address)
    admin_address: str = ""
    ethereum_admin_wallet: str = ""
    polygon_admin_wallet: str = ""
    bsc_admin_wallet: str = ""
    arbitrum_admin_wallet: str = ""
    optimism_admin_wallet: str = ""
    avalanche_admin_wallet: str = ""
    base_admin_wallet: str = ""

    # RPC overrides (empty = registry default)
    ethereum_rpc_url: str = ""
    polygon_rpc_url: str = ""
    bsc_rpc_url: str = ""
    arbitrum_rpc_url: str = ""
    optimism_rpc_url: str = ""
    avalanche_rpc_url: str = ""
    base_rpc_url: str = ""

    # Settlement network custody
    settlement_network: str = "polygon"
    nft_contract_address: str = ""
    private_key: str = ""
    server_wallet_address: str = ""

    # Storage
    database_url: str = "sqlite+aiosqlite:///./settlement.db"

    # Pricing
    price_feed_url: str = "https://api.coingecko.com/api/v3/simple/price"
    price_cache_ttl_seconds: float = 300.0
    price_feed_timeout_seconds: float = 5.0

    # Verification / transfer
    rpc_read_timeout_seconds: float = 20.0
    confirmation_timeout_seconds: float = 180.0
    payment_tolerance: Decimal = Decimal("0.02")
    min_confirmations: int = 0

    # Process
    log_level: str = "INFO"
    port: int = 3001
    cors_origins: str = "*"

    class Config:
        """Pydantic config."""
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    def admin_wallet_for(self, network_id: str) -> str:
        """Receiving wallet for a network, or '' if none is configured."""
        override = getattr(self, f"{network_id}_admin_wallet", "")
        return override or self.admin_address

    def rpc_url_for(self, network_id: str) -> Optional[str]:
        return getattr(self, f"{network_id}_rpc_url", "") or None

    @property
    def custody_enabled(self) -> bool:
        """Transfers need a contract and a signing key."""
        return bool(self.nft_contract_address and self.private_key)

    def validate(self) -> None:
        """Validate configuration.

        Raises:
            ConfigurationError: If a configured value is malformed
        """
        wallets = {"ADMIN_ADDRESS": self.admin_address}
        for network in ("ethereum", "polygon", "bsc", "arbitrum", "optimism", "avalanche", "base"):
            wallets[f"{network.upper()}_ADMIN_WALLET"] = getattr(self, f"{network}_admin_wallet")
        wallets["NFT_CONTRACT_ADDRESS"] = self.nft_contract_address
        wallets["SERVER_WALLET_ADDRESS"] = self.server_wallet_address

        for name, value in wallets.items():
            if value and not ADDRESS_PATTERN.match(value):
                raise ConfigurationError(f"{name} must be a valid EVM address: {value}")

        if self.private_key and not PRIVATE_KEY_PATTERN.match(self.private_key):
            raise ConfigurationError("PRIVATE_KEY must be 32 bytes of hex")

        if not (Decimal("0") <= self.payment_tolerance < Decimal("1")):
            raise ConfigurationError(
                f"PAYMENT_TOLERANCE must be in [0, 1), got {self.payment_tolerance}"
            )

        if self.min_confirmations < 0:
            raise ConfigurationError("MIN_CONFIRMATIONS must be >= 0")


def load_config() -> SettlementConfig:
    """Build and validate configuration from the environment."""
    config = SettlementConfig()
    config.validate()
    return config
