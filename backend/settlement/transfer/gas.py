"""
EIP-1559 gas strategy for settlement transfers.

This module provides:
- Base fee lookup from the latest block (gas price fallback)
- Priority fee (tip) estimation bounded per network
- maxFeePerGas computation with a safety multiplier
- Gas estimation with buffer and transaction building
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from web3 import Web3
from web3.types import Wei

from settlement.chains.providers import DEFAULT_RPC_TIMEOUT, call_with_timeout

logger = logging.getLogger(__name__)

# Safety multiplier for base fee (ensures tx remains valid even if base fee rises)
BASE_FEE_MULTIPLIER = 2.0

# Buffer applied to estimate_gas
GAS_LIMIT_BUFFER = 1.2

DEFAULT_PRIORITY_FEE_GWEI = 0.1
MIN_PRIORITY_FEE_GWEI = 0.01
MAX_PRIORITY_FEE_GWEI = 10.0


@dataclass
class GasParams:
    """Gas parameters for EIP-1559 transactions."""

    max_fee_per_gas: Wei  # maxFeePerGas (baseFee * multiplier + priorityFee)
    max_priority_fee_per_gas: Wei  # maxPriorityFeePerGas (tip)
    gas_limit: int

    @property
    def max_cost_wei(self) -> int:
        """Upper bound of the fee this transaction can be charged."""
        return int(self.gas_limit) * int(self.max_fee_per_gas)


class GasStrategyError(Exception):
    """Gas or fee could not be determined. The underlying error is __cause__."""


class GasStrategy:
    """
    EIP-1559 gas strategy.

    Calculates gas prices based on:
    - Current base fee of the latest block
    - Priority fee (tip), clamped to [min, max] for the network
    - Safety multiplier on the base fee
    """

    def __init__(
        self,
        web3: Any,
        base_fee_multiplier: float = BASE_FEE_MULTIPLIER,
        default_priority_fee_gwei: float = DEFAULT_PRIORITY_FEE_GWEI,
        min_priority_fee_gwei: float = MIN_PRIORITY_FEE_GWEI,
        max_priority_fee_gwei: float = MAX_PRIORITY_FEE_GWEI,
        timeout: float = DEFAULT_RPC_TIMEOUT,
    ) -> None:
        self.web3 = web3
        self.timeout = timeout
        self.base_fee_multiplier = base_fee_multiplier
        self.default_priority_fee_gwei = default_priority_fee_gwei
        self.min_priority_fee_gwei = min_priority_fee_gwei
        self.max_priority_fee_gwei = max_priority_fee_gwei

    async def _read(self, awaitable, what: str):
        return await call_with_timeout(awaitable, self.timeout, what)

    async def get_base_fee(self) -> Wei:
        """
        Base fee of the latest block.

        Raises:
            GasStrategyError: If neither the block nor gas price is readable
        """
        try:
            block = await self._read(self.web3.eth.get_block("latest"), "eth_getBlockByNumber")
            base_fee = block.get("baseFeePerGas") if hasattr(block, "get") else None
            if base_fee is not None:
                return Wei(int(base_fee))

            # Pre-London chains: estimate from gas price
            gas_price = await self._read(self.web3.eth.gas_price, "eth_gasPrice")
            estimated = Wei(int(gas_price) // 2)
            logger.warning(f"Could not get base fee, estimating as {estimated} wei from gas_price")
            return estimated
        except Exception as e:
            raise GasStrategyError(f"Failed to get base fee: {e}") from e

    async def get_priority_fee(self) -> Wei:
        """Network-suggested tip when within bounds, else the default."""
        default_wei = Wei(Web3.to_wei(self.default_priority_fee_gwei, "gwei"))
        try:
            suggested = await self._read(self.web3.eth.max_priority_fee, "eth_maxPriorityFeePerGas")
        except Exception as e:
            logger.debug(f"Could not get maxPriorityFeePerGas, using default: {e}")
            return default_wei

        if suggested:
            suggested_gwei = float(Web3.from_wei(int(suggested), "gwei"))
            if self.min_priority_fee_gwei <= suggested_gwei <= self.max_priority_fee_gwei:
                return Wei(int(suggested))
        logger.debug(f"Using default priority fee: {self.default_priority_fee_gwei} gwei")
        return default_wei

    async def calculate_gas_params(self, gas_limit: int) -> GasParams:
        """
        Formula:
            maxFeePerGas = (baseFee * multiplier) + priorityFee
            maxPriorityFeePerGas = priorityFee
        """
        base_fee = await self.get_base_fee()
        priority_fee = await self.get_priority_fee()
        max_fee_per_gas = Wei(int(base_fee * self.base_fee_multiplier) + priority_fee)

        logger.debug(
            f"Gas params: baseFee={base_fee} wei, priorityFee={priority_fee} wei, "
            f"maxFeePerGas={max_fee_per_gas} wei, gasLimit={gas_limit}"
        )
        return GasParams(
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=priority_fee,
            gas_limit=gas_limit,
        )

    async def estimate_gas_limit(self, contract_function: Any, base_tx: dict) -> int:
        """
        estimate_gas with buffer.

        Raises:
            GasStrategyError: estimation failed (a revert or funds error is kept as __cause__)
        """
        try:
            estimated = await self._read(contract_function.estimate_gas(base_tx), "eth_estimateGas")
        except Exception as e:
            raise GasStrategyError(f"Gas estimation failed: {e}") from e
        return int(estimated * GAS_LIMIT_BUFFER)

    async def estimate_and_build_tx(
        self,
        contract_function: Any,
        from_address: str,
        tx_overrides: Optional[dict] = None,
    ) -> tuple:
        """
        Estimate gas and build a transaction with EIP-1559 parameters.

        Returns:
            (transaction dict ready for signing, GasParams)

        Raises:
            GasStrategyError: If gas or fee estimation fails
        """
        base_tx = {"from": from_address, "value": 0}
        if tx_overrides:
            base_tx.update(tx_overrides)

        gas_limit = await self.estimate_gas_limit(contract_function, base_tx)
        gas_params = await self.calculate_gas_params(gas_limit)

        try:
            tx = await self._read(
                contract_function.build_transaction(
                    {
                        **base_tx,
                        "gas": gas_params.gas_limit,
                        "maxFeePerGas": gas_params.max_fee_per_gas,
                        "maxPriorityFeePerGas": gas_params.max_priority_fee_per_gas,
                    }
                ),
                "build_transaction",
            )
        except Exception as e:
            raise GasStrategyError(f"Failed to build transaction: {e}") from e
        return tx, gas_params
