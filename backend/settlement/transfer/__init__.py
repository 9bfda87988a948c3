"""
Custodial ERC-721 transfer on the settlement network.
"""

from .gas import GasParams, GasStrategy, GasStrategyError
from .service import (
    ERC721_ABI,
    TRANSFER_ERROR_MESSAGES,
    AssetTransferService,
    TransferErrorCode,
    TransferResult,
    classify_transfer_error,
)

__all__ = [
    "AssetTransferService",
    "ERC721_ABI",
    "GasParams",
    "GasStrategy",
    "GasStrategyError",
    "TRANSFER_ERROR_MESSAGES",
    "TransferErrorCode",
    "TransferResult",
    "classify_transfer_error",
]
