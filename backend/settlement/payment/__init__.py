"""
Payment verification on the buyer's payment network.
"""

from .verifier import (
    ExpectedPayment,
    PaymentChecks,
    PaymentVerificationResult,
    PaymentVerifier,
    decode_erc20_transfers,
    receipt_succeeded,
)

__all__ = [
    "ExpectedPayment",
    "PaymentChecks",
    "PaymentVerificationResult",
    "PaymentVerifier",
    "decode_erc20_transfers",
    "receipt_succeeded",
]
