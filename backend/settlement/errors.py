"""
Error hierarchy for the settlement pipeline.

Every failure carries:
- a stable machine code (e.g. "ALREADY_SOLD")
- the purchase step that failed ("quote", "payment", "availability",
  "ownership", "transfer", "record")
- the HTTP status the API reports for it
"""

from typing import Any, Dict, Optional


STEP_QUOTE = "quote"
STEP_PAYMENT = "payment"
STEP_AVAILABILITY = "availability"
STEP_OWNERSHIP = "ownership"
STEP_TRANSFER = "transfer"
STEP_RECORD = "record"
STEP_STARTUP = "startup"


class SettlementError(Exception):
    """Base exception for the settlement pipeline."""

    code = "SETTLEMENT_ERROR"
    step = STEP_QUOTE
    http_status = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        step: Optional[str] = None,
        http_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if step is not None:
            self.step = step
        if http_status is not None:
            self.http_status = http_status
        self.details: Dict[str, Any] = details or {}

    def to_response(self) -> Dict[str, Any]:
        """Render the error as the API's failure envelope."""
        return {
            "success": False,
            "error": {
                "code": self.code,
                "step": self.step,
                "message": self.message,
                "details": self.details,
            },
        }


# --- Pre-payment failures -------------------------------------------------------


class ValidationError(SettlementError):
    """Malformed input or unsupported network/currency. No side effects."""

    code = "VALIDATION_ERROR"
    step = STEP_QUOTE
    http_status = 400


class NetworkNotFoundError(ValidationError):
    code = "UNSUPPORTED_NETWORK"

    def __init__(self, network_id: str) -> None:
        super().__init__(f"Unsupported network: {network_id}", details={"network": network_id})
        self.network_id = network_id


class UnsupportedCurrencyError(ValidationError):
    code = "UNSUPPORTED_CURRENCY"

    def __init__(self, network_id: str, symbol: str, network_name: Optional[str] = None) -> None:
        super().__init__(
            f"Currency {symbol} not supported on {network_name or network_id}",
            details={"network": network_id, "currency": symbol},
        )
        self.network_id = network_id
        self.symbol = symbol


class UnsupportedCombinationError(ValidationError):
    """Network/currency pair cannot be paid with (e.g. no receiving wallet)."""

    code = "UNSUPPORTED_COMBINATION"


class PaymentVerificationFailure(SettlementError):
    """Claimed payment does not satisfy the expected payment. No state mutated."""

    code = "PAYMENT_REJECTED"
    step = STEP_PAYMENT
    http_status = 400


class TransactionNotFoundError(SettlementError):
    code = "TRANSACTION_NOT_FOUND"
    step = STEP_PAYMENT
    http_status = 404


class UpstreamUnavailableError(SettlementError):
    """A network RPC did not answer in time or returned an error."""

    code = "UPSTREAM_UNAVAILABLE"
    step = STEP_PAYMENT
    http_status = 502


class AlreadySoldError(SettlementError):
    """Collectible already has a purchase record."""

    code = "ALREADY_SOLD"
    step = STEP_AVAILABILITY
    http_status = 409


class OwnershipMismatchError(SettlementError):
    """Custodial holder no longer holds the collectible; transfer not submitted."""

    code = "OWNERSHIP_MISMATCH"
    step = STEP_OWNERSHIP
    http_status = 404


class TransferFailure(SettlementError):
    """Payment was verified but the collectible was not delivered."""

    code = "TRANSFER_FAILED"
    step = STEP_TRANSFER
    http_status = 502


class RecordFailure(SettlementError):
    """Transfer was mined but the purchase record could not be written."""

    code = "RECORD_FAILED"
    step = STEP_RECORD
    http_status = 502


# --- Storage ----------------------------------------------------------------------


class StoreError(SettlementError):
    """Sold-state storage failed."""

    code = "STORE_ERROR"
    step = STEP_RECORD
    http_status = 500


class DuplicatePurchaseError(StoreError):
    """A purchase record already exists for this token id."""

    code = "DUPLICATE_PURCHASE"
    http_status = 409

    def __init__(self, token_id: str) -> None:
        super().__init__(f"Token {token_id} already has a purchase record", details={"tokenId": token_id})
        self.token_id = token_id


class PaymentAlreadyUsedError(StoreError):
    """A purchase record already settles this payment transaction."""

    code = "PAYMENT_ALREADY_USED"
    http_status = 409

    def __init__(self, payment_tx_hash: str) -> None:
        super().__init__(
            f"Payment {payment_tx_hash} already settles another purchase",
            details={"paymentTxHash": payment_tx_hash},
        )
        self.payment_tx_hash = payment_tx_hash


# --- Startup ----------------------------------------------------------------------


class ConfigurationError(SettlementError):
    """Invalid process configuration. Fatal at startup."""

    code = "CONFIGURATION_ERROR"
    step = STEP_STARTUP
    http_status = 503
