"""
PaymentVerifier - independent verification of a claimed payment.

Given a network and a transaction hash reported by the buyer, this service
reads the transaction and its receipt from that network and decides whether
it is a successful, sufficient payment from the buyer to the receiving
wallet:

1. Transaction and receipt exist
2. Receipt status is success
3. Sender is the buyer, recipient is the receiving wallet
4. Amount is within tolerance of the expected amount
   - native coin: transaction value
   - ERC-20 token: Transfer(from, to, value) logs emitted by the token contract
5. Confirmation count is reported (and gated when a minimum is configured)

Every failing check is reported; nothing is coerced to valid.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound

from settlement.chains.providers import RpcClientManager, call_with_timeout
from settlement.chains.registry import CurrencyDescriptor, NetworkRegistry
from settlement.errors import TransactionNotFoundError, UpstreamUnavailableError
from settlement.pricing.amounts import Amount

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.02")  # 2%

TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")

# keccak256("Transfer(address,address,uint256)")
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

REASON_INVALID_REFERENCE = "invalid transaction reference"
REASON_NOT_FOUND = "transaction not found"
REASON_RPC_UNAVAILABLE = "rpc unavailable"
REASON_FAILED = "transaction failed"
REASON_SENDER = "sender mismatch"
REASON_RECIPIENT = "recipient mismatch"
REASON_TOKEN_TRANSFER = "token transfer not found"
REASON_TOKEN_CONTRACT = "token contract mismatch"
REASON_AMOUNT = "amount out of tolerance"
REASON_CONFIRMATIONS = "insufficient confirmations"


@dataclass
class ExpectedPayment:
    """What a valid payment must look like."""
    buyer: str
    receiving_wallet: str
    amount: Amount
    currency: CurrencyDescriptor


@dataclass
class PaymentChecks:
    exists: bool = False
    confirmed: bool = False
    sender: bool = False
    recipient: bool = False
    amount: bool = False
    confirmations: bool = False

    def all_passed(self) -> bool:
        return all(
            (self.exists, self.confirmed, self.sender, self.recipient, self.amount, self.confirmations)
        )


@dataclass
class PaymentVerificationResult:
    """Result of payment verification."""
    is_valid: bool
    tx_hash: str
    network: str
    checks: PaymentChecks = field(default_factory=PaymentChecks)
    confirmations: int = 0
    block_number: Optional[int] = None
    from_address: str = ""
    to_address: str = ""
    actual_amount: Optional[Amount] = None
    expected_amount: Optional[Amount] = None
    failed_reasons: List[str] = field(default_factory=list)

    @property
    def error_message(self) -> Optional[str]:
        return self.failed_reasons[0] if self.failed_reasons else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.is_valid,
            "txHash": self.tx_hash,
            "network": self.network,
            "checks": {
                "exists": self.checks.exists,
                "confirmed": self.checks.confirmed,
                "fromAddress": self.checks.sender,
                "toAddress": self.checks.recipient,
                "amount": self.checks.amount,
                "confirmations": self.checks.confirmations,
            },
            "confirmations": self.confirmations,
            "blockNumber": self.block_number,
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.actual_amount.value) if self.actual_amount else None,
            "expected": str(self.expected_amount.value) if self.expected_amount else None,
            "currency": self.expected_amount.symbol if self.expected_amount else None,
            "reason": self.error_message,
            "failedReasons": list(self.failed_reasons),
        }


def _lower(address: Optional[str]) -> str:
    return (address or "").lower()


def _to_hex(value: Any) -> str:
    """Normalize HexBytes / bytes / str to a lower-case 0x string."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value or "").lower()
    return text if text.startswith("0x") else "0x" + text


def _topic_address(topic: Any) -> str:
    return "0x" + _to_hex(topic)[-40:]


def receipt_succeeded(status: Any) -> bool:
    """Normalize the chain-specific receipt status encoding."""
    if isinstance(status, bool):
        return status
    if isinstance(status, int):
        return status == 1
    if isinstance(status, str):
        try:
            return int(status, 16 if status.lower().startswith("0x") else 10) == 1
        except ValueError:
            return False
    return False


def decode_erc20_transfers(receipt: Any, token_address: str) -> List[Dict[str, Any]]:
    """Extract Transfer(from, to, value) events emitted by `token_address`."""
    transfers = []
    for log in receipt.get("logs") or []:
        if _lower(log.get("address")) != _lower(token_address):
            continue
        topics = log.get("topics") or []
        if len(topics) != 3 or _to_hex(topics[0]) != ERC20_TRANSFER_TOPIC:
            continue
        data = _to_hex(log.get("data"))
        transfers.append({
            "from": _topic_address(topics[1]),
            "to": _topic_address(topics[2]),
            "value": int(data, 16) if data != "0x" else 0,
        })
    return transfers


def to_json_safe(value: Any) -> Any:
    """Render web3 AttributeDicts / HexBytes as plain JSON data."""
    if value is None:
        return None
    return json.loads(Web3.to_json(value))


class PaymentVerifier:
    """Verifies claimed payments against the payment network's ledger."""

    def __init__(
        self,
        registry: NetworkRegistry,
        clients: RpcClientManager,
        tolerance: Decimal = DEFAULT_TOLERANCE,
        min_confirmations: int = 0,
        read_timeout: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.clients = clients
        self.tolerance = Decimal(tolerance)
        self.min_confirmations = min_confirmations
        self.read_timeout = read_timeout if read_timeout is not None else clients.timeout

    async def _read(self, awaitable, what: str):
        return await call_with_timeout(awaitable, self.read_timeout, what)

    async def verify(self, network_id: str, tx_hash: str, expected: ExpectedPayment) -> PaymentVerificationResult:
        """Verify a payment transaction.

        Args:
            network_id: Payment network
            tx_hash: 0x-prefixed transaction hash claimed by the buyer
            expected: Buyer, receiving wallet, amount and currency to check against

        Returns:
            PaymentVerificationResult; RPC failures are reported as invalid results
        """
        result = PaymentVerificationResult(
            is_valid=False,
            tx_hash=tx_hash,
            network=getattr(network_id, "value", network_id),
            expected_amount=expected.amount,
        )
        logger.info(f"Verifying payment on {network_id}: {tx_hash}")

        if not TX_HASH_PATTERN.match(tx_hash or ""):
            result.failed_reasons.append(REASON_INVALID_REFERENCE)
            return result

        web3 = self.clients.get(network_id)

        try:
            tx = await self._read(web3.eth.get_transaction(tx_hash), "eth_getTransactionByHash")
            receipt = await self._read(web3.eth.get_transaction_receipt(tx_hash), "eth_getTransactionReceipt")
        except TransactionNotFound:
            tx = receipt = None
        except Exception as e:
            logger.error(f"Payment lookup failed on {network_id} for {tx_hash}: {e}")
            result.failed_reasons.append(REASON_RPC_UNAVAILABLE)
            return result

        if not tx or not receipt:
            result.failed_reasons.append(REASON_NOT_FOUND)
            logger.warning(f"Payment {tx_hash} not found on {network_id}")
            return result

        checks = result.checks
        checks.exists = True
        result.from_address = tx.get("from") or ""
        result.block_number = receipt.get("blockNumber") or tx.get("blockNumber")

        checks.confirmed = receipt_succeeded(receipt.get("status"))
        if not checks.confirmed:
            result.failed_reasons.append(REASON_FAILED)

        checks.sender = _lower(tx.get("from")) == _lower(expected.buyer)
        if not checks.sender:
            result.failed_reasons.append(REASON_SENDER)

        if expected.currency.is_native:
            self._check_native(tx, expected, result)
        else:
            self._check_token(tx, receipt, expected, result)

        await self._check_confirmations(web3, network_id, result)

        result.is_valid = checks.all_passed() and not result.failed_reasons
        if result.is_valid:
            logger.info(
                f"Payment verified: {result.actual_amount} from {result.from_address} "
                f"({result.confirmations} confirmations)"
            )
        else:
            logger.warning(f"Payment {tx_hash} rejected: {', '.join(result.failed_reasons)}")
        return result

    def _check_native(self, tx: Any, expected: ExpectedPayment, result: PaymentVerificationResult) -> None:
        checks = result.checks
        result.to_address = tx.get("to") or ""
        checks.recipient = _lower(tx.get("to")) == _lower(expected.receiving_wallet)
        if not checks.recipient:
            result.failed_reasons.append(REASON_RECIPIENT)

        actual = Amount.from_base_units(int(tx.get("value") or 0), expected.currency.symbol, expected.currency.decimals)
        result.actual_amount = actual
        checks.amount = actual.within_tolerance(expected.amount, self.tolerance)
        if not checks.amount:
            result.failed_reasons.append(REASON_AMOUNT)
        logger.info(f"Amount check (native): expected {expected.amount.value}, actual {actual.value}")

    def _check_token(
        self, tx: Any, receipt: Any, expected: ExpectedPayment, result: PaymentVerificationResult
    ) -> None:
        checks = result.checks
        currency = expected.currency
        # the payment must be a call on the token contract itself
        if _lower(tx.get("to")) != _lower(currency.contract_address):
            result.failed_reasons.append(REASON_TOKEN_CONTRACT)
        transfers = decode_erc20_transfers(receipt, currency.contract_address or "")
        if not transfers:
            result.failed_reasons.append(REASON_TOKEN_TRANSFER)
            return

        to_wallet = [t for t in transfers if t["to"] == _lower(expected.receiving_wallet)]
        checks.recipient = bool(to_wallet)
        if not checks.recipient:
            result.to_address = transfers[0]["to"]
            result.failed_reasons.append(REASON_RECIPIENT)
            return
        result.to_address = to_wallet[0]["to"]

        paid = sum(t["value"] for t in to_wallet if t["from"] == _lower(expected.buyer))
        actual = Amount.from_base_units(paid, currency.symbol, currency.decimals)
        result.actual_amount = actual
        checks.amount = actual.within_tolerance(expected.amount, self.tolerance)
        if not checks.amount:
            result.failed_reasons.append(REASON_AMOUNT)
        logger.info(f"Amount check (token {currency.symbol}): expected {expected.amount.value}, actual {actual.value}")

    async def _check_confirmations(self, web3: Any, network_id: str, result: PaymentVerificationResult) -> None:
        if result.block_number is None:
            result.checks.confirmations = self.min_confirmations == 0
            if not result.checks.confirmations:
                result.failed_reasons.append(REASON_CONFIRMATIONS)
            return
        try:
            current = await self._read(web3.eth.block_number, "eth_blockNumber")
            result.confirmations = max(0, int(current) - int(result.block_number))
        except Exception as e:
            logger.warning(f"Could not read block height on {network_id}: {e}")
            if self.min_confirmations > 0:
                result.failed_reasons.append(REASON_RPC_UNAVAILABLE)
                return
        result.checks.confirmations = result.confirmations >= self.min_confirmations
        if not result.checks.confirmations:
            result.failed_reasons.append(REASON_CONFIRMATIONS)

    async def get_transaction_status(self, network_id: str, tx_hash: str) -> Dict[str, Any]:
        """Raw transaction + receipt + explorer URL for client-side polling.

        Raises:
            ValidationError: Unknown network or malformed hash
            TransactionNotFoundError: Transaction unknown to the network
            UpstreamUnavailableError: RPC failed or timed out
        """
        network = self.registry.get_network(network_id)
        if not TX_HASH_PATTERN.match(tx_hash or ""):
            raise TransactionNotFoundError(f"Invalid transaction hash format: {tx_hash}")
        web3 = self.clients.get(network.id)

        try:
            tx = await self._read(web3.eth.get_transaction(tx_hash), "eth_getTransactionByHash")
        except TransactionNotFound:
            raise TransactionNotFoundError(f"Transaction {tx_hash} not found on {network.name}") from None
        except Exception as e:
            raise UpstreamUnavailableError(f"Failed to check transaction on {network.name}: {e}") from e

        try:
            receipt = await self._read(web3.eth.get_transaction_receipt(tx_hash), "eth_getTransactionReceipt")
        except TransactionNotFound:
            receipt = None  # pending
        except Exception as e:
            raise UpstreamUnavailableError(f"Failed to check receipt on {network.name}: {e}") from e

        return {
            "transaction": to_json_safe(tx),
            "receipt": to_json_safe(receipt),
            "status": "pending" if receipt is None else ("success" if receipt_succeeded(receipt.get("status")) else "failed"),
            "explorerUrl": network.tx_url(tx_hash),
        }
