"""
AssetTransferService: ERC-721 ownership transfer on the settlement network.

The custodial account holds sellable collectibles and signs transfers. One
instance exists per settlement network; its lock serializes submissions so
the custodial account never has two transactions in flight (nonce safety).

Failures are classified into user-presentable codes instead of raw ledger
errors: insufficient funds for fees, ownership mismatch, on-chain revert,
fee estimation failure, confirmation timeout, submission failure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from settlement.chains.providers import RPCProviderError, call_with_timeout
from settlement.chains.registry import NetworkDescriptor, NetworkId
from settlement.errors import ConfigurationError
from settlement.payment.verifier import receipt_succeeded
from settlement.pricing.amounts import Amount

from .gas import GasStrategy, GasStrategyError

logger = logging.getLogger(__name__)

DEFAULT_READ_TIMEOUT = 20.0  # seconds
DEFAULT_CONFIRMATION_TIMEOUT = 180.0  # seconds
INITIAL_POLL_INTERVAL = 1.0  # seconds, doubled after each empty poll
MAX_POLL_INTERVAL = 16.0

# Per-network tip bounds in gwei: (min, default, max)
PRIORITY_FEE_BOUNDS: Dict[NetworkId, tuple] = {
    NetworkId.POLYGON: (30.0, 30.0, 500.0),
    NetworkId.ETHEREUM: (0.01, 1.0, 10.0),
}


# --- Minimal ABI ------------------------------------------------------------------

ERC721_ABI: List[Dict] = [
    {
        "constant": True,
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"name": "", "type": "address"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
        ],
        "name": "transferFrom",
        "outputs": [],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
        ],
        "name": "safeTransferFrom",
        "outputs": [],
        "type": "function",
    },
]


# --- Results ----------------------------------------------------------------------


class TransferErrorCode(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    OWNERSHIP_MISMATCH = "ownership_mismatch"
    REVERTED = "reverted"
    FEE_ESTIMATION_FAILED = "fee_estimation_failed"
    TIMEOUT = "timeout"
    SUBMISSION_FAILED = "submission_failed"
    RPC_UNAVAILABLE = "rpc_unavailable"


TRANSFER_ERROR_MESSAGES: Dict[TransferErrorCode, str] = {
    TransferErrorCode.INSUFFICIENT_FUNDS: "Custodial wallet has insufficient funds for the network fee",
    TransferErrorCode.OWNERSHIP_MISMATCH: "Collectible is no longer held by the custodial wallet",
    TransferErrorCode.REVERTED: "Transfer was reverted by the collectible contract",
    TransferErrorCode.FEE_ESTIMATION_FAILED: "Could not estimate the network fee for the transfer",
    TransferErrorCode.TIMEOUT: "Transfer was submitted but not confirmed in time",
    TransferErrorCode.SUBMISSION_FAILED: "Transfer could not be submitted to the settlement network",
    TransferErrorCode.RPC_UNAVAILABLE: "Settlement network is not reachable",
}


@dataclass
class TransferResult:
    """Outcome of one ownership transfer attempt."""
    success: bool
    token_id: str
    from_address: str
    to_address: str
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error_code: Optional[TransferErrorCode] = None
    error_message: Optional[str] = None

    @classmethod
    def failed(
        cls,
        code: TransferErrorCode,
        token_id: str,
        from_address: str,
        to_address: str,
        tx_hash: Optional[str] = None,
    ) -> "TransferResult":
        return cls(
            success=False,
            token_id=token_id,
            from_address=from_address,
            to_address=to_address,
            tx_hash=tx_hash,
            error_code=code,
            error_message=TRANSFER_ERROR_MESSAGES[code],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "tokenId": self.token_id,
            "from": self.from_address,
            "to": self.to_address,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "errorCode": self.error_code.value if self.error_code else None,
            "error": self.error_message,
        }


def classify_transfer_error(exc: BaseException) -> TransferErrorCode:
    """Map a raw ledger/RPC error to a transfer error code."""
    message = str(exc).lower()
    if "not own" in message or "incorrect owner" in message or "not owner" in message:
        return TransferErrorCode.OWNERSHIP_MISMATCH
    if "insufficient funds" in message:
        return TransferErrorCode.INSUFFICIENT_FUNDS
    if isinstance(exc, ContractLogicError) or "revert" in message:
        return TransferErrorCode.REVERTED
    if isinstance(exc, RPCProviderError) and exc.timed_out:
        return TransferErrorCode.TIMEOUT
    return TransferErrorCode.SUBMISSION_FAILED


def _token_id_int(token_id: Union[int, str]) -> int:
    return int(str(token_id).strip())


# --- Service ----------------------------------------------------------------------


class AssetTransferService:
    """
    Transfers collectibles from the custodial holder to buyers.

    Transfer sequence (under the submission lock):
    - re-read ownerOf(tokenId); abort if the custodial holder no longer owns it
    - estimate gas and EIP-1559 fees; check the fee is affordable
    - sign, submit, wait for the receipt with exponential backoff
    """

    def __init__(
        self,
        web3: Any,
        network: NetworkDescriptor,
        contract_address: str,
        private_key: str,
        expected_holder: Optional[str] = None,
        gas_strategy: Optional[GasStrategy] = None,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        account = Account.from_key(private_key)
        if expected_holder and expected_holder.lower() != account.address.lower():
            raise ConfigurationError(
                f"SERVER_WALLET_ADDRESS {expected_holder} does not match the signing key ({account.address})"
            )

        self.web3 = web3
        self.network = network
        self._private_key = private_key
        self.custodial_address: str = account.address
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = web3.eth.contract(address=self.contract_address, abi=ERC721_ABI)

        if gas_strategy is None:
            min_tip, default_tip, max_tip = PRIORITY_FEE_BOUNDS.get(network.id, (0.01, 0.1, 10.0))
            gas_strategy = GasStrategy(
                web3,
                default_priority_fee_gwei=default_tip,
                min_priority_fee_gwei=min_tip,
                max_priority_fee_gwei=max_tip,
                timeout=read_timeout,
            )
        self.gas = gas_strategy
        self.read_timeout = read_timeout
        self.confirmation_timeout = confirmation_timeout
        self._sleep = sleep
        self._submission_lock = asyncio.Lock()

        logger.info(f"Asset transfer service on {network.name}")
        logger.info(f"Contract: {self.contract_address}")
        logger.info(f"Custodial wallet: {self.custodial_address}")

    async def _read(self, awaitable, what: str):
        return await call_with_timeout(awaitable, self.read_timeout, what)

    # --- Read methods -----------------------------------------------------------

    async def owner_of(self, token_id: Union[int, str]) -> str:
        """Current on-chain owner of a collectible."""
        owner = await self._read(
            self.contract.functions.ownerOf(_token_id_int(token_id)).call(),
            "ownerOf",
        )
        return Web3.to_checksum_address(owner)

    async def is_held(self, token_id: Union[int, str]) -> bool:
        """True if the custodial holder currently owns the collectible."""
        owner = await self.owner_of(token_id)
        held = owner.lower() == self.custodial_address.lower()
        logger.info(f"Token {token_id} owner: {owner} (custodial: {held})")
        return held

    async def estimate_transfer_fee(self, token_id: Union[int, str], to_address: str) -> Amount:
        """Upper bound of the network fee for transferring `token_id` to `to_address`.

        Raises:
            GasStrategyError: If estimation fails
        """
        func = self.contract.functions.safeTransferFrom(
            self.custodial_address, Web3.to_checksum_address(to_address), _token_id_int(token_id)
        )
        gas_limit = await self.gas.estimate_gas_limit(func, {"from": self.custodial_address, "value": 0})
        params = await self.gas.calculate_gas_params(gas_limit)
        native = self.network.native_currency
        return Amount.from_base_units(params.max_cost_wei, native.symbol, native.decimals)

    # --- Transfer -----------------------------------------------------------------

    async def transfer(self, token_id: Union[int, str], to_address: str) -> TransferResult:
        """Transfer a collectible to the buyer.

        Returns:
            TransferResult; classified failures are returned, not raised
        """
        token_key = str(token_id)
        sender = self.custodial_address
        recipient = Web3.to_checksum_address(to_address)

        def failed(code: TransferErrorCode, tx_hash: Optional[str] = None) -> TransferResult:
            logger.error(f"Transfer of token {token_key} failed: {code.value}" + (f" (tx {tx_hash})" if tx_hash else ""))
            return TransferResult.failed(code, token_key, sender, recipient, tx_hash)

        async with self._submission_lock:
            logger.info(f"Initiating transfer of token {token_key} to {recipient}")

            try:
                held = await self.is_held(token_key)
            except Exception as e:
                logger.error(f"Ownership check for token {token_key} failed: {e}")
                code = classify_transfer_error(e)
                if code is TransferErrorCode.SUBMISSION_FAILED or code is TransferErrorCode.TIMEOUT:
                    code = TransferErrorCode.RPC_UNAVAILABLE
                return failed(code)
            if not held:
                return failed(TransferErrorCode.OWNERSHIP_MISMATCH)

            func = self.contract.functions.safeTransferFrom(sender, recipient, _token_id_int(token_key))
            try:
                nonce = await self._read(self.web3.eth.get_transaction_count(sender, "pending"), "eth_getTransactionCount")
                tx, gas_params = await self.gas.estimate_and_build_tx(
                    func, sender, {"nonce": nonce, "chainId": self.network.chain_id}
                )
            except GasStrategyError as e:
                code = classify_transfer_error(e.__cause__ or e)
                if code not in (TransferErrorCode.INSUFFICIENT_FUNDS, TransferErrorCode.REVERTED,
                                TransferErrorCode.OWNERSHIP_MISMATCH):
                    code = TransferErrorCode.FEE_ESTIMATION_FAILED
                logger.error(f"Fee estimation for token {token_key} failed: {e}")
                return failed(code)
            except Exception as e:
                logger.error(f"Nonce lookup for {sender} failed: {e}")
                return failed(TransferErrorCode.RPC_UNAVAILABLE)

            try:
                balance = await self._read(self.web3.eth.get_balance(sender), "eth_getBalance")
            except Exception as e:
                logger.error(f"Balance lookup for {sender} failed: {e}")
                return failed(TransferErrorCode.RPC_UNAVAILABLE)
            if int(balance) < gas_params.max_cost_wei:
                logger.error(f"Custodial balance {balance} wei below max fee {gas_params.max_cost_wei} wei")
                return failed(TransferErrorCode.INSUFFICIENT_FUNDS)

            signed = self.web3.eth.account.sign_transaction(tx, private_key=self._private_key)
            raw_tx = getattr(signed, "raw_transaction", getattr(signed, "rawTransaction", None))
            # the hash is fixed by the signature, before broadcast
            tx_hash = Web3.to_hex(signed.hash)
            try:
                sent = await self._read(self.web3.eth.send_raw_transaction(raw_tx), "eth_sendRawTransaction")
            except Exception as e:
                logger.error(f"Submission of token {token_key} transfer failed: {e}")
                return failed(classify_transfer_error(e), tx_hash)

            if Web3.to_hex(sent) != tx_hash:
                logger.warning(f"Node returned {Web3.to_hex(sent)} for signed transaction {tx_hash}")
                tx_hash = Web3.to_hex(sent)
            logger.info(f"Transaction sent: {tx_hash}, waiting for confirmation")

            try:
                receipt = await self._wait_for_receipt(tx_hash)
            except RPCProviderError:
                return failed(TransferErrorCode.TIMEOUT, tx_hash)

            if not receipt_succeeded(receipt.get("status")):
                return failed(TransferErrorCode.REVERTED, tx_hash)

            block_number = receipt.get("blockNumber")
            logger.info(f"Transfer of token {token_key} confirmed in block {block_number}")
            return TransferResult(
                success=True,
                token_id=token_key,
                from_address=sender,
                to_address=recipient,
                tx_hash=tx_hash,
                block_number=block_number,
                gas_used=receipt.get("gasUsed"),
            )

    async def _wait_for_receipt(self, tx_hash: str) -> Any:
        """
        Poll for the receipt with exponential backoff until the deadline.

        Raises:
            RPCProviderError: timed_out=True when the deadline passes
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirmation_timeout
        interval = INITIAL_POLL_INTERVAL
        while True:
            try:
                receipt = await self._read(self.web3.eth.get_transaction_receipt(tx_hash), "eth_getTransactionReceipt")
                if receipt is not None:
                    return receipt
            except TransactionNotFound:
                pass
            except Exception as e:
                logger.warning(f"Receipt poll for {tx_hash} failed: {e}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise RPCProviderError(
                    f"Transaction {tx_hash} not confirmed within {self.confirmation_timeout:g}s",
                    timed_out=True,
                )
            await self._sleep(min(interval, remaining))
            interval = min(interval * 2, MAX_POLL_INTERVAL)

    def explorer_url(self, tx_hash: str) -> str:
        return self.network.tx_url(tx_hash)
