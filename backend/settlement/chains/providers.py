"""
RPC client manager: one long-lived AsyncWeb3 per network.

This module provides:
- Client construction at startup (POA middleware where the chain needs it)
- Chain id check per network
- A timeout wrapper used for every RPC suspension point
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, Iterable, TypeVar

from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware

from settlement.chains.registry import NetworkDescriptor, NetworkId, parse_network_id

logger = logging.getLogger(__name__)

# Default timeout for RPC reads
DEFAULT_RPC_TIMEOUT = 20.0  # seconds

T = TypeVar("T")


class RPCProviderError(Exception):
    """RPC call failed or did not answer within its deadline."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """Await an RPC call, converting a missed deadline into RPCProviderError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise RPCProviderError(f"{what} timed out after {timeout:g}s", timed_out=True) from None


def build_web3(descriptor: NetworkDescriptor) -> AsyncWeb3:
    """Create the AsyncWeb3 client for a network descriptor."""
    web3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(descriptor.rpc_url))
    if descriptor.poa:
        web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return web3


class RpcClientManager:
    """
    Holds the RPC clients for every network, keyed by NetworkId.

    Clients are created once; callers never construct their own.
    """

    def __init__(self, clients: Dict[NetworkId, Any], timeout: float = DEFAULT_RPC_TIMEOUT) -> None:
        self._clients = dict(clients)
        self.timeout = timeout

    @classmethod
    def from_descriptors(
        cls,
        descriptors: Iterable[NetworkDescriptor],
        timeout: float = DEFAULT_RPC_TIMEOUT,
    ) -> "RpcClientManager":
        clients = {}
        for descriptor in descriptors:
            clients[descriptor.id] = build_web3(descriptor)
            logger.info(f"{descriptor.name} RPC client created ({descriptor.rpc_url})")
        return cls(clients, timeout=timeout)

    def get(self, network_id: str) -> Any:
        """Return the client for a network.

        Raises:
            RPCProviderError: If no client was created for the network
        """
        key = parse_network_id(network_id)
        client = self._clients.get(key)
        if client is None:
            raise RPCProviderError(f"No RPC client initialized for {key.value}")
        return client

    async def check_chain_id(self, descriptor: NetworkDescriptor) -> bool:
        """Verify the endpoint answers with the expected chain id."""
        web3 = self.get(descriptor.id)
        try:
            chain_id = await call_with_timeout(web3.eth.chain_id, self.timeout, "eth_chainId")
        except Exception as e:
            logger.warning(f"RPC {descriptor.rpc_url} chain id check failed: {e}")
            return False
        if chain_id != descriptor.chain_id:
            logger.warning(
                f"RPC {descriptor.rpc_url} returned wrong chain_id={chain_id}, expected {descriptor.chain_id}"
            )
            return False
        return True

    async def get_status(self, descriptors: Iterable[NetworkDescriptor]) -> Dict[str, bool]:
        """Chain id health of each network, for the health endpoint."""
        descriptors = list(descriptors)
        results = await asyncio.gather(*(self.check_chain_id(d) for d in descriptors))
        return {d.id.value: ok for d, ok in zip(descriptors, results)}

    async def close(self) -> None:
        for network_id, client in self._clients.items():
            provider = getattr(client, "provider", None)
            disconnect = getattr(provider, "disconnect", None)
            if disconnect is None:
                continue
            try:
                await disconnect()
            except Exception as e:
                logger.debug(f"Closing {network_id.value} provider failed: {e}")
