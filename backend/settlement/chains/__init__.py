"""
Network catalog and RPC clients.
"""

from .providers import RPCProviderError, RpcClientManager, call_with_timeout
from .registry import (
    CurrencyDescriptor,
    NetworkDescriptor,
    NetworkId,
    NetworkRegistry,
    NETWORK_TABLE,
    parse_network_id,
)

__all__ = [
    "CurrencyDescriptor",
    "NetworkDescriptor",
    "NetworkId",
    "NetworkRegistry",
    "NETWORK_TABLE",
    "parse_network_id",
    "RPCProviderError",
    "RpcClientManager",
    "call_with_timeout",
]
