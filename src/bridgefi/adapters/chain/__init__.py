# src/bridgefi/adapters/chain/__init__.py
"""
Chain Client Adapters

This package contains the blockchain client used to move USDC out of the
custody (treasury) wallet and to follow users' custody-bound transfers.
"""

from bridgefi.adapters.chain.base import ChainClient, TokenTransfer, TxReceipt
from bridgefi.adapters.chain.jsonrpc import JsonRpcChainClient

__all__ = [
    "ChainClient",
    "TokenTransfer",
    "TxReceipt",
    "JsonRpcChainClient",
]
