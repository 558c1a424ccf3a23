# src/bridgefi/adapters/chain/base.py
"""
Chain Client Interface

Defines what the settlement core needs from the chain. Failures are
reported as ChainError with a ChainErrorKind (duplicate submission,
insufficient balance, reverted, timeout, rpc) so callers branch on the
kind, never on message text.

Files that USE this module:
- bridgefi.adapters.chain.jsonrpc (JsonRpcChainClient implements ChainClient)
- bridgefi.application.onramp, bridgefi.application.offramp
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, Tuple


@dataclass(frozen=True)
class TokenTransfer:
    """One ERC-20 ``Transfer`` event emitted by a transaction; ``amount`` in token units."""
    token_address: str
    from_address: str
    to_address: str
    amount: Decimal


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: int  # 1 success, 0 reverted
    block_number: int
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    confirmations: int = 0
    token_transfers: Tuple[TokenTransfer, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    def transfers_to(self, token_address: str, recipient: str) -> Tuple[TokenTransfer, ...]:
        """Transfers of ``token_address`` that credited ``recipient`` (addresses compared case-insensitively)."""
        token, to = token_address.lower(), recipient.lower()
        return tuple(
            t for t in self.token_transfers
            if t.token_address.lower() == token and t.to_address.lower() == to
        )

    def amount_received(self, token_address: str, recipient: str) -> Decimal:
        return sum((t.amount for t in self.transfers_to(token_address, recipient)), Decimal(0))


class ChainClient(Protocol):
    """Async client bound to the custody wallet and the stablecoin token."""

    custody_address: str
    token_address: str

    async def get_balance(self, address: str) -> int:
        """Native balance in wei."""
        ...

    async def get_token_balance(self, address: str) -> Decimal:
        """Stablecoin balance in token units."""
        ...

    async def estimate_gas(self, to_address: str, amount: Decimal) -> int:
        ...

    async def send_native_transfer(self, to_address: str, amount_wei: int) -> str:
        ...

    async def send_token_transfer(self, to_address: str, amount: Decimal) -> str:
        ...

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int = 1,
                                    timeout: Optional[float] = None) -> TxReceipt:
        """
        Wait until ``tx_hash`` has ``confirmations`` blocks on top.

        Raises:
            ChainError: kind REVERTED if the transaction failed on-chain,
                kind TIMEOUT if it is still pending when ``timeout`` elapses
        """
        ...

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        ...
