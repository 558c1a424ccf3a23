# src/bridgefi/adapters/chain/jsonrpc.py
"""
JSON-RPC Chain Client

Talks Ethereum JSON-RPC to the configured node (Mantle by default) with
``requests`` in a worker thread. Token transfers are plain ERC-20
``transfer`` calls from the custody address. The node (or the custody signer
behind it) signs them with ``eth_signTransaction`` so no key material lives
in this process, and the signed bytes are broadcast with
``eth_sendRawTransaction``. The hash is therefore known before broadcast and
is attached to duplicate-submission and timeout errors.

Receipts carry the decoded ERC-20 ``Transfer`` events so callers can check
what a transaction actually moved.

Node error messages are mapped to ChainErrorKind here and nowhere else.

Files that USE this module:
- bridgefi.app (constructs the chain client)
- tests.test_chain_client (unit tests)

Files that this module USES:
- bridgefi.adapters.chain.base (TokenTransfer, TxReceipt)
- bridgefi.config (RPC URL, token address/decimals, treasury address)
- bridgefi.domain.errors (ChainError, ChainErrorKind)
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import requests

from bridgefi.adapters.chain.base import TokenTransfer, TxReceipt
from bridgefi.config import settings
from bridgefi.domain.errors import ChainError, ChainErrorKind

log = logging.getLogger(__name__)

# ERC-20 function selectors
BALANCE_OF_SELECTOR = "0x70a08231"
TRANSFER_SELECTOR = "0xa9059cbb"

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

GAS_BUFFER_PCT = 20

_DUPLICATE_MARKERS = ("already known", "known transaction", "already imported")
_BALANCE_MARKERS = ("insufficient funds", "exceeds balance", "transfer amount exceeds")
_REVERT_MARKERS = ("execution reverted", "revert")


def classify_rpc_error(message: str) -> ChainErrorKind:
    msg = (message or "").lower()
    if any(m in msg for m in _DUPLICATE_MARKERS):
        return ChainErrorKind.DUPLICATE_SUBMISSION
    if any(m in msg for m in _BALANCE_MARKERS):
        return ChainErrorKind.INSUFFICIENT_BALANCE
    if any(m in msg for m in _REVERT_MARKERS):
        return ChainErrorKind.REVERTED
    return ChainErrorKind.RPC


def _pad_address(address: str) -> str:
    return address.lower().replace("0x", "").rjust(64, "0")


def _pad_uint(value: int) -> str:
    return format(value, "x").rjust(64, "0")


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


class JsonRpcChainClient:
    """ChainClient over raw Ethereum JSON-RPC."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        token_address: Optional[str] = None,
        token_decimals: Optional[int] = None,
        custody_address: Optional[str] = None,
        timeout: Optional[int] = None,
        poll_interval: float = 2.0,
    ):
        self.rpc_url = rpc_url or settings.chain_rpc_url
        self.token_address = token_address or settings.stable_token_address
        self.token_decimals = settings.stable_token_decimals if token_decimals is None else token_decimals
        self.custody_address = custody_address or settings.treasury_address
        self.timeout = timeout or settings.http_timeout_seconds
        self.poll_interval = poll_interval
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Unit conversion
    # ------------------------------------------------------------------
    def to_base_units(self, amount: Decimal) -> int:
        return int(amount * (Decimal(10) ** self.token_decimals))

    def from_base_units(self, value: int) -> Decimal:
        return Decimal(value) / (Decimal(10) ** self.token_decimals)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_balance(self, address: str) -> int:
        result = await self._call("eth_getBalance", [address, "latest"])
        return int(result, 16)

    async def get_token_balance(self, address: str) -> Decimal:
        data = BALANCE_OF_SELECTOR + _pad_address(address)
        result = await self._call("eth_call", [{"to": self.token_address, "data": data}, "latest"])
        return self.from_base_units(int(result or "0x0", 16))

    async def estimate_gas(self, to_address: str, amount: Decimal) -> int:
        tx = self._token_transfer_tx(to_address, amount)
        result = await self._call("eth_estimateGas", [tx])
        return int(result, 16)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        raw = await self._call("eth_getTransactionReceipt", [tx_hash])
        if not raw:
            return None
        head = int(await self._call("eth_blockNumber", []), 16)
        block = int(raw["blockNumber"], 16)
        return TxReceipt(
            tx_hash=raw.get("transactionHash", tx_hash),
            status=int(raw.get("status", "0x0"), 16),
            block_number=block,
            from_address=raw.get("from"),
            to_address=raw.get("to"),
            confirmations=max(0, head - block + 1),
            token_transfers=self._decode_transfers(raw.get("logs") or []),
        )

    def _decode_transfers(self, logs: List[Dict[str, Any]]) -> Tuple[TokenTransfer, ...]:
        """ERC-20 Transfer events in log order; other events are skipped."""
        transfers = []
        for entry in logs:
            topics = entry.get("topics") or []
            if len(topics) != 3 or topics[0].lower() != TRANSFER_TOPIC:
                continue
            try:
                value = int(entry.get("data") or "0x0", 16)
            except ValueError:
                log.warning("Undecodable Transfer data in tx %s", entry.get("transactionHash"))
                continue
            transfers.append(TokenTransfer(
                token_address=(entry.get("address") or "").lower(),
                from_address=_topic_address(topics[1]),
                to_address=_topic_address(topics[2]),
                amount=self.from_base_units(value),
            ))
        return tuple(transfers)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def send_native_transfer(self, to_address: str, amount_wei: int) -> str:
        tx = {"from": self.custody_address, "to": to_address, "value": hex(amount_wei)}
        return await self._sign_and_send(tx)

    async def send_token_transfer(self, to_address: str, amount: Decimal) -> str:
        tx = self._token_transfer_tx(to_address, amount)
        gas = await self.estimate_gas(to_address, amount)
        tx["gas"] = hex(gas * (100 + GAS_BUFFER_PCT) // 100)
        tx_hash = await self._sign_and_send(tx)
        log.info("Token transfer submitted: %s USDC to %s, tx=%s", amount, to_address, tx_hash)
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int = 1,
                                    timeout: Optional[float] = None) -> TxReceipt:
        deadline = time.monotonic() + timeout if timeout else None
        while True:
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt is not None:
                if not receipt.succeeded:
                    raise ChainError(ChainErrorKind.REVERTED, f"Transaction {tx_hash} reverted on-chain", tx_hash)
                if receipt.confirmations >= confirmations:
                    return receipt
            if deadline is not None and time.monotonic() >= deadline:
                raise ChainError(
                    ChainErrorKind.TIMEOUT,
                    f"Transaction {tx_hash} not confirmed within {timeout}s",
                    tx_hash,
                )
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # JSON-RPC
    # ------------------------------------------------------------------
    def _token_transfer_tx(self, to_address: str, amount: Decimal) -> Dict[str, Any]:
        data = TRANSFER_SELECTOR + _pad_address(to_address) + _pad_uint(self.to_base_units(amount))
        return {"from": self.custody_address, "to": self.token_address, "data": data}

    async def _sign_and_send(self, tx: Dict[str, Any]) -> str:
        """
        Sign with the node, then broadcast the raw bytes.

        Raises:
            ChainError: DUPLICATE_SUBMISSION or TIMEOUT from the broadcast carry
                the signed hash, since the transaction may be in the mempool
        """
        signed = await self._call("eth_signTransaction", [tx])
        raw = signed.get("raw") if isinstance(signed, dict) else None
        tx_hash = (signed.get("tx") or {}).get("hash") if isinstance(signed, dict) else None
        if not raw or not tx_hash:
            raise ChainError(ChainErrorKind.RPC, "eth_signTransaction returned no raw transaction or hash")
        try:
            sent_hash = await self._call("eth_sendRawTransaction", [raw])
        except ChainError as e:
            if e.kind in (ChainErrorKind.DUPLICATE_SUBMISSION, ChainErrorKind.TIMEOUT):
                raise ChainError(e.kind, e.message, tx_hash) from e
            raise
        return sent_hash or tx_hash

    async def _call(self, method: str, params: List[Any]) -> Any:
        return await asyncio.to_thread(self._request, method, params)

    def _request(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = requests.post(self.rpc_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.exceptions.Timeout as e:
            raise ChainError(ChainErrorKind.TIMEOUT, f"RPC {method} timeout after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise ChainError(ChainErrorKind.RPC, f"RPC {method} failed: {e}") from e
        except ValueError as e:
            raise ChainError(ChainErrorKind.RPC, f"RPC {method} returned invalid JSON") from e

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            kind = classify_rpc_error(message)
            log.warning("RPC %s error (%s): %s", method, kind.value, message)
            raise ChainError(kind, f"RPC {method} error: {message}")
        return body.get("result") if isinstance(body, dict) else None
