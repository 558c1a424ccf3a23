# src/bridgefi/application/settlement.py
"""
Settlement Executor Base - Shared Plumbing for Both Directions

Holds what the on-ramp and off-ramp executors have in common: per-quote
locks that serialize settlement inside the process, single submission of a
custody transfer, the bounded wait for on-chain confirmation, and recording
a terminal failure on both the quote and its journal entry.

A lock lives only while some caller holds or waits for it.

Files that USE this module:
- bridgefi.application.onramp (OnrampExecutor extends SettlementExecutor)
- bridgefi.application.offramp (OfframpExecutor extends SettlementExecutor)

Files that this module USES:
- bridgefi.application.quote_ledger (status transitions)
- bridgefi.application.journal (history updates)
- bridgefi.adapters.chain.base (ChainClient, TxReceipt)
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Dict, Optional

from bridgefi.adapters.chain.base import ChainClient, TxReceipt
from bridgefi.adapters.payments.base import PaymentGateway
from bridgefi.application.journal import TransactionJournal
from bridgefi.application.quote_ledger import QuoteLedger
from bridgefi.domain.errors import (
    ChainError,
    ChainErrorKind,
    ConfirmationPendingError,
    QuoteAlreadyProcessedError,
)
from bridgefi.domain.models import Quote, QuoteStatus, utcnow

logger = logging.getLogger(__name__)

FAILED_STAGE = "failed"

# Send failures after which the transfer may still be in the mempool
AMBIGUOUS_SEND_KINDS = (ChainErrorKind.DUPLICATE_SUBMISSION, ChainErrorKind.TIMEOUT)


class SettlementExecutor:
    """Base class of the per-direction settlement executors."""

    def __init__(
        self,
        ledger: QuoteLedger,
        journal: TransactionJournal,
        gateway: PaymentGateway,
        chain: ChainClient,
        confirmations: int = 1,
        confirmation_timeout: float = 120.0,
        confirmation_max_waits: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.journal = journal
        self.gateway = gateway
        self.chain = chain
        self.confirmations = confirmations
        self.confirmation_timeout = confirmation_timeout
        self.confirmation_max_waits = confirmation_max_waits
        self.clock = clock or utcnow
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def lock_for(self, quote_id: str) -> AsyncIterator[None]:
        """Hold the in-process lock serializing settlement of one quote."""
        lock = self._locks.get(quote_id)
        if lock is None:
            lock = self._locks[quote_id] = asyncio.Lock()
        self._lock_users[quote_id] = self._lock_users.get(quote_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users.pop(quote_id) - 1
            if remaining:
                self._lock_users[quote_id] = remaining
            else:
                del self._locks[quote_id]

    async def submit_transfer(self, to_address: str, amount: Decimal, reference: str) -> str:
        """
        Send USDC from custody exactly once.

        A duplicate or timed-out broadcast that carries the signed hash is
        followed by that hash instead of being resubmitted.

        Raises:
            ChainError: Any other send failure, including an ambiguous kind
                that came back without a hash
        """
        try:
            return await self.chain.send_token_transfer(to_address, amount)
        except ChainError as e:
            if e.kind in AMBIGUOUS_SEND_KINDS and e.tx_hash:
                logger.warning("Transfer for %s already in flight as %s (%s)", reference, e.tx_hash, e.kind.value)
                return e.tx_hash
            raise

    async def wait_for_confirmation(self, tx_hash: str, reference: str) -> TxReceipt:
        """
        Wait for ``tx_hash`` to reach the required confirmations.

        A still-pending transaction is waited on again, never resubmitted.

        Raises:
            ChainError: kind REVERTED, or any non-timeout chain failure
            ConfirmationPendingError: Still unconfirmed after every wait
        """
        for attempt in range(1, self.confirmation_max_waits + 1):
            try:
                return await self.chain.wait_for_confirmation(
                    tx_hash, self.confirmations, self.confirmation_timeout,
                )
            except ChainError as e:
                if e.kind is not ChainErrorKind.TIMEOUT:
                    raise
                logger.warning(
                    "Transaction %s for %s still pending (wait %d/%d)",
                    tx_hash, reference, attempt, self.confirmation_max_waits,
                )
        raise ConfirmationPendingError(
            f"Transaction {tx_hash} not confirmed after {self.confirmation_max_waits} waits; "
            "it may still confirm, retry later",
            reference,
            tx_hash,
        )

    def expiry_metadata(self, quote: Quote) -> Dict[str, Any]:
        """Journal annotation for settling a quote past its expiry."""
        if not quote.is_expired(self.clock()):
            return {}
        logger.warning(
            "Settling expired quote %s (expired at %s)", quote.id, quote.expires_at.isoformat(),
        )
        return {"expired_at_settlement": True}

    def fail(self, quote_id: str, message: str, **metadata: Any) -> Quote:
        """
        Move a quote to failed and record the reason in its journal entry.

        A quote that is already terminal is left untouched.
        """
        try:
            quote = self.ledger.transition(quote_id, QuoteStatus.FAILED, stage=FAILED_STAGE, error=message)
        except QuoteAlreadyProcessedError as e:
            logger.warning("Not marking %s failed, already terminal: %s", quote_id, e.message)
            return self.ledger.require_quote(quote_id)
        logger.error("Settlement of %s failed: %s", quote_id, message)
        self.journal.sync_quote(quote, QuoteStatus.FAILED.value, metadata={"error": message, **metadata})
        return quote
