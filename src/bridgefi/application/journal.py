# src/bridgefi/application/journal.py
"""
Transaction Journal - Conversion History for Users and Operators

Append/update sink written by the settlement executors and read by the
history endpoint. Entries are keyed by the quote id they derive from (refund
entries get their own id) and are updated in place on every status change,
never replaced, so the metadata accumulates the counter-rate, counterparty
and error detail an operator needs to reconcile.

Files that USE this module:
- bridgefi.application.onramp (records on-ramp conversions)
- bridgefi.application.offramp (records off-ramp conversions and refunds)
- bridgefi.adapters.http.api (GET /transactions)

Files that this module USES:
- bridgefi.adapters.persistence.base (KeyValueStore)
- bridgefi.domain.models (JournalEntry, JournalPage, JournalType)
"""
from __future__ import annotations

import logging
import secrets
from decimal import Decimal
from typing import Any, Dict, List, Optional

from bridgefi.adapters.persistence.base import KeyValueStore
from bridgefi.domain.models import (
    STABLE_CURRENCY,
    Direction,
    JournalEntry,
    JournalPage,
    JournalType,
    Quote,
    utcnow,
)

logger = logging.getLogger(__name__)

KEY_PREFIX = "journal:"

DEFAULT_LIMIT = 50
MAX_LIMIT = 500

_CAS_RETRIES = 5


class TransactionJournal:
    """History of conversions, queryable by owner address."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def record(
        self,
        type: JournalType,
        owner_address: str,
        amount: Decimal,
        currency: str,
        status: str,
        entry_id: Optional[str] = None,
        chain_tx_hash: Optional[str] = None,
        reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> JournalEntry:
        """
        Create a journal entry.

        If an entry with ``entry_id`` already exists it is updated instead, so a
        retried settlement never produces a second history row.
        """
        entry_id = entry_id or f"{type.value}_{int(utcnow().timestamp() * 1000)}_{secrets.token_hex(6)}"
        now = utcnow()
        entry = JournalEntry(
            id=entry_id,
            type=type,
            owner_address=owner_address,
            amount=amount,
            currency=currency,
            status=status,
            timestamp=now,
            chain_tx_hash=chain_tx_hash,
            reference=reference,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
            version=1,
        )
        if self.store.compare_and_swap(KEY_PREFIX + entry_id, None, entry.to_json()):
            logger.info("Transaction recorded: %s (%s, %s)", entry_id, type.value, status)
            return entry
        return self.update(
            entry_id, status, chain_tx_hash=chain_tx_hash, reference=reference,
            metadata=metadata, owner_address=owner_address,
        )

    def update(
        self,
        entry_id: str,
        status: str,
        chain_tx_hash: Optional[str] = None,
        reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        owner_address: Optional[str] = None,
    ) -> JournalEntry:
        """
        Update an entry's status, merging ``metadata`` into what is there.

        Raises:
            KeyError: If the entry does not exist
        """
        for _ in range(_CAS_RETRIES):
            current = self.get(entry_id)
            if current is None:
                raise KeyError(f"Transaction {entry_id} not found")
            expected = current.version
            current.status = status
            if chain_tx_hash:
                current.chain_tx_hash = chain_tx_hash
            if reference:
                current.reference = reference
            if owner_address:
                current.owner_address = owner_address
            if metadata:
                current.metadata = {**current.metadata, **metadata}
            current.updated_at = utcnow()
            current.version = expected + 1
            if self.store.compare_and_swap(KEY_PREFIX + entry_id, expected, current.to_json()):
                logger.info("Transaction updated: %s -> %s", entry_id, status)
                return current
        raise RuntimeError(f"Transaction {entry_id} is being modified concurrently")

    def get(self, entry_id: str) -> Optional[JournalEntry]:
        raw = self.store.get(KEY_PREFIX + entry_id)
        return JournalEntry.from_json(raw) if raw is not None else None

    def _entries(self) -> List[JournalEntry]:
        return [JournalEntry.from_json(v) for v in self.store.values(KEY_PREFIX)]

    @staticmethod
    def _page(entries: List[JournalEntry], limit: int, offset: int) -> JournalPage:
        limit = max(1, min(int(limit), MAX_LIMIT))
        offset = max(0, int(offset))
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return JournalPage(entries=entries[offset:offset + limit], total=len(entries), limit=limit, offset=offset)

    def query(
        self,
        owner_address: str,
        type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
    ) -> JournalPage:
        """
        Entries of one owner, newest first.

        Args:
            owner_address: Owner wallet address (case-insensitive)
            type: Optional filter ("onramp", "offramp", "refund")
            status: Optional filter ("pending", "processing", "completed", "failed")
            limit: Page size
            offset: Number of entries to skip
        """
        owner = owner_address.lower()
        entries = [e for e in self._entries() if (e.owner_address or "").lower() == owner]
        if type:
            entries = [e for e in entries if e.type.value == type]
        if status:
            entries = [e for e in entries if e.status == status]
        return self._page(entries, limit, offset)

    def all_entries(self, limit: int = 100, offset: int = 0) -> JournalPage:
        """Every entry, newest first (operator listing)."""
        return self._page(self._entries(), limit, offset)

    def stats(self, owner_address: Optional[str] = None) -> Dict[str, Any]:
        """Per-direction counts by status, optionally for one owner."""
        entries = self._entries()
        if owner_address:
            owner = owner_address.lower()
            entries = [e for e in entries if (e.owner_address or "").lower() == owner]

        def _count(kind: JournalType) -> Dict[str, int]:
            of_kind = [e for e in entries if e.type is kind]
            return {
                "total": len(of_kind),
                "completed": sum(1 for e in of_kind if e.status == "completed"),
                "pending": sum(1 for e in of_kind if e.status == "pending"),
                "processing": sum(1 for e in of_kind if e.status == "processing"),
                "failed": sum(1 for e in of_kind if e.status == "failed"),
            }

        return {
            "total": len(entries),
            "onramp": _count(JournalType.ONRAMP),
            "offramp": _count(JournalType.OFFRAMP),
            "refund": _count(JournalType.REFUND),
        }

    def sync_quote(
        self,
        quote: Quote,
        status: str,
        chain_tx_hash: Optional[str] = None,
        reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> JournalEntry:
        """
        Mirror a quote's progress into its journal entry, creating it on first use.

        The entry id is the quote id; a new entry is seeded with the quote's
        counter-rate and counterparty so history survives the quote's working state.
        """
        if self.get(quote.id) is None:
            return self.record(
                JournalType(quote.direction.value),
                quote.owner_address or "",
                quote.stable_amount,
                STABLE_CURRENCY,
                status,
                entry_id=quote.id,
                chain_tx_hash=chain_tx_hash or quote.chain_tx_hash,
                reference=reference or quote.id,
                metadata={**quote_metadata(quote), **(metadata or {})},
            )
        return self.update(
            quote.id, status, chain_tx_hash=chain_tx_hash, reference=reference,
            metadata=metadata, owner_address=quote.owner_address,
        )


def quote_metadata(quote: Quote) -> Dict[str, Any]:
    """Journal metadata describing a quote's pricing and counterparty."""
    meta: Dict[str, Any] = {
        "ngnAmount": float(quote.fiat_amount),
        "usdcAmount": float(quote.stable_amount),
        "exchangeRate": float(quote.rate_at_creation),
    }
    if quote.direction is Direction.OFFRAMP:
        meta["bankAccount"] = quote.counterparty.get("bank_account")
        meta["bankCode"] = quote.counterparty.get("bank_code")
        meta["accountName"] = quote.counterparty.get("account_name")
    if quote.reconstructed:
        meta["reconstructed"] = True
    return meta
