# src/bridgefi/domain/models.py
"""
Domain Models - Pure Business Objects

This module contains domain models representing core business concepts:
- Exchange rates with provenance and freshness
- Quotes (priced, time-bounded conversion intents) and their states
- Transaction journal entries
- Settlement and refund results

Monetary values are ``Decimal``. Records that go through a key-value store
expose ``to_json``/``from_json``; projections for HTTP callers use the
camelCase field names of the public API.

Files that USE this module:
- bridgefi.application.* (all services use domain models)
- bridgefi.adapters.* (adapters create and return domain models)
- tests.* (tests use domain models for test data)

Files that this module USES:
- None (pure domain layer, no external dependencies)
"""

from __future__ import annotations  # Enable postponed evaluation of annotations

from dataclasses import asdict, dataclass, field, replace  # Immutable records and copy-with-changes
from datetime import datetime, timezone  # Timestamps (always UTC)
from decimal import ROUND_DOWN, Decimal  # Exact monetary arithmetic
from enum import Enum  # Status and direction enumerations
from typing import Any, Dict, List, Optional  # Type hints

FIAT_CURRENCY = "NGN"
STABLE_CURRENCY = "USDC"

FIAT_QUANT = Decimal("0.01")  # kobo
STABLE_QUANT = Decimal("0.000001")


def quantize_fiat(amount: Decimal) -> Decimal:
    """Round a naira amount down to whole kobo."""
    return amount.quantize(FIAT_QUANT, rounding=ROUND_DOWN)


def quantize_stable(amount: Decimal) -> Decimal:
    """Round a USDC amount down to 6 decimal places."""
    return amount.quantize(STABLE_QUANT, rounding=ROUND_DOWN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_json(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_from_json(value: Any) -> Optional[datetime]:
    if not value:
        return None
    # Accept both "...Z" and "+00:00"
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).astimezone(timezone.utc)


def _dec_from_json(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _epoch_ms(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp() * 1000) if value else None


class Direction(str, Enum):
    ONRAMP = "onramp"
    OFFRAMP = "offramp"

    @property
    def id_prefix(self) -> str:
        return self.value.upper()


class QuoteStatus(str, Enum):
    """Quote lifecycle: pending → processing → {completed | failed}."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QuoteStatus.COMPLETED, QuoteStatus.FAILED)


# Allowed status moves; failed is reachable from every non-terminal status
ALLOWED_TRANSITIONS: Dict[QuoteStatus, frozenset] = {
    QuoteStatus.PENDING: frozenset({QuoteStatus.PROCESSING, QuoteStatus.FAILED}),
    QuoteStatus.PROCESSING: frozenset({QuoteStatus.COMPLETED, QuoteStatus.FAILED}),
    QuoteStatus.COMPLETED: frozenset(),
    QuoteStatus.FAILED: frozenset(),
}


class OnrampStage(str, Enum):
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_VERIFYING = "payment_verifying"
    CHAIN_SENDING = "chain_sending"
    CHAIN_CONFIRMING = "chain_confirming"
    COMPLETE = "complete"
    FAILED = "failed"


class OfframpStage(str, Enum):
    AWAITING_CHAIN_RECEIPT = "awaiting_chain_receipt"
    CHAIN_CONFIRMING = "chain_confirming"
    PAYOUT_INITIATING = "payout_initiating"
    COMPLETE = "complete"
    FAILED = "failed"


class JournalType(str, Enum):
    ONRAMP = "onramp"
    OFFRAMP = "offramp"
    REFUND = "refund"


@dataclass(frozen=True)
class Rate:
    """
    Conversion rate between NGN and USDC.

    Attributes:
        fiat_per_stable: NGN paid for 1 USDC, margin included
        stable_per_fiat: USDC bought with 1 NGN (reciprocal of fiat_per_stable)
        captured_at: When the source answered (UTC)
        source: Name of the price source
        margin: Fractional margin applied to the raw source rate
        stale: True when served from cache after every source failed
    """
    fiat_per_stable: Decimal
    stable_per_fiat: Decimal
    captured_at: datetime
    source: str
    margin: Decimal
    stale: bool = False

    @classmethod
    def from_raw(cls, raw_fiat_per_stable: Decimal, margin: Decimal, source: str,
                 captured_at: Optional[datetime] = None) -> "Rate":
        """Apply the margin to a raw source rate and derive the reciprocal."""
        fiat_per_stable = raw_fiat_per_stable * (Decimal(1) + margin)
        return cls(
            fiat_per_stable=fiat_per_stable,
            stable_per_fiat=Decimal(1) / fiat_per_stable,
            captured_at=captured_at or utcnow(),
            source=source,
            margin=margin,
        )

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.captured_at).total_seconds()

    def to_projection(self) -> Dict[str, Any]:
        return {
            "usdcToNgn": float(self.fiat_per_stable),
            "ngnToUsdc": float(self.stable_per_fiat),
            "timestamp": _epoch_ms(self.captured_at),
            "source": self.source,
            "margin": float(self.margin),
            "stale": self.stale,
        }


@dataclass(frozen=True)
class Quote:
    """
    A priced, time-bounded conversion request.

    ``rate_at_creation`` is always NGN per USDC. ``counterparty`` holds the
    bank account, bank code and account name for off-ramp quotes, and the
    destination address for on-ramp quotes. ``version`` increases on every
    write and is what compare-and-swap checks.
    """
    id: str
    direction: Direction
    fiat_amount: Decimal
    stable_amount: Decimal
    rate_at_creation: Decimal
    counterparty: Dict[str, str]
    status: QuoteStatus
    stage: str
    created_at: datetime
    expires_at: datetime
    owner_address: Optional[str] = None
    chain_tx_hash: Optional[str] = None
    external_reference: Optional[str] = None
    payout_status: Optional[str] = None
    funds_received: bool = False
    reconstructed: bool = False
    error: Optional[str] = None
    refund: Optional[Dict[str, Any]] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def evolve(self, now: Optional[datetime] = None, **changes: Any) -> "Quote":
        """Copy with changes, the next version number and ``updated_at`` set to ``now``."""
        return replace(self, version=self.version + 1, updated_at=now or utcnow(), **changes)

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction.value,
            "fiat_amount": str(self.fiat_amount),
            "stable_amount": str(self.stable_amount),
            "rate_at_creation": str(self.rate_at_creation),
            "counterparty": dict(self.counterparty),
            "status": self.status.value,
            "stage": self.stage,
            "created_at": _dt_to_json(self.created_at),
            "expires_at": _dt_to_json(self.expires_at),
            "owner_address": self.owner_address,
            "chain_tx_hash": self.chain_tx_hash,
            "external_reference": self.external_reference,
            "payout_status": self.payout_status,
            "funds_received": self.funds_received,
            "reconstructed": self.reconstructed,
            "error": self.error,
            "refund": self.refund,
            "updated_at": _dt_to_json(self.updated_at),
            "version": self.version,
        }

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "Quote":
        return Quote(
            id=data["id"],
            direction=Direction(data["direction"]),
            fiat_amount=Decimal(str(data["fiat_amount"])),
            stable_amount=Decimal(str(data["stable_amount"])),
            rate_at_creation=Decimal(str(data["rate_at_creation"])),
            counterparty=dict(data.get("counterparty") or {}),
            status=QuoteStatus(data["status"]),
            stage=data.get("stage", ""),
            created_at=_dt_from_json(data["created_at"]),
            expires_at=_dt_from_json(data["expires_at"]),
            owner_address=data.get("owner_address"),
            chain_tx_hash=data.get("chain_tx_hash"),
            external_reference=data.get("external_reference"),
            payout_status=data.get("payout_status"),
            funds_received=bool(data.get("funds_received", False)),
            reconstructed=bool(data.get("reconstructed", False)),
            error=data.get("error"),
            refund=data.get("refund"),
            updated_at=_dt_from_json(data.get("updated_at")),
            version=int(data.get("version", 0)),
        )

    def to_projection(self) -> Dict[str, Any]:
        """Caller-facing view; exposes only what the next step needs."""
        view: Dict[str, Any] = {
            "quoteId": self.id,
            "direction": self.direction.value,
            "ngnAmount": float(self.fiat_amount),
            "usdcAmount": float(self.stable_amount),
            "status": self.status.value,
            "expiresAt": _epoch_ms(self.expires_at),
        }
        if self.direction is Direction.ONRAMP:
            view["exchangeRate"] = float(Decimal(1) / self.rate_at_creation)
            view["reference"] = self.id
            view["userAddress"] = self.counterparty.get("address")
        else:
            view["exchangeRate"] = float(self.rate_at_creation)
            view["bankAccount"] = self.counterparty.get("bank_account")
            view["accountName"] = self.counterparty.get("account_name")
        return view

    def to_status_projection(self) -> Dict[str, Any]:
        return {
            "quoteId": self.id,
            "status": self.status.value,
            "stage": self.stage,
            "usdcAmount": float(self.stable_amount),
            "ngnAmount": float(self.fiat_amount),
            "txHash": self.chain_tx_hash,
            "transferReference": self.external_reference if self.direction is Direction.OFFRAMP else None,
            "error": self.error,
        }


@dataclass
class JournalEntry:
    """A conversion as seen by history/audit; outlives the quote's working state."""
    id: str
    type: JournalType
    owner_address: str
    amount: Decimal
    currency: str
    status: str
    timestamp: datetime
    chain_tx_hash: Optional[str] = None
    reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    def to_json(self) -> Dict[str, Any]:
        d = asdict(self)
        d["type"] = self.type.value
        d["amount"] = str(self.amount)
        d["timestamp"] = _dt_to_json(self.timestamp)
        d["created_at"] = _dt_to_json(self.created_at)
        d["updated_at"] = _dt_to_json(self.updated_at)
        return d

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "JournalEntry":
        return JournalEntry(
            id=data["id"],
            type=JournalType(data["type"]),
            owner_address=data["owner_address"],
            amount=Decimal(str(data["amount"])),
            currency=data["currency"],
            status=data["status"],
            timestamp=_dt_from_json(data["timestamp"]),
            chain_tx_hash=data.get("chain_tx_hash"),
            reference=data.get("reference"),
            metadata=dict(data.get("metadata") or {}),
            created_at=_dt_from_json(data.get("created_at")),
            updated_at=_dt_from_json(data.get("updated_at")),
            version=int(data.get("version", 0)),
        )

    def to_projection(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "userAddress": self.owner_address,
            "amount": float(self.amount),
            "currency": self.currency,
            "status": self.status,
            "timestamp": _epoch_ms(self.timestamp),
            "txHash": self.chain_tx_hash,
            "reference": self.reference,
            "metadata": self.metadata,
            "createdAt": _epoch_ms(self.created_at),
            "updatedAt": _epoch_ms(self.updated_at),
        }


@dataclass(frozen=True)
class JournalPage:
    entries: List[JournalEntry]
    total: int
    limit: int
    offset: int

    def to_projection(self) -> Dict[str, Any]:
        return {
            "transactions": [e.to_projection() for e in self.entries],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass(frozen=True)
class OnrampSettlement:
    reference: str
    tx_hash: str
    stable_amount: Decimal
    fiat_amount: Decimal
    already_processed: bool = False

    def to_projection(self) -> Dict[str, Any]:
        return {
            "success": True,
            "reference": self.reference,
            "txHash": self.tx_hash,
            "usdcAmount": float(self.stable_amount),
            "ngnAmount": float(self.fiat_amount),
            "alreadyProcessed": self.already_processed,
        }


@dataclass(frozen=True)
class OfframpSettlement:
    quote_id: str
    transfer_reference: str
    fiat_amount: Decimal
    transfer_status: str
    chain_tx_hash: str
    already_processed: bool = False

    def to_projection(self) -> Dict[str, Any]:
        return {
            "success": True,
            "quoteId": self.quote_id,
            "transferReference": self.transfer_reference,
            "ngnAmount": float(self.fiat_amount),
            "status": self.transfer_status,
            "txHash": self.chain_tx_hash,
            "alreadyProcessed": self.already_processed,
        }


@dataclass(frozen=True)
class RefundResult:
    tx_hash: str
    to_address: str
    stable_amount: Decimal
    reason: str
    original_tx_hash: Optional[str] = None

    def to_projection(self) -> Dict[str, Any]:
        return {
            "success": True,
            "txHash": self.tx_hash,
            "userAddress": self.to_address,
            "usdcAmount": float(self.stable_amount),
            "reason": self.reason,
            "originalTxHash": self.original_tx_hash,
        }


@dataclass(frozen=True)
class RefundOutcome:
    """Result of the automatic refund attempted after a failed payout."""
    success: bool
    stable_amount: Decimal
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    pending: bool = False  # broadcast, not yet confirmed

    def to_json(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "pending": self.pending,
            "txHash": self.tx_hash,
            "usdcAmount": float(self.stable_amount),
            "error": self.error,
        }
