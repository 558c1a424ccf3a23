# src/bridgefi/application/quote_ledger.py
"""
Quote Ledger - Quote Creation, Lookup, Reconstruction and Transitions

The only writer of quotes. Every write goes through the store's
compare-and-swap on the quote's version, so two concurrent transitions out
of the same state cannot both succeed and a terminal quote can never be
moved again.

Status moves allowed: pending → processing → {completed | failed}, and
pending → failed. Stage changes inside a status (on-ramp: payment_verifying,
chain_sending, ...; off-ramp: chain_confirming, payout_initiating, ...) are
written with ``annotate``, which is also compare-and-swap guarded.

Files that USE this module:
- bridgefi.application.onramp (on-ramp quotes)
- bridgefi.application.offramp (off-ramp quotes)
- bridgefi.adapters.http.api (GET /quotes/{id})

Files that this module USES:
- bridgefi.adapters.persistence.base (KeyValueStore)
- bridgefi.application.rate_oracle (prices new and reconstructed quotes)
- bridgefi.domain.models (Quote, Direction, QuoteStatus, stages)
- bridgefi.domain.errors (QuoteNotFoundError, QuoteAlreadyProcessedError, ValidationError)
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from bridgefi.adapters.persistence.base import KeyValueStore
from bridgefi.application.rate_oracle import RateOracle
from bridgefi.domain.errors import (
    QuoteAlreadyProcessedError,
    QuoteNotFoundError,
    ValidationError,
)
from bridgefi.domain.models import (
    ALLOWED_TRANSITIONS,
    Direction,
    OfframpStage,
    OnrampStage,
    Quote,
    QuoteStatus,
    Rate,
    quantize_fiat,
    quantize_stable,
    utcnow,
)
from bridgefi.shared.validators import parse_positive_amount, validate_address, validate_bank_details

logger = logging.getLogger(__name__)

KEY_PREFIX = "quote:"
CHAIN_TX_PREFIX = "chaintx:"

# Attempts for a read-modify-CAS cycle before giving up on contention
_CAS_RETRIES = 5


@dataclass(frozen=True)
class ReconstructionData:
    """
    Redundant data a client re-sends so a lost quote can be rebuilt.

    ``amount`` is the side the user fixed: NGN for on-ramp, USDC for off-ramp.
    """
    amount: Optional[Decimal] = None
    owner_address: Optional[str] = None
    bank_account: Optional[str] = None
    bank_code: Optional[str] = None
    account_name: Optional[str] = None

    @classmethod
    def from_request(cls, direction: Direction, data: Optional[Mapping[str, Any]]) -> Optional["ReconstructionData"]:
        """Build from the camelCase ``quoteData`` body of the HTTP API."""
        if not data:
            return None
        keys = ("ngnAmount", "fiatAmount") if direction is Direction.ONRAMP else ("usdcAmount", "stableAmount")
        raw_amount = next((data[k] for k in keys if data.get(k) is not None), None)
        return cls(
            amount=parse_positive_amount(raw_amount),
            owner_address=data.get("userAddress") or None,
            bank_account=data.get("bankAccount") or None,
            bank_code=data.get("bankCode") or None,
            account_name=data.get("accountName") or None,
        )


def _initial_stage(direction: Direction) -> str:
    if direction is Direction.ONRAMP:
        return OnrampStage.PAYMENT_PENDING.value
    return OfframpStage.AWAITING_CHAIN_RECEIPT.value


class QuoteLedger:
    """Creates, stores, reconstructs and transitions quotes."""

    def __init__(
        self,
        store: KeyValueStore,
        oracle: RateOracle,
        onramp_ttl: timedelta = timedelta(minutes=15),
        offramp_ttl: timedelta = timedelta(minutes=5),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.oracle = oracle
        self.onramp_ttl = onramp_ttl
        self.offramp_ttl = offramp_ttl
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # Ids and pricing
    # ------------------------------------------------------------------
    def new_quote_id(self, direction: Direction) -> str:
        """Direction prefix, millisecond timestamp and a 64-bit random suffix."""
        millis = int(self.clock().timestamp() * 1000)
        return f"{direction.id_prefix}_{millis}_{secrets.token_hex(8)}"

    @staticmethod
    def price(direction: Direction, amount: Decimal, rate: Rate) -> tuple[Decimal, Decimal]:
        """
        Return (fiat_amount, stable_amount) for the amount the user fixed.

        On-ramp users fix NGN; off-ramp users fix USDC. Fees are zero.
        """
        if direction is Direction.ONRAMP:
            fiat = quantize_fiat(amount)
            return fiat, quantize_stable(fiat * rate.stable_per_fiat)
        stable = quantize_stable(amount)
        return quantize_fiat(stable * rate.fiat_per_stable), stable

    def _ttl(self, direction: Direction) -> timedelta:
        return self.onramp_ttl if direction is Direction.ONRAMP else self.offramp_ttl

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------
    async def create_quote(self, direction: Direction, amount: Any, counterparty: Mapping[str, str],
                           owner_address: Optional[str] = None) -> Quote:
        """
        Price and store a new pending quote.

        Args:
            direction: onramp (amount in NGN) or offramp (amount in USDC)
            amount: Amount the user fixed
            counterparty: ``{"address"}`` for onramp; ``{"bank_account", "bank_code",
                "account_name"}`` for offramp
            owner_address: Owning wallet, when already known

        Raises:
            ValidationError: Non-positive amount or bad counterparty details
            RateUnavailableError: No rate could be obtained
        """
        value = parse_positive_amount(amount)
        if value is None:
            currency = "NGN" if direction is Direction.ONRAMP else "USDC"
            raise ValidationError(f"Invalid {currency} amount")
        counterparty = self._validated_counterparty(direction, counterparty)

        rate = await self.oracle.get_rate()
        fiat, stable = self.price(direction, value, rate)
        if fiat <= 0 or stable <= 0:
            raise ValidationError("Amount too small to convert")

        now = self.clock()
        quote = Quote(
            id=self.new_quote_id(direction),
            direction=direction,
            fiat_amount=fiat,
            stable_amount=stable,
            rate_at_creation=rate.fiat_per_stable,
            counterparty=counterparty,
            status=QuoteStatus.PENDING,
            stage=_initial_stage(direction),
            created_at=now,
            expires_at=now + self._ttl(direction),
            owner_address=owner_address,
            updated_at=now,
            version=1,
        )
        if not self.store.compare_and_swap(KEY_PREFIX + quote.id, None, quote.to_json()):
            # 64 random bits make this practically unreachable
            raise RuntimeError(f"Quote id collision: {quote.id}")
        logger.info(
            "Quote created: %s %s ngn=%s usdc=%s rate=%s (source=%s%s)",
            quote.id, direction.value, fiat, stable, rate.fiat_per_stable, rate.source,
            ", stale" if rate.stale else "",
        )
        return quote

    def get_quote(self, quote_id: str) -> Optional[Quote]:
        raw = self.store.get(KEY_PREFIX + quote_id)
        return Quote.from_json(raw) if raw is not None else None

    def require_quote(self, quote_id: str) -> Quote:
        quote = self.get_quote(quote_id)
        if quote is None:
            raise QuoteNotFoundError(f"Quote {quote_id} not found", quote_id)
        return quote

    # ------------------------------------------------------------------
    # Degraded-mode reconstruction
    # ------------------------------------------------------------------
    async def reconstruct_if_missing(self, quote_id: str, data: Optional[ReconstructionData]) -> Quote:
        """
        Return the stored quote, rebuilding it from caller data on first miss.

        The missing side of the amount is recomputed from the *current* rate,
        since the original rate is lost. The rebuilt quote is inserted with
        insert-if-absent, so once it exists later calls get the stored copy
        and never re-derive it from caller data.

        Raises:
            QuoteNotFoundError: Quote missing and ``data`` insufficient to rebuild it
            ValidationError: The id does not belong to a known direction
        """
        existing = self.get_quote(quote_id)
        if existing is not None:
            return existing

        direction = self._direction_from_id(quote_id)
        if not self._reconstructable(direction, data):
            logger.error("Quote %s not found and insufficient data to reconstruct it", quote_id)
            raise QuoteNotFoundError(
                f"Quote {quote_id} not found. If the server was restarted, the quote may have been lost. "
                "Please try initiating a new transaction.",
                quote_id,
            )
        assert data is not None and data.amount is not None

        if direction is Direction.ONRAMP:
            counterparty = {"address": data.owner_address}
        else:
            counterparty = self._validated_counterparty(direction, {
                "bank_account": data.bank_account,
                "bank_code": data.bank_code,
                "account_name": data.account_name,
            })
        rate = await self.oracle.get_rate()
        fiat, stable = self.price(direction, data.amount, rate)
        now = self.clock()
        quote = Quote(
            id=quote_id,
            direction=direction,
            fiat_amount=fiat,
            stable_amount=stable,
            rate_at_creation=rate.fiat_per_stable,
            counterparty=counterparty,
            status=QuoteStatus.PENDING,
            stage=_initial_stage(direction),
            created_at=now,
            expires_at=now + self._ttl(direction),
            owner_address=data.owner_address,
            reconstructed=True,
            updated_at=now,
            version=1,
        )
        if not self.store.compare_and_swap(KEY_PREFIX + quote_id, None, quote.to_json()):
            # Someone reconstructed (or restored) it first; theirs is authoritative
            return self.require_quote(quote_id)

        logger.warning(
            "DEGRADED: quote %s reconstructed from caller data at current rate %s "
            "(ngn=%s usdc=%s, owner=%s); original pricing is lost",
            quote_id, rate.fiat_per_stable, fiat, stable, data.owner_address,
        )
        return quote

    @staticmethod
    def _direction_from_id(quote_id: str) -> Direction:
        for direction in Direction:
            if quote_id.startswith(direction.id_prefix + "_"):
                return direction
        raise ValidationError(f"Unrecognized quote id: {quote_id}", quote_id)

    @staticmethod
    def _reconstructable(direction: Direction, data: Optional[ReconstructionData]) -> bool:
        if data is None or data.amount is None:
            return False
        if direction is Direction.ONRAMP:
            return validate_address(data.owner_address)
        return validate_bank_details(data.bank_account, data.bank_code, data.account_name)

    @staticmethod
    def _validated_counterparty(direction: Direction, counterparty: Mapping[str, Any]) -> Dict[str, str]:
        if direction is Direction.ONRAMP:
            address = counterparty.get("address")
            if not validate_address(address):
                raise ValidationError("Invalid user address")
            return {"address": address}
        bank_account = counterparty.get("bank_account")
        bank_code = counterparty.get("bank_code")
        account_name = counterparty.get("account_name")
        if not validate_bank_details(bank_account, bank_code, account_name):
            raise ValidationError("Missing or invalid bank account details")
        return {
            "bank_account": str(bank_account).strip(),
            "bank_code": str(bank_code).strip(),
            "account_name": str(account_name).strip(),
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def transition(self, quote_id: str, new_status: QuoteStatus, **side_effects: Any) -> Quote:
        """
        Move a quote to ``new_status`` atomically, applying ``side_effects``.

        Raises:
            QuoteNotFoundError: Unknown id
            QuoteAlreadyProcessedError: Quote is terminal, or the move is not allowed
                from its current status (e.g. a concurrent caller got there first)
        """
        for _ in range(_CAS_RETRIES):
            current = self.require_quote(quote_id)
            if current.status.is_terminal:
                raise QuoteAlreadyProcessedError(
                    f"Quote already processed with status: {current.status.value}",
                    quote_id, current.status.value,
                )
            if new_status not in ALLOWED_TRANSITIONS[current.status]:
                raise QuoteAlreadyProcessedError(
                    f"Quote {quote_id} cannot move from {current.status.value} to {new_status.value}",
                    quote_id, current.status.value,
                )
            updated = current.evolve(now=self.clock(), status=new_status, **side_effects)
            if self.store.compare_and_swap(KEY_PREFIX + quote_id, current.version, updated.to_json()):
                logger.info("Quote %s: %s -> %s (stage=%s)", quote_id, current.status.value,
                            new_status.value, updated.stage)
                return updated
            logger.debug("Quote %s changed during transition, re-reading", quote_id)
        raise QuoteAlreadyProcessedError(f"Quote {quote_id} is being modified concurrently", quote_id)

    def annotate(self, quote_id: str, expected_status: QuoteStatus, **fields: Any) -> Quote:
        """
        Update non-status fields (stage, tx hash, owner, ...) of a quote that is
        still in ``expected_status``.

        Raises:
            QuoteAlreadyProcessedError: The quote left ``expected_status``
        """
        for _ in range(_CAS_RETRIES):
            current = self.require_quote(quote_id)
            if current.status is not expected_status:
                raise QuoteAlreadyProcessedError(
                    f"Quote {quote_id} is {current.status.value}, expected {expected_status.value}",
                    quote_id, current.status.value,
                )
            updated = current.evolve(now=self.clock(), **fields)
            if self.store.compare_and_swap(KEY_PREFIX + quote_id, current.version, updated.to_json()):
                logger.debug("Quote %s annotated: %s", quote_id, ", ".join(fields))
                return updated
        raise QuoteAlreadyProcessedError(f"Quote {quote_id} is being modified concurrently", quote_id)

    def claim_chain_tx(self, tx_hash: str, quote_id: str) -> bool:
        """
        Bind an on-chain transaction to one quote.

        Returns:
            True if the hash is now (or already was) bound to ``quote_id``,
            False if another quote holds it
        """
        key = CHAIN_TX_PREFIX + tx_hash.lower()
        if self.store.compare_and_swap(key, None, {"quote_id": quote_id, "version": 1}):
            return True
        holder = self.store.get(key) or {}
        return holder.get("quote_id") == quote_id
