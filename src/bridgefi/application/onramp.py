# src/bridgefi/application/onramp.py
"""
On-Ramp Settlement Executor - NGN → USDC

Turns a paid NGN charge into exactly one custody-to-user USDC transfer.

Stages: payment_pending → payment_verifying → chain_sending →
chain_confirming → complete, with failed reachable from each of them.

The bounded verification poll and the payment webhook both call ``settle``,
the single verify-then-settle operation. Settlement of one quote is
serialized by a per-quote lock, and the pending → processing move is a
compare-and-swap in the ledger, so only one caller ever sends USDC. Later
callers for a completed quote get the cached result back.

A send that times out or reports a duplicate may already be in the mempool.
With the signed hash in hand the executor waits on it; without one the quote
is held in processing for reconciliation and is never marked failed.

Files that USE this module:
- bridgefi.adapters.http.api (POST /onramp/*, POST /webhooks/*)
- bridgefi.app (constructs the executor)

Files that this module USES:
- bridgefi.application.settlement (base executor)
- bridgefi.application.quote_ledger (quotes and reconstruction)
- bridgefi.shared.retry (BoundedPoller)
- bridgefi.adapters.payments.base (charge verification)
"""
from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from bridgefi.adapters.payments.base import ChargeVerification
from bridgefi.application.quote_ledger import ReconstructionData
from bridgefi.application.settlement import AMBIGUOUS_SEND_KINDS, SettlementExecutor
from bridgefi.domain.errors import (
    ChainError,
    ChainErrorKind,
    InvalidSignatureError,
    PaymentFailedError,
    PaymentGatewayError,
    PaymentNotSettledError,
    PaymentVerificationTimeoutError,
    QuoteAlreadyProcessedError,
    QuoteNotFoundError,
    SettlementInProgressError,
    ValidationError,
)
from bridgefi.domain.models import (
    STABLE_CURRENCY,
    Direction,
    JournalType,
    OnrampSettlement,
    OnrampStage,
    Quote,
    QuoteStatus,
)
from bridgefi.shared.retry import BoundedPoller, PollExhausted, SleepFn
from bridgefi.shared.validators import validate_address

logger = logging.getLogger(__name__)

DEFINITIVE_FAILURE_STATUSES = frozenset({"failed", "reversed"})
CHARGE_SUCCESS_EVENT = "charge.success"


class OnrampExecutor(SettlementExecutor):
    """Verify NGN payments and deliver USDC from custody."""

    def __init__(
        self,
        *args: Any,
        poll_interval: float = 1.0,
        poll_max_attempts: int = 60,
        sleep: Optional[SleepFn] = None,
        default_email: str = "",
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.poll_interval = poll_interval
        self.poll_max_attempts = poll_max_attempts
        self.sleep = sleep
        self.default_email = default_email

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------
    async def initiate(self, fiat_amount: Any, user_address: str) -> Dict[str, Any]:
        """
        Create an on-ramp quote and a hosted payment page for it.

        Returns:
            Quote projection plus ``paymentLink``

        Raises:
            ValidationError: Bad address or non-positive amount
            RateUnavailableError: No rate available
            PaymentGatewayError: The charge could not be initialized (quote is failed)
        """
        if not validate_address(user_address):
            raise ValidationError("Invalid user address")
        quote = await self.ledger.create_quote(
            Direction.ONRAMP, fiat_amount, {"address": user_address}, owner_address=user_address,
        )
        self.journal.record(
            JournalType.ONRAMP,
            user_address,
            quote.stable_amount,
            STABLE_CURRENCY,
            QuoteStatus.PENDING.value,
            entry_id=quote.id,
            reference=quote.id,
            metadata={"ngnAmount": float(quote.fiat_amount), "exchangeRate": float(quote.rate_at_creation)},
        )

        email = self.default_email or f"user_{user_address[:8].lower()}@bridgefi.app"
        try:
            charge = await self.gateway.initialize_charge(
                quote.fiat_amount,
                email,
                quote.id,
                metadata={"userAddress": user_address, "usdcAmount": float(quote.stable_amount), "type": "onramp"},
            )
        except PaymentGatewayError as e:
            self.fail(quote.id, f"Payment initialization failed: {e.message}")
            raise

        view = quote.to_projection()
        view["paymentLink"] = charge.authorization_url
        return view

    # ------------------------------------------------------------------
    # Verify-then-settle
    # ------------------------------------------------------------------
    async def settle(self, reference: str, quote_data: Optional[Mapping[str, Any]] = None) -> OnrampSettlement:
        """
        Verify the payment for ``reference`` once and, if it is settled, send USDC.

        Args:
            reference: On-ramp quote id
            quote_data: Caller copy of the quote (``ngnAmount``, ``userAddress``),
                used only if the quote is missing from the ledger

        Raises:
            PaymentNotSettledError: Not paid yet (the poll keeps going)
            PaymentFailedError: The processor reports a definitive failure
            QuoteAlreadyProcessedError: The quote already failed
            SettlementInProgressError: A transfer for this quote is in an unknown state
            ChainError: The transfer could not be made or reverted
            ConfirmationPendingError: The transfer is still unconfirmed
        """
        data = ReconstructionData.from_request(Direction.ONRAMP, quote_data)
        quote = await self.ledger.reconstruct_if_missing(reference, data)
        if quote.direction is not Direction.ONRAMP:
            raise ValidationError(f"{reference} is not an on-ramp quote", reference)

        async with self.lock_for(reference):
            return await self._settle_locked(reference)

    async def _settle_locked(self, reference: str) -> OnrampSettlement:
        quote = self.ledger.require_quote(reference)

        if quote.status is QuoteStatus.COMPLETED:
            logger.info("Onramp %s already completed (tx=%s)", reference, quote.chain_tx_hash)
            return _settlement(quote, already_processed=True)
        if quote.status is QuoteStatus.FAILED:
            raise QuoteAlreadyProcessedError(
                f"Quote already processed with status: failed ({quote.error})", reference, quote.status.value,
            )
        if quote.status is QuoteStatus.PROCESSING:
            if quote.chain_tx_hash:
                # Resume a confirmation wait that ran out of budget earlier
                return await self._confirm(quote, quote.chain_tx_hash)
            raise SettlementInProgressError(
                f"Settlement of {reference} is in progress; transfer state unknown", reference,
            )

        if quote.stage != OnrampStage.PAYMENT_VERIFYING.value:
            quote = self.ledger.annotate(reference, QuoteStatus.PENDING, stage=OnrampStage.PAYMENT_VERIFYING.value)
        verification = await self._verify_charge(quote)
        logger.info("Payment verified for %s (NGN %s). Sending USDC to %s",
                    reference, verification.amount, quote.counterparty["address"])

        extra = self.expiry_metadata(quote)
        quote = self.ledger.transition(reference, QuoteStatus.PROCESSING, stage=OnrampStage.CHAIN_SENDING.value)
        self.journal.sync_quote(quote, QuoteStatus.PROCESSING.value, metadata={"paidAt": verification.paid_at, **extra})

        tx_hash = await self._send(quote)
        quote = self.ledger.annotate(
            reference, QuoteStatus.PROCESSING, stage=OnrampStage.CHAIN_CONFIRMING.value, chain_tx_hash=tx_hash,
        )
        self.journal.sync_quote(quote, QuoteStatus.PROCESSING.value, chain_tx_hash=tx_hash)
        return await self._confirm(quote, tx_hash)

    async def _verify_charge(self, quote: Quote) -> ChargeVerification:
        reference = quote.id
        try:
            verification = await self.gateway.verify_charge(reference)
        except PaymentGatewayError as e:
            if e.transient:
                raise PaymentNotSettledError(f"Payment gateway unavailable: {e.message}", reference) from e
            raise

        if verification.is_success:
            if verification.amount < quote.fiat_amount:
                message = f"Amount paid (NGN {verification.amount}) is less than quoted (NGN {quote.fiat_amount})"
                self.fail(reference, message, paidAmount=float(verification.amount))
                raise PaymentFailedError(message, reference)
            return verification
        if verification.is_unsettled:
            raise PaymentNotSettledError(
                f"Payment not successful yet. Status: {verification.status}", reference, verification.status,
            )
        if verification.status in DEFINITIVE_FAILURE_STATUSES:
            message = f"Payment {verification.status}"
            self.fail(reference, message)
            raise PaymentFailedError(message, reference)
        raise PaymentGatewayError(f"Unexpected payment status: {verification.status}", reference)

    async def _send(self, quote: Quote) -> str:
        amount = quote.stable_amount
        to_address = quote.counterparty["address"]
        broadcasting = False
        try:
            balance = await self.chain.get_token_balance(self.chain.custody_address)
            if balance < amount:
                raise ChainError(
                    ChainErrorKind.INSUFFICIENT_BALANCE,
                    f"Insufficient treasury balance: {balance} {STABLE_CURRENCY} available, {amount} required",
                    reference=quote.id,
                )
            broadcasting = True
            return await self.submit_transfer(to_address, amount, quote.id)
        except ChainError as e:
            e.reference = e.reference or quote.id
            if broadcasting and e.kind in AMBIGUOUS_SEND_KINDS:
                raise self._hold_unknown_transfer(quote, e) from e
            self.fail(quote.id, f"Failed to send USDC: {e.message}", errorKind=e.kind.value)
            raise

    def _hold_unknown_transfer(self, quote: Quote, error: ChainError) -> SettlementInProgressError:
        """Keep the quote in processing when the send may have been broadcast."""
        message = f"USDC transfer state unknown: {error.message}"
        held = self.ledger.annotate(quote.id, QuoteStatus.PROCESSING, error=message)
        self.journal.sync_quote(held, QuoteStatus.PROCESSING.value,
                                metadata={"transferStateUnknown": True, "errorKind": error.kind.value})
        logger.critical(
            "TRANSFER STATE UNKNOWN for %s: %s. %s USDC to %s may have been broadcast; "
            "quote held in processing for reconciliation",
            quote.id, error.message, quote.stable_amount, quote.counterparty["address"],
        )
        return SettlementInProgressError(
            f"Settlement of {quote.id} is in progress; transfer state unknown", quote.id,
        )

    async def _confirm(self, quote: Quote, tx_hash: str) -> OnrampSettlement:
        try:
            await self.wait_for_confirmation(tx_hash, quote.id)
        except ChainError as e:
            if e.kind is ChainErrorKind.REVERTED:
                self.fail(quote.id, f"USDC transfer {tx_hash} reverted on-chain", errorKind=e.kind.value)
                e.reference = quote.id
            raise

        completed = self.ledger.transition(quote.id, QuoteStatus.COMPLETED, stage=OnrampStage.COMPLETE.value)
        self.journal.sync_quote(
            completed, QuoteStatus.COMPLETED.value, chain_tx_hash=tx_hash,
            metadata={"usdcAmount": float(completed.stable_amount), "ngnAmount": float(completed.fiat_amount)},
        )
        logger.info("Onramp %s completed: %s USDC to %s (tx=%s)",
                    quote.id, completed.stable_amount, completed.counterparty["address"], tx_hash)
        return _settlement(completed)

    # ------------------------------------------------------------------
    # Bounded poll
    # ------------------------------------------------------------------
    async def verify_payment(self, reference: str,
                             quote_data: Optional[Mapping[str, Any]] = None) -> OnrampSettlement:
        """
        Poll ``settle`` until the payment settles or the attempt budget runs out.

        Only "not yet settled" is retried; any other error aborts the poll.

        Raises:
            PaymentVerificationTimeoutError: Budget spent; the quote is failed,
                and a payment arriving later needs manual reconciliation
        """
        poller: BoundedPoller[OnrampSettlement] = BoundedPoller(
            max_attempts=self.poll_max_attempts,
            interval_seconds=self.poll_interval,
            retry_on=(PaymentNotSettledError,),
            sleep=self.sleep,
            name=f"verify {reference}",
        )
        try:
            return await poller.run(lambda: self.settle(reference, quote_data))
        except PollExhausted as e:
            async with self.lock_for(reference):
                quote = self.ledger.require_quote(reference)
                if quote.status is QuoteStatus.COMPLETED:
                    return _settlement(quote, already_processed=True)
                message = (
                    f"Payment verification timeout after {e.attempts} attempts; "
                    "the payment may still complete asynchronously"
                )
                if quote.status is QuoteStatus.PENDING:
                    self.fail(reference, message)
            raise PaymentVerificationTimeoutError(message, reference) from e

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------
    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate a payment-gateway event and settle the quote it pays for.

        Events other than ``charge.success`` for an on-ramp reference are
        acknowledged and ignored.

        Raises:
            InvalidSignatureError: Signature missing or wrong
            ValidationError: Body is not a JSON event
        """
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Rejected webhook delivery with invalid signature")
            raise InvalidSignatureError("Invalid signature")
        try:
            event = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("Malformed webhook payload") from e
        if not isinstance(event, dict):
            raise ValidationError("Malformed webhook payload")

        event_type = event.get("event")
        data = event.get("data") or {}
        reference = str(data.get("reference") or "")
        if event_type != CHARGE_SUCCESS_EVENT or not reference.startswith(Direction.ONRAMP.id_prefix + "_"):
            logger.info("Ignoring webhook event %s (reference=%s)", event_type, reference or "-")
            return {"received": True, "processed": False}

        quote = self.ledger.get_quote(reference)
        if quote is not None and quote.status is QuoteStatus.FAILED:
            logger.error(
                "LATE PAYMENT: charge.success for failed quote %s (%s). No USDC sent; reconcile manually",
                reference, quote.error,
            )
            self.journal.sync_quote(quote, QuoteStatus.FAILED.value, metadata={
                "late_payment": True,
                "latePaymentAmount": float(Decimal(str(data.get("amount") or 0)) / 100),
            })
            return {"received": True, "processed": False, "latePayment": True}

        try:
            settlement = await self.settle(reference)
        except (QuoteNotFoundError, QuoteAlreadyProcessedError, SettlementInProgressError,
                PaymentFailedError) as e:
            logger.error("Failed to process onramp webhook for %s: %s", reference, e.message)
            return {"received": True, "processed": False, "error": e.message}
        logger.info("Onramp completed via webhook for %s", reference)
        return {"received": True, "processed": True, "txHash": settlement.tx_hash}


def _settlement(quote: Quote, already_processed: bool = False) -> OnrampSettlement:
    return OnrampSettlement(
        reference=quote.id,
        tx_hash=quote.chain_tx_hash or "",
        stable_amount=quote.stable_amount,
        fiat_amount=quote.fiat_amount,
        already_processed=already_processed,
    )
