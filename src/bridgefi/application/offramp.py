# src/bridgefi/application/offramp.py
"""
Off-Ramp Settlement Executor - USDC → NGN

Pays NGN to a bank account once the user's USDC transfer to custody has
confirmed on-chain, and refunds the USDC when the payout cannot be made.

A confirmed transaction only counts as the deposit when its receipt shows a
stablecoin ``Transfer`` to custody covering the quoted amount. Anything else
fails the quote without a refund.

Stages: awaiting_chain_receipt → chain_confirming → payout_initiating →
complete, with failed reachable from each of them.

Recipient creation and payout initiation are single-shot: they are never
retried here, because a retry after an ambiguous failure could pay twice.
If the payout is definitively rejected after custody has received the user's
funds, exactly one refund of the original USDC amount is attempted. A refund
that fails too is raised as SettlementAndRefundFailedError and logged at
CRITICAL; one that is broadcast but unconfirmed is reported as pending. A
payout request without a definitive answer (timeout, 5xx) leaves the quote in
processing and raises PayoutOutcomeUnknownError instead of refunding.

Files that USE this module:
- bridgefi.adapters.http.api (POST /offramp/*)
- bridgefi.app (constructs the executor)

Files that this module USES:
- bridgefi.application.settlement (base executor)
- bridgefi.application.quote_ledger (quotes, reconstruction, tx binding)
- bridgefi.adapters.payments.base (payouts)
- bridgefi.adapters.chain.base (receipts and refunds)
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from bridgefi.application.quote_ledger import ReconstructionData
from bridgefi.application.settlement import AMBIGUOUS_SEND_KINDS, SettlementExecutor
from bridgefi.domain.errors import (
    ChainError,
    ChainErrorKind,
    ConfirmationPendingError,
    DomainError,
    PaymentGatewayError,
    PayoutOutcomeUnknownError,
    QuoteAlreadyProcessedError,
    SettlementAndRefundFailedError,
    SettlementFailedError,
    SettlementInProgressError,
    ValidationError,
)
from bridgefi.domain.models import (
    STABLE_CURRENCY,
    Direction,
    JournalType,
    OfframpSettlement,
    OfframpStage,
    Quote,
    QuoteStatus,
    RefundOutcome,
    RefundResult,
    quantize_stable,
)
from bridgefi.shared.validators import parse_positive_amount, validate_address, validate_tx_hash

logger = logging.getLogger(__name__)

PAYOUT_REASON = "USDC to NGN conversion"


class OfframpExecutor(SettlementExecutor):
    """Confirm USDC receipts, pay out NGN, refund on payout failure."""

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------
    async def initiate(self, stable_amount: Any, bank_account: str, bank_code: str,
                       account_name: str) -> Dict[str, Any]:
        """
        Create an off-ramp quote.

        Raises:
            ValidationError: Non-positive amount or missing bank details
            RateUnavailableError: No rate available
        """
        quote = await self.ledger.create_quote(
            Direction.OFFRAMP,
            stable_amount,
            {"bank_account": bank_account, "bank_code": bank_code, "account_name": account_name},
        )
        return quote.to_projection()

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------
    async def execute(self, quote_id: str, chain_tx_hash: str,
                      quote_data: Optional[Mapping[str, Any]] = None) -> OfframpSettlement:
        """
        Settle an off-ramp quote against the user's custody-bound transfer.

        Args:
            quote_id: Off-ramp quote id
            chain_tx_hash: Hash of the user's USDC transfer to custody
            quote_data: Caller copy of the quote (``usdcAmount``, bank details,
                optional ``userAddress``), used only if the quote is missing

        Raises:
            ValidationError: Malformed hash, the hash already settled another quote,
                or the transaction did not deliver the quoted USDC to custody
            QuoteAlreadyProcessedError: The quote is failed, or completed with another hash
            ChainError: The user's transfer reverted
            ConfirmationPendingError: The user's transfer is still unconfirmed
            SettlementFailedError: Payout failed; ``refund`` describes the refund made
            SettlementAndRefundFailedError: Payout failed and so did the refund
            PayoutOutcomeUnknownError: The gateway gave no definitive payout answer
        """
        if not validate_tx_hash(chain_tx_hash):
            raise ValidationError("Invalid transaction hash", quote_id)
        data = ReconstructionData.from_request(Direction.OFFRAMP, quote_data)
        quote = await self.ledger.reconstruct_if_missing(quote_id, data)
        if quote.direction is not Direction.OFFRAMP:
            raise ValidationError(f"{quote_id} is not an off-ramp quote", quote_id)

        async with self.lock_for(quote_id):
            return await self._execute_locked(quote_id, chain_tx_hash, data)

    async def _execute_locked(self, quote_id: str, tx_hash: str,
                              data: Optional[ReconstructionData]) -> OfframpSettlement:
        quote = self.ledger.require_quote(quote_id)
        same_tx = bool(quote.chain_tx_hash) and quote.chain_tx_hash.lower() == tx_hash.lower()

        if quote.status is QuoteStatus.COMPLETED and same_tx:
            logger.info("Offramp %s already completed (transfer=%s)", quote_id, quote.external_reference)
            return _settlement(quote, already_processed=True)
        if quote.status.is_terminal:
            raise QuoteAlreadyProcessedError(
                f"Quote already processed with status: {quote.status.value}", quote_id, quote.status.value,
            )
        if quote.status is QuoteStatus.PROCESSING:
            if same_tx and not quote.funds_received:
                # Resume a receipt wait that ran out of budget earlier
                return await self._confirm_and_pay(quote)
            raise SettlementInProgressError(f"Settlement of {quote_id} is already in progress", quote_id)

        if not self.ledger.claim_chain_tx(tx_hash, quote_id):
            raise ValidationError(f"Transaction {tx_hash} was already used to settle another quote", quote_id)

        extra = self.expiry_metadata(quote)
        owner = quote.owner_address or (data.owner_address if data else None)
        quote = self.ledger.transition(
            quote_id, QuoteStatus.PROCESSING,
            stage=OfframpStage.CHAIN_CONFIRMING.value, chain_tx_hash=tx_hash, owner_address=owner,
        )
        self.journal.sync_quote(quote, QuoteStatus.PROCESSING.value, chain_tx_hash=tx_hash, metadata=extra)
        return await self._confirm_and_pay(quote)

    async def _confirm_and_pay(self, quote: Quote) -> OfframpSettlement:
        tx_hash = quote.chain_tx_hash or ""
        try:
            receipt = await self.wait_for_confirmation(tx_hash, quote.id)
        except ChainError as e:
            if e.kind is ChainErrorKind.REVERTED:
                # Custody never received the funds: nothing to refund
                self.fail(quote.id, f"User transfer {tx_hash} reverted on-chain", errorKind=e.kind.value)
                e.reference = quote.id
            raise

        token, custody = self.chain.token_address, self.chain.custody_address
        received = receipt.amount_received(token, custody)
        if received < quote.stable_amount:
            message = (
                f"Transaction {tx_hash} delivered {received} {STABLE_CURRENCY} to custody, "
                f"{quote.stable_amount} required"
            )
            # Not a deposit for this quote: nothing is refunded
            self.fail(quote.id, message, receivedAmount=float(received))
            raise ValidationError(message, quote.id)

        owner = quote.owner_address or receipt.transfers_to(token, custody)[0].from_address
        quote = self.ledger.annotate(
            quote.id, QuoteStatus.PROCESSING,
            stage=OfframpStage.PAYOUT_INITIATING.value, funds_received=True, owner_address=owner,
        )
        self.journal.sync_quote(quote, QuoteStatus.PROCESSING.value,
                                metadata={"fundsReceived": True, "blockNumber": receipt.block_number})
        logger.info("Custody received %s USDC for %s (tx=%s); paying NGN %s to %s",
                    quote.stable_amount, quote.id, tx_hash, quote.fiat_amount,
                    quote.counterparty.get("bank_account"))

        try:
            recipient = await self.gateway.create_payout_recipient(
                quote.counterparty["bank_account"],
                quote.counterparty["bank_code"],
                quote.counterparty["account_name"],
            )
        except PaymentGatewayError as e:
            raise await self._compensate(quote, e) from e
        try:
            payout = await self.gateway.initiate_payout(recipient, quote.fiat_amount, quote.id, PAYOUT_REASON)
        except PaymentGatewayError as e:
            if e.transient:
                raise self._hold_unknown_payout(quote, e) from e
            raise await self._compensate(quote, e) from e

        completed = self.ledger.transition(
            quote.id, QuoteStatus.COMPLETED,
            stage=OfframpStage.COMPLETE.value,
            external_reference=payout.transfer_reference,
            payout_status=payout.status,
        )
        self.journal.sync_quote(
            completed, QuoteStatus.COMPLETED.value, reference=payout.transfer_reference,
            metadata={
                "transferReference": payout.transfer_reference,
                "ngnAmount": float(completed.fiat_amount),
                "isMock": payout.is_mock,
            },
        )
        logger.info("Offramp %s completed: transfer %s (%s)", quote.id, payout.transfer_reference, payout.status)
        return _settlement(completed)

    def _hold_unknown_payout(self, quote: Quote, error: PaymentGatewayError) -> PayoutOutcomeUnknownError:
        message = f"Payout outcome unknown: {error.message}"
        held = self.ledger.annotate(quote.id, QuoteStatus.PROCESSING, payout_status="unknown", error=message)
        self.journal.sync_quote(held, QuoteStatus.PROCESSING.value,
                                metadata={"payoutOutcomeUnknown": True, "error": error.message})
        logger.critical(
            "PAYOUT OUTCOME UNKNOWN for %s: %r. NGN %s to %s may have been sent; "
            "reconcile with the gateway before refunding %s USDC to %s",
            quote.id, error.message, quote.fiat_amount, quote.counterparty.get("bank_account"),
            quote.stable_amount, quote.owner_address,
        )
        return PayoutOutcomeUnknownError(
            f"{message}. The transfer may still complete; do not retry or refund before reconciling.",
            quote.id,
        )

    async def _compensate(self, quote: Quote, error: PaymentGatewayError) -> SettlementFailedError:
        """Fail the quote, make the one automatic refund and return the error to raise."""
        message = f"Payout failed: {error.message}"
        self.fail(quote.id, message, refundAttempted=True)
        reason = f"Bank transfer failed: {error.message}"

        try:
            if not quote.owner_address:
                raise ValidationError("No refund address known for this quote", quote.id)
            refund = await self._send_refund(
                quote.owner_address, quote.stable_amount, quote.chain_tx_hash, reason, quote_id=quote.id,
            )
        except ConfirmationPendingError as pending:
            outcome = RefundOutcome(success=False, stable_amount=quote.stable_amount,
                                    tx_hash=pending.tx_hash, error=pending.message, pending=True)
            self._record_refund_outcome(quote.id, outcome)
            logger.error(
                "Refund for %s not confirmed yet (tx %s): %s. Do not refund again until it settles",
                quote.id, pending.tx_hash or "unknown", pending.message,
            )
            return SettlementFailedError(
                f"{message}. Refund of {quote.stable_amount} {STABLE_CURRENCY} is pending "
                f"(tx {pending.tx_hash or 'unknown'}).",
                quote.id,
                outcome,
            )
        except DomainError as refund_error:
            outcome = RefundOutcome(success=False, stable_amount=quote.stable_amount,
                                    tx_hash=getattr(refund_error, "tx_hash", None), error=refund_error.message)
            self._record_refund_outcome(quote.id, outcome)
            logger.critical(
                "SETTLEMENT AND REFUND FAILED for %s: payout error %r, refund error %r. "
                "%s USDC from %s (tx %s) needs manual refund",
                quote.id, error.message, refund_error.message,
                quote.stable_amount, quote.owner_address, quote.chain_tx_hash,
            )
            return SettlementAndRefundFailedError(
                f"{message}. Refund also failed: {refund_error.message}. Manual intervention required.",
                quote.id,
                outcome,
                settlement_error=error.message,
            )

        outcome = RefundOutcome(success=True, stable_amount=refund.stable_amount, tx_hash=refund.tx_hash)
        self._record_refund_outcome(quote.id, outcome)
        return SettlementFailedError(
            f"{message}. Your USDC has been refunded to your wallet.", quote.id, outcome,
        )

    def _record_refund_outcome(self, quote_id: str, outcome: RefundOutcome) -> None:
        quote = self.ledger.annotate(quote_id, QuoteStatus.FAILED, refund=outcome.to_json())
        self.journal.sync_quote(quote, QuoteStatus.FAILED.value, metadata={"refund": outcome.to_json()})

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------
    async def refund(self, user_address: str, stable_amount: Any, original_tx_hash: Optional[str] = None,
                     reason: Optional[str] = None) -> RefundResult:
        """
        Operator-triggered refund of USDC from custody.

        Raises:
            ValidationError: Bad address, amount or original tx hash
            ChainError: Insufficient custody balance or failed transfer
            ConfirmationPendingError: Refund sent but not yet confirmed
        """
        if not validate_address(user_address):
            raise ValidationError("Invalid user address")
        amount = parse_positive_amount(stable_amount)
        if amount is None or quantize_stable(amount) <= 0:
            raise ValidationError("Invalid USDC amount")
        if original_tx_hash and not validate_tx_hash(original_tx_hash):
            raise ValidationError("Invalid original transaction hash")
        reason = reason or "Manual refund"
        logger.warning("Manual refund requested: %s USDC to %s (original tx %s): %s",
                       amount, user_address, original_tx_hash or "-", reason)
        return await self._send_refund(user_address, quantize_stable(amount), original_tx_hash, reason)

    async def _send_refund(self, to_address: str, amount: Any, original_tx_hash: Optional[str], reason: str,
                           quote_id: Optional[str] = None) -> RefundResult:
        balance = await self.chain.get_token_balance(self.chain.custody_address)
        if balance < amount:
            raise ChainError(
                ChainErrorKind.INSUFFICIENT_BALANCE,
                f"Insufficient treasury balance for refund: {balance} {STABLE_CURRENCY} available, {amount} required",
                reference=quote_id,
            )
        try:
            tx_hash = await self.submit_transfer(to_address, amount, quote_id or to_address)
        except ChainError as e:
            if e.kind not in AMBIGUOUS_SEND_KINDS:
                raise
            raise ConfirmationPendingError(
                f"Refund transfer state unknown: {e.message}; check custody before retrying", quote_id,
            ) from e
        await self.wait_for_confirmation(tx_hash, quote_id or tx_hash)

        self.journal.record(
            JournalType.REFUND,
            to_address,
            amount,
            STABLE_CURRENCY,
            QuoteStatus.COMPLETED.value,
            chain_tx_hash=tx_hash,
            reference=quote_id or original_tx_hash,
            metadata={"reason": reason, "originalTxHash": original_tx_hash, "quoteId": quote_id},
        )
        logger.info("Refunded %s USDC to %s (tx=%s, original=%s): %s",
                    amount, to_address, tx_hash, original_tx_hash or "-", reason)
        return RefundResult(
            tx_hash=tx_hash,
            to_address=to_address,
            stable_amount=amount,
            reason=reason,
            original_tx_hash=original_tx_hash,
        )

    # ------------------------------------------------------------------
    # Mock payouts
    # ------------------------------------------------------------------
    def mock_transfers(self) -> list:
        """Simulated payouts, when the gateway runs in mock mode."""
        lister = getattr(self.gateway, "list_mock_transfers", None)
        return lister() if lister and getattr(self.gateway, "mock_payouts", False) else []

    def mock_transfer(self, transfer_reference: str) -> Optional[Dict[str, Any]]:
        getter = getattr(self.gateway, "get_mock_transfer", None)
        if getter is None or not getattr(self.gateway, "mock_payouts", False):
            return None
        return getter(transfer_reference)


def _settlement(quote: Quote, already_processed: bool = False) -> OfframpSettlement:
    return OfframpSettlement(
        quote_id=quote.id,
        transfer_reference=quote.external_reference or "",
        fiat_amount=quote.fiat_amount,
        transfer_status=quote.payout_status or "pending",
        chain_tx_hash=quote.chain_tx_hash or "",
        already_processed=already_processed,
    )
