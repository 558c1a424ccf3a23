# tests/test_onramp.py
"""
On-Ramp Executor Tests - NGN Payment to USDC Transfer

Covers initiation, the bounded verification poll, exactly-once transfer
under concurrent webhook and poll, webhook authentication, late payments
and chain failures.

Files that USE this module:
- pytest (test runner executes these tests)

Files that this module USES:
- bridgefi.application.onramp (OnrampExecutor)
- tests.conftest (FakeGateway, FakeChain, fixtures)
"""
import asyncio
from decimal import Decimal

import pytest

from bridgefi.adapters.payments.paystack import compute_signature
from bridgefi.application.onramp import OnrampExecutor
from bridgefi.domain.errors import (
    ChainError,
    ChainErrorKind,
    ConfirmationPendingError,
    InvalidSignatureError,
    PaymentFailedError,
    PaymentGatewayError,
    PaymentVerificationTimeoutError,
    QuoteAlreadyProcessedError,
    QuoteNotFoundError,
    SettlementInProgressError,
    ValidationError,
)
from bridgefi.domain.models import QuoteStatus
from conftest import USER, WEBHOOK_SECRET, MutableClock, no_sleep, signed


async def _initiate(onramp, amount="10000"):
    view = await onramp.initiate(amount, USER)
    return view["quoteId"]


def _charge_success(reference, amount_kobo=1_000_000):
    return signed({"event": "charge.success", "data": {"reference": reference, "amount": amount_kobo}})


class TestInitiate:
    @pytest.mark.asyncio
    async def test_returns_quote_and_payment_link(self, onramp, gateway, journal):
        view = await onramp.initiate("10000", USER)

        assert view["usdcAmount"] == 6.666666
        assert view["ngnAmount"] == 10000.0
        assert view["status"] == "pending"
        assert view["reference"] == view["quoteId"]
        assert view["paymentLink"] == f"https://pay.test/{view['quoteId']}"
        assert gateway.charges[view["quoteId"]] == Decimal("10000.00")

        entry = journal.get(view["quoteId"])
        assert entry.status == "pending"
        assert entry.owner_address == USER

    @pytest.mark.asyncio
    async def test_rejects_bad_address(self, onramp, gateway):
        with pytest.raises(ValidationError):
            await onramp.initiate("10000", "not-an-address")
        assert gateway.charges == {}

    @pytest.mark.asyncio
    async def test_gateway_failure_fails_quote(self, onramp, gateway, store):
        gateway.init_error = PaymentGatewayError("Invalid key")
        with pytest.raises(PaymentGatewayError):
            await onramp.initiate("10000", USER)

        quotes = list(store.values("quote:"))
        assert len(quotes) == 1
        assert quotes[0]["status"] == "failed"


class TestSettle:
    @pytest.mark.asyncio
    async def test_paid_quote_sends_usdc_once(self, onramp, chain, ledger, journal):
        reference = await _initiate(onramp)

        result = await onramp.settle(reference)

        assert len(chain.sent) == 1
        assert chain.sent[0]["to"] == USER
        assert chain.sent[0]["amount"] == Decimal("6.666666")
        assert result.tx_hash == chain.sent[0]["tx_hash"]
        assert result.already_processed is False

        quote = ledger.require_quote(reference)
        assert quote.status is QuoteStatus.COMPLETED
        assert quote.stage == "complete"
        entry = journal.get(reference)
        assert entry.status == "completed"
        assert entry.chain_tx_hash == result.tx_hash

    @pytest.mark.asyncio
    async def test_repeat_settle_returns_cached_result(self, onramp, chain, gateway):
        reference = await _initiate(onramp)
        first = await onramp.settle(reference)
        calls = gateway.verify_calls

        again = await onramp.settle(reference)

        assert again.already_processed is True
        assert again.tx_hash == first.tx_hash
        assert len(chain.sent) == 1
        assert gateway.verify_calls == calls

    @pytest.mark.asyncio
    async def test_underpayment_fails(self, onramp, gateway, chain, ledger):
        reference = await _initiate(onramp)
        gateway.paid_amounts[reference] = Decimal("5000")

        with pytest.raises(PaymentFailedError, match="less than quoted"):
            await onramp.settle(reference)
        assert chain.sent == []
        assert ledger.require_quote(reference).status is QuoteStatus.FAILED

    @pytest.mark.asyncio
    async def test_settle_after_failure_rejected(self, onramp, gateway):
        reference = await _initiate(onramp)
        gateway.default_status = "failed"
        with pytest.raises(PaymentFailedError):
            await onramp.settle(reference)
        with pytest.raises(QuoteAlreadyProcessedError):
            await onramp.settle(reference)

    @pytest.mark.asyncio
    async def test_insufficient_custody_balance(self, onramp, chain, ledger, journal):
        reference = await _initiate(onramp)
        chain.balance = Decimal("1")

        with pytest.raises(ChainError) as exc_info:
            await onramp.settle(reference)

        assert exc_info.value.kind is ChainErrorKind.INSUFFICIENT_BALANCE
        assert exc_info.value.reference == reference
        assert chain.sent == []
        assert ledger.require_quote(reference).status is QuoteStatus.FAILED
        assert journal.get(reference).metadata["errorKind"] == "insufficient_balance"

    @pytest.mark.asyncio
    async def test_reverted_transfer_fails_quote(self, onramp, chain, ledger):
        reference = await _initiate(onramp)
        chain.confirm_failures.append(ChainError(ChainErrorKind.REVERTED, "reverted"))

        with pytest.raises(ChainError):
            await onramp.settle(reference)
        quote = ledger.require_quote(reference)
        assert quote.status is QuoteStatus.FAILED
        assert "reverted" in quote.error

    @pytest.mark.asyncio
    async def test_duplicate_submission_reuses_hash(self, onramp, chain, ledger):
        reference = await _initiate(onramp)
        known = "0x" + "12" * 32
        chain.send_error = ChainError(ChainErrorKind.DUPLICATE_SUBMISSION, "already known", tx_hash=known)

        result = await onramp.settle(reference)

        assert result.tx_hash == known
        assert ledger.require_quote(reference).status is QuoteStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_timed_out_broadcast_follows_signed_hash(self, onramp, chain, ledger):
        reference = await _initiate(onramp)
        signed_hash = "0x" + "56" * 32
        chain.send_error = ChainError(ChainErrorKind.TIMEOUT, "RPC eth_sendRawTransaction timeout", tx_hash=signed_hash)

        result = await onramp.settle(reference)

        assert result.tx_hash == signed_hash
        assert chain.confirm_calls == [signed_hash]
        assert ledger.require_quote(reference).status is QuoteStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_ambiguous_send_without_hash_holds_quote(self, onramp, chain, ledger, journal):
        reference = await _initiate(onramp)
        chain.send_error = ChainError(ChainErrorKind.TIMEOUT, "RPC eth_sendRawTransaction timeout")

        with pytest.raises(SettlementInProgressError, match="transfer state unknown"):
            await onramp.settle(reference)

        quote = ledger.require_quote(reference)
        assert quote.status is QuoteStatus.PROCESSING
        assert "transfer state unknown" in quote.error
        assert journal.get(reference).metadata["transferStateUnknown"] is True

        chain.send_error = None
        with pytest.raises(SettlementInProgressError):
            await onramp.settle(reference)
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_rejected_send_fails_quote(self, onramp, chain, ledger):
        reference = await _initiate(onramp)
        chain.send_error = ChainError(ChainErrorKind.RPC, "RPC eth_sendRawTransaction error: nonce too low")

        with pytest.raises(ChainError):
            await onramp.settle(reference)
        assert ledger.require_quote(reference).status is QuoteStatus.FAILED

    @pytest.mark.asyncio
    async def test_lock_released_after_settlement(self, onramp):
        reference = await _initiate(onramp)
        await onramp.settle(reference)
        assert onramp._locks == {}

    @pytest.mark.asyncio
    async def test_unconfirmed_transfer_resumes_without_resend(self, ledger, journal, gateway, chain, clock):
        onramp = OnrampExecutor(ledger, journal, gateway, chain, confirmation_max_waits=2, clock=clock)
        reference = await _initiate(onramp)
        for _ in range(2):
            chain.confirm_failures.append(ChainError(ChainErrorKind.TIMEOUT, "pending"))

        with pytest.raises(ConfirmationPendingError):
            await onramp.settle(reference)
        quote = ledger.require_quote(reference)
        assert quote.status is QuoteStatus.PROCESSING
        assert quote.chain_tx_hash == chain.sent[0]["tx_hash"]

        result = await onramp.settle(reference)

        assert len(chain.sent) == 1
        assert result.tx_hash == quote.chain_tx_hash
        assert ledger.require_quote(reference).status is QuoteStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reconstructs_missing_quote(self, onramp, chain, ledger):
        reference = "ONRAMP_1700000000000_0123456789abcdef"

        result = await onramp.settle(reference, {"ngnAmount": 3000, "userAddress": USER})

        assert result.stable_amount == Decimal("2.000000")
        assert chain.sent[0]["to"] == USER
        assert ledger.require_quote(reference).reconstructed is True

    @pytest.mark.asyncio
    async def test_missing_quote_without_data(self, onramp):
        with pytest.raises(QuoteNotFoundError):
            await onramp.settle("ONRAMP_1700000000000_0123456789abcdef")

    @pytest.mark.asyncio
    async def test_expired_quote_still_settles(self, ledger, journal, gateway, chain, clock):
        reference = await _initiate(OnrampExecutor(ledger, journal, gateway, chain))
        later = MutableClock(clock.now)
        later.advance(16 * 60)
        onramp = OnrampExecutor(ledger, journal, gateway, chain, clock=later)

        await onramp.settle(reference)

        assert len(chain.sent) == 1
        assert journal.get(reference).metadata["expired_at_settlement"] is True


class TestVerifyPayment:
    @pytest.mark.asyncio
    async def test_polls_until_paid(self, onramp, gateway, chain):
        reference = await _initiate(onramp)
        gateway.statuses.extend(["pending", "ongoing", "abandoned"])

        result = await onramp.verify_payment(reference)

        assert gateway.verify_calls == 4
        assert no_sleep.calls == 3
        assert result.tx_hash == chain.sent[0]["tx_hash"]

    @pytest.mark.asyncio
    async def test_gateway_5xx_is_retried(self, onramp, gateway, chain):
        reference = await _initiate(onramp)
        gateway.statuses.append(PaymentGatewayError("Paystack returned 502", transient=True, status_code=502))

        await onramp.verify_payment(reference)

        assert gateway.verify_calls == 2
        assert len(chain.sent) == 1

    @pytest.mark.asyncio
    async def test_permanent_gateway_error_aborts(self, onramp, gateway):
        reference = await _initiate(onramp)
        gateway.statuses.append(PaymentGatewayError("Transaction reference not found", status_code=400))

        with pytest.raises(PaymentGatewayError):
            await onramp.verify_payment(reference)
        assert gateway.verify_calls == 1

    @pytest.mark.asyncio
    async def test_definitive_failure_aborts(self, onramp, gateway, ledger):
        reference = await _initiate(onramp)
        gateway.statuses.extend(["pending", "failed"])

        with pytest.raises(PaymentFailedError):
            await onramp.verify_payment(reference)
        assert gateway.verify_calls == 2
        assert ledger.require_quote(reference).status is QuoteStatus.FAILED

    @pytest.mark.asyncio
    async def test_timeout_after_sixty_attempts(self, onramp, gateway, chain, ledger, journal):
        reference = await _initiate(onramp)
        gateway.default_status = "pending"

        with pytest.raises(PaymentVerificationTimeoutError, match="may still complete asynchronously"):
            await onramp.verify_payment(reference)

        assert gateway.verify_calls == 60
        assert no_sleep.calls == 59
        assert chain.sent == []
        quote = ledger.require_quote(reference)
        assert quote.status is QuoteStatus.FAILED
        assert "timeout" in quote.error
        assert journal.get(reference).status == "failed"


class TestWebhook:
    @pytest.mark.asyncio
    async def test_charge_success_settles(self, onramp, chain):
        reference = await _initiate(onramp)
        body, signature = _charge_success(reference)

        result = await onramp.handle_webhook(body, signature)

        assert result["processed"] is True
        assert result["txHash"] == chain.sent[0]["tx_hash"]

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, onramp, gateway, chain):
        reference = await _initiate(onramp)
        body, _ = _charge_success(reference)

        with pytest.raises(InvalidSignatureError):
            await onramp.handle_webhook(body, "deadbeef")
        with pytest.raises(InvalidSignatureError):
            await onramp.handle_webhook(body, None)
        assert gateway.verify_calls == 0
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_other_events_ignored(self, onramp, gateway):
        body, signature = signed({"event": "transfer.success", "data": {"reference": "TRF_1"}})
        assert await onramp.handle_webhook(body, signature) == {"received": True, "processed": False}

        body, signature = _charge_success("OFFRAMP_1_x")
        assert (await onramp.handle_webhook(body, signature))["processed"] is False
        assert gateway.verify_calls == 0

    @pytest.mark.asyncio
    async def test_webhook_and_poll_send_once(self, onramp, chain):
        reference = await _initiate(onramp)
        body, signature = _charge_success(reference)

        webhook_result, poll_result = await asyncio.gather(
            onramp.handle_webhook(body, signature),
            onramp.verify_payment(reference),
        )

        assert len(chain.sent) == 1
        assert webhook_result["txHash"] == poll_result.tx_hash == chain.sent[0]["tx_hash"]

    @pytest.mark.asyncio
    async def test_duplicate_deliveries_send_once(self, onramp, chain):
        reference = await _initiate(onramp)
        body, signature = _charge_success(reference)

        results = await asyncio.gather(*(onramp.handle_webhook(body, signature) for _ in range(5)))

        assert len(chain.sent) == 1
        assert all(r["processed"] for r in results)

    @pytest.mark.asyncio
    async def test_late_payment_after_timeout(self, onramp, gateway, chain, journal):
        reference = await _initiate(onramp)
        gateway.default_status = "pending"
        with pytest.raises(PaymentVerificationTimeoutError):
            await onramp.verify_payment(reference)

        gateway.default_status = "success"
        body, signature = _charge_success(reference)
        result = await onramp.handle_webhook(body, signature)

        assert result["latePayment"] is True
        assert chain.sent == []
        metadata = journal.get(reference).metadata
        assert metadata["late_payment"] is True
        assert metadata["latePaymentAmount"] == 10000.0

    @pytest.mark.asyncio
    async def test_malformed_body(self, onramp):
        body = b"not json"

        with pytest.raises(ValidationError):
            await onramp.handle_webhook(body, compute_signature(body, WEBHOOK_SECRET))
