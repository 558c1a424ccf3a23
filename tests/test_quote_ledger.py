# tests/test_quote_ledger.py
"""
Quote Ledger Tests - Pricing, Transitions and Reconstruction

Files that USE this module:
- pytest (test runner executes these tests)

Files that this module USES:
- bridgefi.application.quote_ledger (QuoteLedger, ReconstructionData)
- bridgefi.domain.models (Direction, QuoteStatus)
- tests.conftest (ledger fixtures)
"""
import re
from datetime import timedelta
from decimal import Decimal

import pytest

from bridgefi.application.quote_ledger import ReconstructionData
from bridgefi.domain.errors import QuoteAlreadyProcessedError, QuoteNotFoundError, ValidationError
from bridgefi.domain.models import Direction, QuoteStatus
from conftest import USER

BANK = {"bank_account": "0123456789", "bank_code": "058", "account_name": "Ada Obi"}


class TestCreateQuote:
    @pytest.mark.asyncio
    async def test_onramp_pricing(self, ledger):
        quote = await ledger.create_quote(Direction.ONRAMP, "10000", {"address": USER}, owner_address=USER)

        assert quote.fiat_amount == Decimal("10000.00")
        assert quote.stable_amount == Decimal("6.666666")
        assert quote.rate_at_creation == Decimal("1500")
        assert quote.status is QuoteStatus.PENDING
        assert quote.stage == "payment_pending"
        assert quote.expires_at - quote.created_at == timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_offramp_pricing(self, ledger):
        quote = await ledger.create_quote(Direction.OFFRAMP, 10, BANK)

        assert quote.stable_amount == Decimal("10.000000")
        assert quote.fiat_amount == Decimal("15000.00")
        assert quote.counterparty == BANK
        assert quote.stage == "awaiting_chain_receipt"
        assert quote.expires_at - quote.created_at == timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_quote_id_format(self, ledger):
        quote = await ledger.create_quote(Direction.ONRAMP, 5000, {"address": USER})
        assert re.match(r"^ONRAMP_\d+_[0-9a-f]{16}$", quote.id)

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, ledger):
        ids = {(await ledger.create_quote(Direction.OFFRAMP, 1, BANK)).id for _ in range(20)}
        assert len(ids) == 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, "abc", None, "NaN", "Infinity"])
    async def test_rejects_bad_amounts(self, ledger, amount):
        with pytest.raises(ValidationError):
            await ledger.create_quote(Direction.ONRAMP, amount, {"address": USER})

    @pytest.mark.asyncio
    async def test_rejects_bad_address(self, ledger):
        with pytest.raises(ValidationError, match="Invalid user address"):
            await ledger.create_quote(Direction.ONRAMP, 1000, {"address": "0x123"})

    @pytest.mark.asyncio
    async def test_rejects_missing_bank_details(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.create_quote(Direction.OFFRAMP, 10, {"bank_account": "0123456789", "bank_code": "058"})

    @pytest.mark.asyncio
    async def test_stored_and_readable(self, ledger):
        quote = await ledger.create_quote(Direction.ONRAMP, 1000, {"address": USER})
        stored = ledger.get_quote(quote.id)
        assert stored == quote
        assert ledger.get_quote("ONRAMP_0_missing") is None


class TestTransitions:
    @pytest.mark.asyncio
    async def test_happy_path(self, ledger):
        quote = await ledger.create_quote(Direction.ONRAMP, 1000, {"address": USER})

        processing = ledger.transition(quote.id, QuoteStatus.PROCESSING, stage="chain_sending")
        completed = ledger.transition(quote.id, QuoteStatus.COMPLETED, stage="complete", chain_tx_hash="0xabc")

        assert processing.version == quote.version + 1
        assert completed.status is QuoteStatus.COMPLETED
        assert ledger.require_quote(quote.id).chain_tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_updated_at_follows_ledger_clock(self, ledger, clock):
        quote = await ledger.create_quote(Direction.ONRAMP, 1000, {"address": USER})

        clock.advance(90)
        processing = ledger.transition(quote.id, QuoteStatus.PROCESSING, stage="chain_sending")
        assert processing.updated_at == clock.now

        clock.advance(5)
        ledger.annotate(quote.id, QuoteStatus.PROCESSING, chain_tx_hash="0xabc")
        assert ledger.require_quote(quote.id).updated_at == clock.now

    @pytest.mark.asyncio
    async def test_terminal_is_final(self, ledger):
        quote = await ledger.create_quote(Direction.ONRAMP, 1000, {"address": USER})
        ledger.transition(quote.id, QuoteStatus.FAILED, error="boom")

        for status in (QuoteStatus.PENDING, QuoteStatus.PROCESSING, QuoteStatus.COMPLETED, QuoteStatus.FAILED):
            with pytest.raises(QuoteAlreadyProcessedError, match="Quote already processed with status: failed"):
                ledger.transition(quote.id, status)

    @pytest.mark.asyncio
    async def test_pending_cannot_skip_to_completed(self, ledger):
        quote = await ledger.create_quote(Direction.ONRAMP, 1000, {"address": USER})
        with pytest.raises(QuoteAlreadyProcessedError):
            ledger.transition(quote.id, QuoteStatus.COMPLETED)
        assert ledger.require_quote(quote.id).status is QuoteStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_claim_loses(self, ledger):
        quote = await ledger.create_quote(Direction.ONRAMP, 1000, {"address": USER})
        ledger.transition(quote.id, QuoteStatus.PROCESSING)
        with pytest.raises(QuoteAlreadyProcessedError):
            ledger.transition(quote.id, QuoteStatus.PROCESSING)

    def test_unknown_quote(self, ledger):
        with pytest.raises(QuoteNotFoundError):
            ledger.transition("ONRAMP_1_nope", QuoteStatus.PROCESSING)

    @pytest.mark.asyncio
    async def test_annotate_requires_expected_status(self, ledger):
        quote = await ledger.create_quote(Direction.ONRAMP, 1000, {"address": USER})
        annotated = ledger.annotate(quote.id, QuoteStatus.PENDING, stage="payment_verifying")
        assert annotated.stage == "payment_verifying"
        assert annotated.status is QuoteStatus.PENDING

        with pytest.raises(QuoteAlreadyProcessedError):
            ledger.annotate(quote.id, QuoteStatus.PROCESSING, stage="chain_sending")


class TestReconstruction:
    @pytest.mark.asyncio
    async def test_existing_quote_returned_untouched(self, ledger):
        quote = await ledger.create_quote(Direction.ONRAMP, 1000, {"address": USER})
        data = ReconstructionData(amount=Decimal("99999"), owner_address=USER)
        assert await ledger.reconstruct_if_missing(quote.id, data) == quote

    @pytest.mark.asyncio
    async def test_onramp_rebuilt_at_current_rate(self, ledger):
        data = ReconstructionData.from_request(Direction.ONRAMP, {"ngnAmount": 3000, "userAddress": USER})
        quote = await ledger.reconstruct_if_missing("ONRAMP_1700000000000_abc", data)

        assert quote.reconstructed is True
        assert quote.fiat_amount == Decimal("3000.00")
        assert quote.stable_amount == Decimal("2.000000")
        assert quote.counterparty == {"address": USER}
        assert quote.status is QuoteStatus.PENDING

    @pytest.mark.asyncio
    async def test_offramp_rebuilt_from_bank_details(self, ledger):
        data = ReconstructionData.from_request(Direction.OFFRAMP, {
            "usdcAmount": "2", "bankAccount": "0123456789", "bankCode": "058", "accountName": "Ada Obi",
        })
        quote = await ledger.reconstruct_if_missing("OFFRAMP_1700000000000_abc", data)
        assert quote.fiat_amount == Decimal("3000.00")
        assert quote.counterparty == BANK

    @pytest.mark.parametrize("direction,body", [
        (Direction.ONRAMP, {"fiatAmount": 3000}),
        (Direction.OFFRAMP, {"stableAmount": "2"}),
    ])
    def test_generic_amount_names(self, direction, body):
        data = ReconstructionData.from_request(direction, {**body, "userAddress": USER})
        assert data.amount == Decimal(str(next(iter(body.values()))))
        assert data.owner_address == USER

    def test_wallet_name_wins_over_generic_name(self):
        data = ReconstructionData.from_request(Direction.ONRAMP, {"ngnAmount": 3000, "fiatAmount": 9000})
        assert data.amount == Decimal("3000")

    @pytest.mark.asyncio
    async def test_reconstruction_happens_once(self, ledger, rate_source):
        first = ReconstructionData(amount=Decimal("3000"), owner_address=USER)
        original = await ledger.reconstruct_if_missing("ONRAMP_1_x", first)

        rate_source.rate = Decimal("3000")
        second = ReconstructionData(amount=Decimal("9000"), owner_address=USER)
        again = await ledger.reconstruct_if_missing("ONRAMP_1_x", second)

        assert again == original

    @pytest.mark.asyncio
    async def test_insufficient_data_is_not_found(self, ledger):
        with pytest.raises(QuoteNotFoundError, match="server was restarted"):
            await ledger.reconstruct_if_missing("ONRAMP_1_x", None)
        with pytest.raises(QuoteNotFoundError):
            await ledger.reconstruct_if_missing("ONRAMP_1_x", ReconstructionData(amount=Decimal("10")))
        with pytest.raises(QuoteNotFoundError):
            await ledger.reconstruct_if_missing(
                "OFFRAMP_1_x", ReconstructionData(amount=Decimal("10"), bank_account="0123456789"),
            )

    @pytest.mark.asyncio
    async def test_unknown_prefix_rejected(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.reconstruct_if_missing("SWAP_1_x", ReconstructionData(amount=Decimal("1"), owner_address=USER))


class TestChainTxBinding:
    def test_hash_binds_to_one_quote(self, ledger):
        tx = "0x" + "ef" * 32
        assert ledger.claim_chain_tx(tx, "OFFRAMP_1_a") is True
        assert ledger.claim_chain_tx(tx, "OFFRAMP_1_a") is True
        assert ledger.claim_chain_tx(tx.upper().replace("0X", "0x"), "OFFRAMP_2_b") is False
