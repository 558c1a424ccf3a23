# tests/test_journal.py
"""
Transaction Journal Tests - Recording, Querying and Stats

Files that USE this module:
- pytest (test runner executes these tests)

Files that this module USES:
- bridgefi.application.journal (TransactionJournal)
- bridgefi.domain.models (JournalType)
"""
from decimal import Decimal

import pytest

from bridgefi.domain.models import Direction, JournalType
from conftest import USER

OTHER = "0x2222222222222222222222222222222222222222"


class TestRecordAndUpdate:
    def test_record_and_get(self, journal):
        entry = journal.record(JournalType.ONRAMP, USER, Decimal("6.5"), "USDC", "pending", entry_id="ONRAMP_1_a")

        stored = journal.get("ONRAMP_1_a")
        assert stored.owner_address == USER
        assert stored.amount == Decimal("6.5")
        assert stored.status == "pending"
        assert entry.version == 1

    def test_generated_id(self, journal):
        entry = journal.record(JournalType.REFUND, USER, Decimal("1"), "USDC", "completed")
        assert entry.id.startswith("refund_")

    def test_record_same_id_updates(self, journal):
        journal.record(JournalType.ONRAMP, USER, Decimal("1"), "USDC", "pending", entry_id="ONRAMP_1_a")
        journal.record(JournalType.ONRAMP, USER, Decimal("1"), "USDC", "completed", entry_id="ONRAMP_1_a",
                       chain_tx_hash="0xabc")

        page = journal.query(USER)
        assert page.total == 1
        assert page.entries[0].status == "completed"
        assert page.entries[0].chain_tx_hash == "0xabc"

    def test_update_merges_metadata(self, journal):
        journal.record(JournalType.OFFRAMP, USER, Decimal("10"), "USDC", "pending", entry_id="OFFRAMP_1_a",
                       metadata={"ngnAmount": 15000.0})
        updated = journal.update("OFFRAMP_1_a", "failed", metadata={"error": "Payout failed"})

        assert updated.metadata == {"ngnAmount": 15000.0, "error": "Payout failed"}
        assert updated.version == 2

    def test_update_missing_raises(self, journal):
        with pytest.raises(KeyError):
            journal.update("nope", "completed")


class TestQuery:
    @pytest.fixture
    def populated(self, journal):
        journal.record(JournalType.ONRAMP, USER, Decimal("1"), "USDC", "completed")
        journal.record(JournalType.ONRAMP, USER, Decimal("2"), "USDC", "failed")
        journal.record(JournalType.OFFRAMP, USER, Decimal("3"), "USDC", "completed")
        journal.record(JournalType.REFUND, USER, Decimal("3"), "USDC", "completed")
        journal.record(JournalType.ONRAMP, OTHER, Decimal("9"), "USDC", "completed")
        return journal

    def test_owner_is_case_insensitive(self, journal):
        mixed = "0xAbCdEf0000000000000000000000000000000001"
        journal.record(JournalType.ONRAMP, mixed, Decimal("1"), "USDC", "completed")
        assert journal.query(mixed.lower()).total == 1
        assert journal.query(mixed.upper().replace("0X", "0x")).total == 1

    def test_filters(self, populated):
        assert populated.query(USER, type="onramp").total == 2
        assert populated.query(USER, status="completed").total == 3
        assert populated.query(USER, type="onramp", status="failed").total == 1

    def test_paging(self, populated):
        page = populated.query(USER, limit=3, offset=2)
        assert page.total == 4
        assert len(page.entries) == 2
        assert page.to_projection()["offset"] == 2

    def test_limit_is_clamped(self, populated):
        assert populated.query(USER, limit=10_000).limit == 500

    def test_all_entries(self, populated):
        assert populated.all_entries().total == 5

    def test_stats(self, populated):
        stats = populated.stats(USER)
        assert stats["total"] == 4
        assert stats["onramp"] == {"total": 2, "completed": 1, "pending": 0, "processing": 0, "failed": 1}
        assert stats["refund"]["completed"] == 1
        assert populated.stats()["total"] == 5


class TestSyncQuote:
    @pytest.mark.asyncio
    async def test_creates_then_updates(self, journal, ledger):
        quote = await ledger.create_quote(
            Direction.OFFRAMP, 10, {"bank_account": "0123456789", "bank_code": "058", "account_name": "Ada Obi"},
            owner_address=USER,
        )
        created = journal.sync_quote(quote, "processing", chain_tx_hash="0xabc")
        assert created.id == quote.id
        assert created.type is JournalType.OFFRAMP
        assert created.metadata["bankAccount"] == "0123456789"
        assert created.metadata["exchangeRate"] == 1500.0

        updated = journal.sync_quote(quote, "completed", reference="TRF_1")
        assert updated.status == "completed"
        assert updated.reference == "TRF_1"
        assert updated.chain_tx_hash == "0xabc"
