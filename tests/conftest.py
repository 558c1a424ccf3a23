# tests/conftest.py
"""
Shared Test Fixtures - Fakes for the External Systems

Provides in-process stand-ins for the rate sources, the payment gateway and
the chain, plus wired ledger/journal/executor fixtures over a MemoryStore.
The fakes count every call so tests can assert "exactly one transfer".

Files that USE this module:
- pytest (fixture discovery for every test module)

Files that this module USES:
- bridgefi.adapters.* (interfaces the fakes implement)
- bridgefi.application.* (services under test)
"""
import asyncio  # Yield points inside fakes so concurrent callers interleave
import json  # Webhook bodies
from collections import deque  # Scripted responses consumed in order
from datetime import datetime, timedelta, timezone  # Controllable clock
from decimal import Decimal  # Monetary values
from typing import Any, Dict, List, Optional

import pytest  # Testing framework for writing and running tests

from bridgefi.adapters.chain.base import TokenTransfer, TxReceipt
from bridgefi.adapters.payments.base import ChargeInit, ChargeVerification, PayoutResult
from bridgefi.adapters.payments.paystack import compute_signature
from bridgefi.adapters.persistence import MemoryStore
from bridgefi.adapters.providers.base import RateSource, RateSourceError
from bridgefi.application import (
    OfframpExecutor,
    OnrampExecutor,
    QuoteLedger,
    RateOracle,
    TransactionJournal,
)

USER = "0x1111111111111111111111111111111111111111"
CUSTODY = "0x9999999999999999999999999999999999999999"
TOKEN = "0x0d2afc5b522affdd2e55a541acec556611a0196f"
USER_TX = "0x" + "ab" * 32
OTHER_TX = "0x" + "cd" * 32
WEBHOOK_SECRET = "whsec_test"


class MutableClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FixedRateSource(RateSource):
    """Rate source answering a fixed NGN per USDC, or failing on demand."""

    def __init__(self, rate: str = "1500", name: str = "Fixed"):
        super().__init__(url="http://rates.invalid", timeout=1.0)
        self.rate = Decimal(rate)
        self.name = name
        self.fail = False
        self.calls = 0

    def parse(self, data: Any) -> Optional[Decimal]:
        return self.rate

    def fiat_per_stable(self) -> Decimal:
        self.calls += 1
        if self.fail:
            raise RateSourceError(f"{self.name} down")
        return self.rate


class FakeGateway:
    """
    Payment gateway spy.

    ``statuses`` is consumed one per verify call (an exception instance is
    raised instead of returned); once empty, ``default_status`` is used.
    """

    def __init__(self):
        self.webhook_secret = WEBHOOK_SECRET
        self.mock_payouts = False
        self.default_status = "success"
        self.statuses: deque = deque()
        self.charges: Dict[str, Decimal] = {}
        self.paid_amounts: Dict[str, Decimal] = {}
        self.verify_calls = 0
        self.init_error: Optional[Exception] = None
        self.recipient_error: Optional[Exception] = None
        self.payout_error: Optional[Exception] = None
        self.recipients: List[Dict[str, str]] = []
        self.payouts: List[Dict[str, Any]] = []

    async def initialize_charge(self, amount: Decimal, email: str, reference: str,
                                metadata: Optional[Dict[str, Any]] = None) -> ChargeInit:
        if self.init_error:
            raise self.init_error
        self.charges[reference] = amount
        return ChargeInit(reference=reference, authorization_url=f"https://pay.test/{reference}")

    async def verify_charge(self, reference: str) -> ChargeVerification:
        self.verify_calls += 1
        await asyncio.sleep(0)
        status = self.statuses.popleft() if self.statuses else self.default_status
        if isinstance(status, Exception):
            raise status
        amount = self.paid_amounts.get(reference, self.charges.get(reference, Decimal("100000000")))
        return ChargeVerification(reference=reference, status=status, amount=amount, paid_at="2025-01-01T12:01:00Z")

    async def create_payout_recipient(self, bank_account: str, bank_code: str, account_name: str) -> str:
        if self.recipient_error:
            raise self.recipient_error
        self.recipients.append({"bank_account": bank_account, "bank_code": bank_code, "account_name": account_name})
        return f"RCP_{len(self.recipients)}"

    async def initiate_payout(self, recipient_code: str, amount: Decimal, reference: str,
                              reason: str) -> PayoutResult:
        await asyncio.sleep(0)
        if self.payout_error:
            raise self.payout_error
        transfer_reference = f"TRF_{len(self.payouts) + 1}"
        self.payouts.append({
            "transferReference": transfer_reference,
            "recipient": recipient_code,
            "amount": amount,
            "reference": reference,
            "reason": reason,
        })
        return PayoutResult(
            transfer_reference=transfer_reference,
            status="pending",
            amount=amount,
            recipient_code=recipient_code,
            is_mock=self.mock_payouts,
        )

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        return bool(signature) and compute_signature(raw_body, self.webhook_secret) == signature

    def list_mock_transfers(self) -> List[Dict[str, Any]]:
        return [{**p, "amount": float(p["amount"])} for p in self.payouts]

    def get_mock_transfer(self, transfer_reference: str) -> Optional[Dict[str, Any]]:
        for transfer in self.list_mock_transfers():
            if transfer["transferReference"] == transfer_reference:
                return transfer
        return None


class FakeChain:
    """
    Chain client spy bound to the custody address.

    ``confirm_failures`` is consumed one per confirmation wait; each entry is
    raised instead of returning a receipt, and a None entry lets that wait
    succeed.

    Receipts for hashes this fake did not send describe a user deposit of
    ``deposit_amount`` of ``deposit_token`` to ``deposit_recipient``.
    """

    def __init__(self):
        self.custody_address = CUSTODY
        self.token_address = TOKEN
        self.deposit_amount = Decimal("1000")
        self.deposit_token = TOKEN
        self.deposit_recipient = CUSTODY
        self.balance = Decimal("1000000")
        self.sent: List[Dict[str, Any]] = []
        self.send_error: Optional[Exception] = None
        self.confirm_failures: deque = deque()
        self.confirm_calls: List[str] = []
        self.senders: Dict[str, str] = {}

    async def get_balance(self, address: str) -> int:
        return 10 ** 18

    async def get_token_balance(self, address: str) -> Decimal:
        return self.balance

    async def estimate_gas(self, to_address: str, amount: Decimal) -> int:
        return 60_000

    async def send_native_transfer(self, to_address: str, amount_wei: int) -> str:
        raise NotImplementedError

    async def send_token_transfer(self, to_address: str, amount: Decimal) -> str:
        await asyncio.sleep(0)
        if self.send_error:
            raise self.send_error
        tx_hash = "0x" + format(len(self.sent) + 1, "064x")
        self.sent.append({"to": to_address, "amount": amount, "tx_hash": tx_hash})
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int = 1,
                                    timeout: Optional[float] = None) -> TxReceipt:
        self.confirm_calls.append(tx_hash)
        await asyncio.sleep(0)
        failure = self.confirm_failures.popleft() if self.confirm_failures else None
        if failure is not None:
            raise failure
        return self._receipt(tx_hash, confirmations)

    def _receipt(self, tx_hash: str, confirmations: int) -> TxReceipt:
        ours = next((s for s in self.sent if s["tx_hash"] == tx_hash), None)
        if ours is not None:
            transfer = TokenTransfer(TOKEN, CUSTODY, ours["to"], ours["amount"])
            sender = CUSTODY
        else:
            sender = self.senders.get(tx_hash, USER)
            transfer = TokenTransfer(self.deposit_token, sender, self.deposit_recipient, self.deposit_amount)
        return TxReceipt(
            tx_hash=tx_hash,
            status=1,
            block_number=100,
            from_address=sender,
            to_address=TOKEN,
            confirmations=confirmations,
            token_transfers=(transfer,),
        )

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        return None


async def no_sleep(seconds: float) -> None:
    no_sleep.calls += 1


no_sleep.calls = 0


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def rate_source():
    return FixedRateSource("1500")


@pytest.fixture
def oracle(rate_source, clock):
    return RateOracle([rate_source], margin=Decimal("0"), clock=clock)


@pytest.fixture
def ledger(store, oracle, clock):
    return QuoteLedger(store, oracle, clock=clock)


@pytest.fixture
def journal(store):
    return TransactionJournal(store)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def onramp(ledger, journal, gateway, chain, clock):
    no_sleep.calls = 0
    return OnrampExecutor(ledger, journal, gateway, chain, sleep=no_sleep, clock=clock)


@pytest.fixture
def offramp(ledger, journal, gateway, chain, clock):
    return OfframpExecutor(ledger, journal, gateway, chain, clock=clock)


def signed(event: Dict[str, Any]) -> tuple:
    """Raw webhook body and its valid signature."""
    body = json.dumps(event).encode("utf-8")
    return body, compute_signature(body, WEBHOOK_SECRET)
