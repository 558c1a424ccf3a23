# src/bridgefi/adapters/payments/base.py
"""
Payment Gateway Interface

Defines what the settlement core needs from a payment processor. All
calls are network-bound and fallible; failures raise PaymentGatewayError
with ``transient`` set for timeouts, connection errors and 5xx responses.

Files that USE this module:
- bridgefi.adapters.payments.paystack (PaystackGateway implements PaymentGateway)
- bridgefi.application.onramp, bridgefi.application.offramp
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

# Processor statuses meaning "the customer has not finished paying yet"
UNSETTLED_CHARGE_STATUSES = frozenset({"abandoned", "ongoing", "pending", "processing", "queued"})
SUCCESS_CHARGE_STATUS = "success"


@dataclass(frozen=True)
class ChargeInit:
    reference: str
    authorization_url: str
    access_code: Optional[str] = None


@dataclass(frozen=True)
class ChargeVerification:
    reference: str
    status: str
    amount: Decimal  # NGN
    currency: str = "NGN"
    paid_at: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status == SUCCESS_CHARGE_STATUS

    @property
    def is_unsettled(self) -> bool:
        return self.status in UNSETTLED_CHARGE_STATUSES


@dataclass(frozen=True)
class PayoutResult:
    transfer_reference: str
    status: str
    amount: Decimal
    recipient_code: str
    is_mock: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


class PaymentGateway(Protocol):
    async def initialize_charge(self, amount: Decimal, email: str, reference: str,
                                metadata: Optional[Dict[str, Any]] = None) -> ChargeInit:
        ...

    async def verify_charge(self, reference: str) -> ChargeVerification:
        ...

    async def create_payout_recipient(self, bank_account: str, bank_code: str, account_name: str) -> str:
        ...

    async def initiate_payout(self, recipient_code: str, amount: Decimal, reference: str,
                              reason: str) -> PayoutResult:
        ...

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        ...
