# src/bridgefi/adapters/payments/__init__.py
"""
Payment Gateway Adapters

This package contains the payment processor integration used for NGN
charges (on-ramp) and NGN payouts (off-ramp).
"""

from bridgefi.adapters.payments.base import (
    ChargeInit,
    ChargeVerification,
    PaymentGateway,
    PayoutResult,
)
from bridgefi.adapters.payments.paystack import PaystackGateway, compute_signature

__all__ = [
    "ChargeInit",
    "ChargeVerification",
    "PaymentGateway",
    "PayoutResult",
    "PaystackGateway",
    "compute_signature",
]
