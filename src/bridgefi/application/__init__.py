# src/bridgefi/application/__init__.py
"""
Application Layer - Use Cases and Services

This package contains the settlement core: the rate oracle, the quote
ledger, the on-ramp and off-ramp settlement executors and the transaction
journal. Adapters are reached only through their interfaces.
"""

from bridgefi.application.health import HealthChecker, HealthStatus
from bridgefi.application.journal import TransactionJournal
from bridgefi.application.offramp import OfframpExecutor
from bridgefi.application.onramp import OnrampExecutor
from bridgefi.application.quote_ledger import QuoteLedger, ReconstructionData
from bridgefi.application.rate_oracle import RateOracle

__all__ = [
    "HealthChecker",
    "HealthStatus",
    "OfframpExecutor",
    "OnrampExecutor",
    "QuoteLedger",
    "RateOracle",
    "ReconstructionData",
    "TransactionJournal",
]
