# src/bridgefi/domain/__init__.py
"""
Domain Layer - Pure Business Objects

This package contains domain models and business rules.
No dependencies on infrastructure or external systems.
"""

from bridgefi.domain.models import (
    Direction,
    JournalEntry,
    JournalPage,
    JournalType,
    OfframpSettlement,
    OfframpStage,
    OnrampSettlement,
    OnrampStage,
    Quote,
    QuoteStatus,
    Rate,
    RefundOutcome,
    RefundResult,
)
from bridgefi.domain.errors import (
    ChainError,
    ChainErrorKind,
    ConfigurationError,
    ConfirmationPendingError,
    DomainError,
    InvalidSignatureError,
    PaymentFailedError,
    PaymentGatewayError,
    PaymentNotSettledError,
    PaymentVerificationTimeoutError,
    PayoutOutcomeUnknownError,
    QuoteAlreadyProcessedError,
    QuoteNotFoundError,
    RateUnavailableError,
    SettlementAndRefundFailedError,
    SettlementFailedError,
    SettlementInProgressError,
    ValidationError,
)

__all__ = [
    "Direction",
    "JournalEntry",
    "JournalPage",
    "JournalType",
    "OfframpSettlement",
    "OfframpStage",
    "OnrampSettlement",
    "OnrampStage",
    "Quote",
    "QuoteStatus",
    "Rate",
    "RefundOutcome",
    "RefundResult",
    "ChainError",
    "ChainErrorKind",
    "ConfigurationError",
    "ConfirmationPendingError",
    "DomainError",
    "InvalidSignatureError",
    "PaymentFailedError",
    "PaymentGatewayError",
    "PaymentNotSettledError",
    "PaymentVerificationTimeoutError",
    "PayoutOutcomeUnknownError",
    "QuoteAlreadyProcessedError",
    "QuoteNotFoundError",
    "RateUnavailableError",
    "SettlementAndRefundFailedError",
    "SettlementFailedError",
    "SettlementInProgressError",
    "ValidationError",
]
