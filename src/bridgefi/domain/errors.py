# src/bridgefi/domain/errors.py
"""
Domain Errors - Business Logic Exceptions

This module defines the exception taxonomy of the settlement core. Every
error carries a human-readable message; settlement errors also carry the
quote reference so an operator can reconcile by hand.

Categories:
- validation: rejected synchronously, never retried
- not found: quote missing and not reconstructable, fatal
- external transient: retried inside a component's budget, then surfaced
- external permanent: fatal, not retried
- compensation failure: refund after a failed settlement also failed
- unknown outcome: an external side effect may have happened, held for an operator
"""
from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from bridgefi.domain.models import RefundOutcome


class DomainError(Exception):
    """Base exception for domain errors."""

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reference = reference


class ValidationError(DomainError):
    """Raised when caller input is malformed (address, amount, bank details)."""
    pass


class ConfigurationError(DomainError):
    """Raised at startup when required settings are missing."""
    pass


class InvalidSignatureError(DomainError):
    """Raised when a webhook delivery fails signature verification."""
    pass


class RateUnavailableError(DomainError):
    """Raised when no rate source answered and no usable cached rate exists."""
    pass


class QuoteNotFoundError(DomainError):
    """Raised when a quote is missing and cannot be reconstructed."""
    pass


class QuoteAlreadyProcessedError(DomainError):
    """Raised on an attempt to move a quote out of a terminal state."""

    def __init__(self, message: str, reference: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message, reference)
        self.status = status


class SettlementInProgressError(DomainError):
    """Raised when another worker is already settling the same quote."""
    pass


class PaymentNotSettledError(DomainError):
    """Raised when the payment processor has not settled the charge yet."""

    def __init__(self, message: str, reference: Optional[str] = None, gateway_status: Optional[str] = None):
        super().__init__(message, reference)
        self.gateway_status = gateway_status


class PaymentVerificationTimeoutError(DomainError):
    """Raised when the verification poll spends its budget without a settled payment."""
    pass


class PaymentFailedError(DomainError):
    """Raised when the processor reports a definitive payment failure."""
    pass


class PaymentGatewayError(DomainError):
    """
    Raised by the payment gateway adapter.

    ``transient`` marks timeouts, connection errors and 5xx responses.
    """

    def __init__(self, message: str, reference: Optional[str] = None, transient: bool = False,
                 status_code: Optional[int] = None):
        super().__init__(message, reference)
        self.transient = transient
        self.status_code = status_code


class ChainErrorKind(str, Enum):
    """Structured failure kinds reported by the chain client."""
    DUPLICATE_SUBMISSION = "duplicate_submission"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    REVERTED = "reverted"
    TIMEOUT = "timeout"
    RPC = "rpc"


class ChainError(DomainError):
    """Raised by the chain client adapter; ``kind`` says what went wrong."""

    def __init__(self, kind: ChainErrorKind, message: str, tx_hash: Optional[str] = None,
                 reference: Optional[str] = None):
        super().__init__(message, reference)
        self.kind = kind
        self.tx_hash = tx_hash


class ConfirmationPendingError(DomainError):
    """Raised when a submitted transaction is still unconfirmed after the wait budget."""

    def __init__(self, message: str, reference: Optional[str] = None, tx_hash: Optional[str] = None):
        super().__init__(message, reference)
        self.tx_hash = tx_hash


class SettlementFailedError(DomainError):
    """
    Raised when a settlement ended in ``failed``.

    ``refund`` is set when a compensating refund was attempted and either
    succeeded or was broadcast and is awaiting confirmation (``refund.pending``).
    """

    def __init__(self, message: str, reference: Optional[str] = None,
                 refund: Optional["RefundOutcome"] = None):
        super().__init__(message, reference)
        self.refund = refund


class SettlementAndRefundFailedError(SettlementFailedError):
    """Raised when settlement failed and the compensating refund failed too."""

    def __init__(self, message: str, reference: Optional[str] = None,
                 refund: Optional["RefundOutcome"] = None, settlement_error: Optional[str] = None):
        super().__init__(message, reference, refund)
        self.settlement_error = settlement_error


class PayoutOutcomeUnknownError(DomainError):
    """
    Raised when the gateway gave no definitive answer to a payout request.

    The payout may have been accepted, so the quote stays in processing and
    nothing is refunded until an operator reconciles it with the gateway.
    """
    pass
