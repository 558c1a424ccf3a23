# src/bridgefi/shared/__init__.py
"""
Shared Utilities - Cross-cutting Concerns

This package contains shared utilities used across all layers:
- Validation
- Bounded retry / polling
- Logging configuration
"""

from bridgefi.shared.validators import (
    parse_positive_amount,
    validate_address,
    validate_bank_details,
    validate_tx_hash,
)
from bridgefi.shared.retry import BoundedPoller, PollExhausted

__all__ = [
    "validate_address",
    "validate_tx_hash",
    "validate_bank_details",
    "parse_positive_amount",
    "BoundedPoller",
    "PollExhausted",
]
