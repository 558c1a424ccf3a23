# src/bridgefi/shared/validators.py
"""
Input Validation Utilities - Security and Data Validation

This module provides input validation functions for addresses, transaction
hashes, bank details and monetary amounts, so that malformed requests are
rejected before any quote is priced or custody funds are touched.

Files that USE this module:
- bridgefi.config.settings (address validation in Settings field validators)
- bridgefi.application.onramp (user address and fiat amount)
- bridgefi.application.offramp (bank details, tx hash, refund inputs)

Files that this module USES:
- None (pure utility functions)
"""
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def validate_address(address: Optional[str]) -> bool:
    """
    Validate EVM account address format (0x followed by 40 hex characters).

    Args:
        address: Address to validate

    Returns:
        True if valid, False otherwise
    """
    if not address or not isinstance(address, str):
        return False
    return bool(_ADDRESS_RE.match(address))


def validate_tx_hash(tx_hash: Optional[str]) -> bool:
    """
    Validate transaction hash format (0x followed by 64 hex characters).

    Args:
        tx_hash: Transaction hash to validate

    Returns:
        True if valid, False otherwise
    """
    if not tx_hash or not isinstance(tx_hash, str):
        return False
    return bool(_TX_HASH_RE.match(tx_hash))


def validate_bank_details(bank_account: Optional[str], bank_code: Optional[str],
                          account_name: Optional[str]) -> bool:
    """
    Validate that the payout counterparty details are present.

    Account numbers are digit strings (NUBAN is 10 digits; test banks accept
    shorter ones), bank codes are digit strings.

    Returns:
        True if all details are present and well formed, False otherwise
    """
    if not bank_account or not bank_code or not account_name:
        return False
    if not str(bank_account).strip().isdigit() or not str(bank_code).strip().isdigit():
        return False
    return bool(str(account_name).strip())


def parse_positive_amount(value: Any) -> Optional[Decimal]:
    """
    Parse a monetary amount and require it to be strictly positive.

    Floats are converted through ``str`` so that 0.1 stays 0.1.

    Args:
        value: Amount as str, int, float or Decimal

    Returns:
        Decimal amount, or None if the value is missing, non-numeric,
        non-finite or not positive
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount
