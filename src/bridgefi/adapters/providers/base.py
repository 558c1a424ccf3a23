# src/bridgefi/adapters/providers/base.py
"""
Base Interface for Price Sources

This module defines the abstract base class for all USDC/NGN price sources
and the shared HTTP fetch with error classification. Sources do not cache:
the rate oracle owns the single shared cache slot.

Files that USE this module:
- bridgefi.adapters.providers.binance (BinanceSource implements RateSource)
- bridgefi.adapters.providers.coingecko (CoinGeckoSource implements RateSource)
- bridgefi.application.rate_oracle (iterates RateSource instances in order)
- tests.test_providers (unit tests)

Files that this module USES:
- None (pure interface definition plus requests)
"""
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import requests

log = logging.getLogger(__name__)


class RateSourceError(RuntimeError):
    """Raised when a source cannot produce a positive rate."""
    pass


class RateSource(ABC):
    """A price source quoting NGN per 1 USDC (raw, before margin)."""

    name: str = "source"

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    @abstractmethod
    def parse(self, data: Any) -> Optional[Decimal]:
        """Extract NGN per 1 USDC from the decoded JSON payload."""
        raise NotImplementedError

    def fiat_per_stable(self) -> Decimal:
        """
        Fetch the raw NGN per USDC rate.

        Returns:
            Positive Decimal rate

        Raises:
            RateSourceError: On timeout, HTTP/network error, bad JSON,
                unexpected schema or a non-positive value
        """
        data = self._get_json()
        try:
            value = self.parse(data)
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            log.error("%s unexpected schema: %s", self.name, data)
            raise RateSourceError(f"{self.name} schema error: {e}") from e

        if value is None:
            raise RateSourceError(f"{self.name} response missing rate field")
        if not value.is_finite() or value <= 0:
            log.error("%s returned non-positive rate: %s", self.name, value)
            raise RateSourceError(f"{self.name} returned non-positive rate: {value}")
        return value

    def _get_json(self) -> Any:
        try:
            log.debug("Fetching USDC/NGN rate from %s", self.name)
            resp = requests.get(self.url, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.exceptions.Timeout as e:
            log.warning("%s timeout after %s seconds", self.name, self.timeout)
            raise RateSourceError(f"{self.name} timeout after {self.timeout}s") from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            log.warning("%s HTTP error %s", self.name, status)
            raise RateSourceError(f"{self.name} HTTP error {status}") from e
        except requests.exceptions.RequestException as e:
            log.warning("%s request failed (network/connection error): %s", self.name, e)
            raise RateSourceError(f"{self.name} request failed: {e}") from e
        except ValueError as e:
            log.error("%s returned invalid JSON: %s", self.name, e)
            raise RateSourceError(f"{self.name} returned invalid JSON: {e}") from e
