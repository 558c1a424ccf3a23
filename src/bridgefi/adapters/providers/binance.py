# src/bridgefi/adapters/providers/binance.py
"""
Binance Ticker Source for USDT/NGN

Uses the public ticker price endpoint; USDT/NGN stands in for USDC/NGN.

Files that USE this module:
- bridgefi.app (first source in the oracle's fallback chain)
- tests.test_providers (unit tests)

Files that this module USES:
- bridgefi.adapters.providers.base (RateSource interface)
- bridgefi.config (settings for URL and timeout)
"""
from decimal import Decimal
from typing import Any, Optional

from bridgefi.adapters.providers.base import RateSource
from bridgefi.config import settings


class BinanceSource(RateSource):
    name = "Binance"

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(
            url=url or settings.binance_rate_url,
            timeout=timeout or settings.rate_source_timeout_seconds,
        )

    def parse(self, data: Any) -> Optional[Decimal]:
        # Expect: {"symbol": "USDTNGN", "price": "1580.00000000"}
        price = data.get("price") if isinstance(data, dict) else None
        return Decimal(str(price)) if price is not None else None
