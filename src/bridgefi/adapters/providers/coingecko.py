# src/bridgefi/adapters/providers/coingecko.py
"""
CoinGecko Simple Price Source for USDC/NGN

Files that USE this module:
- bridgefi.app (second source in the oracle's fallback chain)
- tests.test_providers (unit tests)

Files that this module USES:
- bridgefi.adapters.providers.base (RateSource interface)
- bridgefi.config (settings for URL and timeout)
"""
from decimal import Decimal
from typing import Any, Optional

from bridgefi.adapters.providers.base import RateSource
from bridgefi.config import settings


class CoinGeckoSource(RateSource):
    name = "CoinGecko"

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(
            url=url or settings.coingecko_rate_url,
            timeout=timeout or settings.rate_source_timeout_seconds,
        )

    def parse(self, data: Any) -> Optional[Decimal]:
        # Expect: {"usd-coin": {"ngn": 1575.12}}
        if not isinstance(data, dict):
            return None
        ngn = (data.get("usd-coin") or {}).get("ngn")
        return Decimal(str(ngn)) if ngn is not None else None
