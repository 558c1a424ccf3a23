# src/bridgefi/adapters/providers/__init__.py
"""
Provider Adapters - External Price Sources

This package contains adapters for external USDC/NGN price APIs.
All sources implement the RateSource interface.
"""

from bridgefi.adapters.providers.base import RateSource, RateSourceError
from bridgefi.adapters.providers.binance import BinanceSource
from bridgefi.adapters.providers.coingecko import CoinGeckoSource

__all__ = [
    "RateSource",
    "RateSourceError",
    "BinanceSource",
    "CoinGeckoSource",
]
