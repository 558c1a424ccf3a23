# tests/test_providers.py
"""
Provider Tests - Unit Tests for Price Source Classes

This module contains unit tests for the USDC/NGN price sources,
BinanceSource and CoinGeckoSource. It tests payload parsing, the shared
HTTP fetch and how every failure is reported as RateSourceError.

Files that USE this module:
- pytest (test runner executes these tests)

Files that this module USES:
- bridgefi.adapters.providers (BinanceSource, CoinGeckoSource, RateSourceError)
- unittest.mock (Mock for API mocking)
"""
from decimal import Decimal

import pytest  # Testing framework for writing and running tests

from unittest.mock import Mock, patch  # Mock objects and patching for testing without real API calls
import requests  # HTTP library (used for mocking responses)

from bridgefi.adapters.providers import BinanceSource, CoinGeckoSource, RateSourceError

GET = "bridgefi.adapters.providers.base.requests.get"


def _response(body):
    mock_response = Mock()
    mock_response.json.return_value = body
    mock_response.raise_for_status.return_value = None
    return mock_response


class TestBinanceSource:
    def test_init_with_explicit_url(self):
        source = BinanceSource(url="https://binance.test/ticker", timeout=3)
        assert source.url == "https://binance.test/ticker"
        assert source.timeout == 3

    def test_parse(self):
        source = BinanceSource(url="https://binance.test")
        assert source.parse({"symbol": "USDTNGN", "price": "1580.00000000"}) == Decimal("1580")
        assert source.parse({"symbol": "USDTNGN"}) is None
        assert source.parse([]) is None

    @patch(GET)
    def test_fiat_per_stable_success(self, mock_get):
        mock_get.return_value = _response({"symbol": "USDTNGN", "price": "1580.25"})

        rate = BinanceSource(url="https://binance.test", timeout=2).fiat_per_stable()

        assert rate == Decimal("1580.25")
        mock_get.assert_called_once_with("https://binance.test", timeout=2)

    @patch(GET)
    def test_non_positive_rate_rejected(self, mock_get):
        mock_get.return_value = _response({"price": "0"})
        with pytest.raises(RateSourceError, match="non-positive"):
            BinanceSource(url="https://binance.test").fiat_per_stable()

    @patch(GET)
    def test_unparseable_price(self, mock_get):
        mock_get.return_value = _response({"price": "n/a"})
        with pytest.raises(RateSourceError, match="schema error"):
            BinanceSource(url="https://binance.test").fiat_per_stable()

    @patch(GET)
    def test_timeout(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout()
        with pytest.raises(RateSourceError, match="timeout"):
            BinanceSource(url="https://binance.test").fiat_per_stable()

    @patch(GET)
    def test_http_error(self, mock_get):
        mock_response = Mock()
        mock_response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=Mock(status_code=429))
        mock_get.return_value = mock_response
        with pytest.raises(RateSourceError, match="HTTP error 429"):
            BinanceSource(url="https://binance.test").fiat_per_stable()

    @patch(GET)
    def test_invalid_json(self, mock_get):
        mock_response = Mock()
        mock_response.raise_for_status.return_value = None
        mock_response.json.side_effect = ValueError("Invalid JSON")
        mock_get.return_value = mock_response
        with pytest.raises(RateSourceError, match="invalid JSON"):
            BinanceSource(url="https://binance.test").fiat_per_stable()


class TestCoinGeckoSource:
    def test_parse(self):
        source = CoinGeckoSource(url="https://coingecko.test")
        assert source.parse({"usd-coin": {"ngn": 1575.12}}) == Decimal("1575.12")
        assert source.parse({"usd-coin": {}}) is None
        assert source.parse({}) is None
        assert source.parse("oops") is None

    @patch(GET)
    def test_missing_field(self, mock_get):
        mock_get.return_value = _response({"usd-coin": {"usd": 1.0}})
        with pytest.raises(RateSourceError, match="missing rate field"):
            CoinGeckoSource(url="https://coingecko.test").fiat_per_stable()

    @patch(GET)
    def test_network_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(RateSourceError, match="request failed"):
            CoinGeckoSource(url="https://coingecko.test").fiat_per_stable()
