# src/bridgefi/adapters/__init__.py
"""
Adapters Layer - External Integrations

This package contains adapters for external systems:
- Rate sources (Binance, CoinGecko)
- Persistence (in-memory and JSON file key-value stores)
- Payment gateway (Paystack)
- Chain client (JSON-RPC)
- HTTP API (FastAPI)
"""
