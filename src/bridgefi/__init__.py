# src/bridgefi/__init__.py
"""
BridgeFi - NGN ⇄ USDC Settlement Service

Brokers fiat (NGN) to stablecoin (USDC) conversions in both directions
through a payment processor and a custodial treasury wallet: priced,
time-bounded quotes, payment and on-chain settlement, refunds, and a
per-address transaction journal.
"""

__version__ = "1.0.0"
__author__ = "BridgeFi"
