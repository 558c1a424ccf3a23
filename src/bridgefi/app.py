# src/bridgefi/app.py
"""
Application Entry Point - Service Wiring and Startup

This module serves as the composition root for the BridgeFi settlement
service. It builds the store, adapters and application services from
settings and runs the HTTP API under uvicorn.

Files that USE this module:
- python -m bridgefi (module entry point)
- bridgefi.adapters.http.api (build_services when no services are injected)

Files that this module USES:
- bridgefi.shared.logging_conf (setup_logging for logging configuration)
- bridgefi.config (settings for configuration management)
- bridgefi.adapters.* (store, rate sources, Paystack gateway, chain client)
- bridgefi.application.* (oracle, ledger, journal, executors, health)
"""

from __future__ import annotations  # Enable postponed evaluation of annotations for forward references

import logging  # Standard library for logging messages and errors
import os  # Operating system interface for working directory logging
from dataclasses import dataclass  # Container for the wired services
from decimal import Decimal  # Margin as exact decimal
from typing import Optional  # Type hints for optional values

from bridgefi.adapters.chain.base import ChainClient
from bridgefi.adapters.chain.jsonrpc import JsonRpcChainClient
from bridgefi.adapters.payments.base import PaymentGateway
from bridgefi.adapters.payments.paystack import PaystackGateway
from bridgefi.adapters.persistence import JsonFileStore, KeyValueStore, MemoryStore
from bridgefi.adapters.providers.binance import BinanceSource
from bridgefi.adapters.providers.coingecko import CoinGeckoSource
from bridgefi.application import (
    HealthChecker,
    OfframpExecutor,
    OnrampExecutor,
    QuoteLedger,
    RateOracle,
    TransactionJournal,
)
from bridgefi.config import Settings
from bridgefi.shared.logging_conf import setup_logging  # Configure logging with file rotation

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the HTTP layer needs, wired once per process."""
    settings: Settings
    store: KeyValueStore
    oracle: RateOracle
    ledger: QuoteLedger
    journal: TransactionJournal
    gateway: PaymentGateway
    chain: ChainClient
    onramp: OnrampExecutor
    offramp: OfframpExecutor
    health: HealthChecker
    refresh_in_background: bool = True


def build_store(cfg: Settings) -> KeyValueStore:
    if cfg.store_file:
        return JsonFileStore(cfg.store_file)
    logger.warning("STORE_FILE not set - quotes and history are kept in memory and lost on restart")
    return MemoryStore()


def build_services(
    cfg: Optional[Settings] = None,
    store: Optional[KeyValueStore] = None,
    gateway: Optional[PaymentGateway] = None,
    chain: Optional[ChainClient] = None,
    oracle: Optional[RateOracle] = None,
    refresh_in_background: bool = True,
) -> Services:
    """
    Wire the application services.

    Any collaborator passed in is used as is; the rest are built from ``cfg``.
    """
    if cfg is None:
        from bridgefi.config import settings as cfg  # Global settings instance

    store = store if store is not None else build_store(cfg)
    gateway = gateway if gateway is not None else PaystackGateway(
        secret_key=cfg.paystack_secret_key,
        base_url=cfg.paystack_base_url,
        webhook_secret=cfg.effective_webhook_secret,
        timeout=cfg.http_timeout_seconds,
        mock_payouts=cfg.mock_payouts,
        callback_url=cfg.paystack_callback_url,
    )
    chain = chain if chain is not None else JsonRpcChainClient(
        rpc_url=cfg.chain_rpc_url,
        token_address=cfg.stable_token_address,
        token_decimals=cfg.stable_token_decimals,
        custody_address=cfg.treasury_address,
        timeout=cfg.http_timeout_seconds,
    )
    oracle = oracle if oracle is not None else RateOracle(
        sources=[
            BinanceSource(url=cfg.binance_rate_url, timeout=cfg.rate_source_timeout_seconds),
            CoinGeckoSource(url=cfg.coingecko_rate_url, timeout=cfg.rate_source_timeout_seconds),
        ],
        margin=Decimal(str(cfg.rate_margin)),
        ttl=cfg.rate_cache_ttl,
        source_timeout=cfg.rate_source_timeout_seconds,
        max_stale=cfg.rate_max_stale,
    )

    ledger = QuoteLedger(store, oracle, onramp_ttl=cfg.onramp_quote_ttl, offramp_ttl=cfg.offramp_quote_ttl)
    journal = TransactionJournal(store)
    settlement_args = dict(
        confirmations=cfg.required_confirmations,
        confirmation_timeout=cfg.confirmation_timeout_seconds,
        confirmation_max_waits=cfg.confirmation_max_waits,
    )
    onramp = OnrampExecutor(
        ledger, journal, gateway, chain,
        poll_interval=cfg.payment_poll_interval_seconds,
        poll_max_attempts=cfg.payment_poll_max_attempts,
        default_email=cfg.onramp_default_email,
        **settlement_args,
    )
    offramp = OfframpExecutor(ledger, journal, gateway, chain, **settlement_args)
    health = HealthChecker(oracle, store, chain, mock_payouts=cfg.mock_payouts)

    return Services(
        settings=cfg,
        store=store,
        oracle=oracle,
        ledger=ledger,
        journal=journal,
        gateway=gateway,
        chain=chain,
        onramp=onramp,
        offramp=offramp,
        health=health,
        refresh_in_background=refresh_in_background,
    )


def main() -> None:
    """
    Configure logging, validate credentials and serve the HTTP API.

    This function:
    1. Sets up logging from settings
    2. Checks the credentials needed to move money
    3. Wires the services and starts uvicorn
    """
    import uvicorn  # ASGI server

    from bridgefi.adapters.http.api import create_app
    from bridgefi.config import settings

    setup_logging(
        level=settings.log_level,
        log_file=settings.log_file,
        log_dir=settings.log_dir,
        log_stdout=settings.log_stdout,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
    )
    logger.info("Working directory: %s", os.getcwd())

    settings.require_live_credentials()
    if settings.mock_payouts:
        logger.warning("MOCK MODE ENABLED: bank transfers are simulated")

    app = create_app(build_services(settings))
    logger.info("Starting BridgeFi API on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
