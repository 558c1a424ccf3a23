# src/bridgefi/application/health.py
"""
Health Checker - Service Monitoring and Diagnostics

Reports the state of the moving parts an operator cares about: freshness of
the cached exchange rate, the record store, custody liquidity on-chain and
whether payouts run in mock mode. Checks never raise; a failing component
is reported as unhealthy and the overall status becomes "degraded".

Files that USE this module:
- bridgefi.adapters.http.api (GET /health)

Files that this module USES:
- bridgefi.application.rate_oracle (cached rate)
- bridgefi.adapters.persistence.base (KeyValueStore)
- bridgefi.adapters.chain.base (custody balance)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bridgefi.adapters.chain.base import ChainClient
from bridgefi.adapters.persistence.base import KeyValueStore
from bridgefi.application.rate_oracle import RateOracle
from bridgefi.domain.errors import ChainError

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    """Represents the health status of a component."""
    is_healthy: bool
    message: str
    last_check: datetime
    details: Optional[Dict[str, Any]] = None


class HealthChecker:
    """Centralized health checking for the settlement service."""

    def __init__(self, oracle: RateOracle, store: KeyValueStore, chain: ChainClient, mock_payouts: bool = False):
        self.oracle = oracle
        self.store = store
        self.chain = chain
        self.mock_payouts = mock_payouts

    def check_rate_oracle(self) -> HealthStatus:
        """Check the cached rate without triggering a fetch."""
        now = datetime.now(timezone.utc)
        rate = self.oracle.cached_rate
        if rate is None:
            return HealthStatus(
                is_healthy=False,
                message=f"No exchange rate fetched yet ({self.oracle.last_error or 'no attempt'})",
                last_check=now,
            )
        age = rate.age_seconds(now)
        fresh = age <= self.oracle.max_stale.total_seconds()
        return HealthStatus(
            is_healthy=fresh,
            message=f"Rate {rate.fiat_per_stable:.2f} NGN/USDC from {rate.source}, {age:.0f}s old",
            last_check=now,
            details={
                "source": rate.source,
                "usdcToNgn": float(rate.fiat_per_stable),
                "age_seconds": round(age, 1),
                "last_error": self.oracle.last_error,
            },
        )

    def check_store(self) -> HealthStatus:
        now = datetime.now(timezone.utc)
        details: Dict[str, Any] = {"backend": type(self.store).__name__, "records": len(self.store)}
        path = getattr(self.store, "path", None)
        if path is not None:
            details["path"] = str(path)
        return HealthStatus(is_healthy=True, message=f"{details['backend']} ready", last_check=now, details=details)

    async def check_custody(self) -> HealthStatus:
        """Check that the custody wallet is configured and its USDC balance is readable."""
        now = datetime.now(timezone.utc)
        if not self.chain.custody_address:
            return HealthStatus(is_healthy=False, message="TREASURY_ADDRESS not configured", last_check=now)
        try:
            balance = await self.chain.get_token_balance(self.chain.custody_address)
        except ChainError as e:
            logger.error("Custody balance check failed: %s", e)
            return HealthStatus(
                is_healthy=False,
                message=f"Chain error: {e.message}",
                last_check=now,
                details={"kind": e.kind.value},
            )
        return HealthStatus(
            is_healthy=True,
            message=f"Custody holds {balance} USDC",
            last_check=now,
            details={"address": self.chain.custody_address, "usdc": float(balance)},
        )

    def check_payouts(self) -> HealthStatus:
        mode = "mock" if self.mock_payouts else "live"
        return HealthStatus(
            is_healthy=True,
            message=f"Payouts running in {mode} mode",
            last_check=datetime.now(timezone.utc),
            details={"mock": self.mock_payouts},
        )

    async def get_overall_health(self) -> Dict[str, Any]:
        """
        Get overall health status of all components.

        Returns degraded status if any component fails, even if others are healthy.
        """
        checks = {
            "rate_oracle": self.check_rate_oracle(),
            "store": self.check_store(),
            "custody": await self.check_custody(),
            "payouts": self.check_payouts(),
        }

        healthy_checks = [name for name, check in checks.items() if check.is_healthy]
        failed_checks = [name for name, check in checks.items() if not check.is_healthy]
        overall_healthy = not failed_checks

        if overall_healthy:
            status_message = "All systems healthy"
        else:
            status_message = f"Degraded - {len(failed_checks)} component(s) failed: {', '.join(failed_checks)}"

        return {
            "overall_healthy": overall_healthy,
            "status": "healthy" if overall_healthy else "degraded",
            "message": status_message,
            "mockMode": self.mock_payouts,
            "healthy_components": healthy_checks,
            "failed_components": failed_checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                name: {
                    "healthy": check.is_healthy,
                    "message": check.message,
                    "last_check": check.last_check.isoformat(),
                    "details": check.details,
                }
                for name, check in checks.items()
            },
        }
