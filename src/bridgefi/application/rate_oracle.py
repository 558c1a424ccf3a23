# src/bridgefi/application/rate_oracle.py
"""
Rate Oracle - Cached USDC/NGN Rate With Source Fallback

Fetches NGN per USDC from an ordered list of price sources (first positive
answer wins), applies the operator margin, and keeps the result in a single
shared cache slot for the configured TTL. A background task refreshes the
slot every TTL so request handlers rarely wait on the network.

When every source fails, the last fetched rate is served as ``stale`` while
it is younger than the max-stale window; after that, or if no rate was ever
fetched, RateUnavailableError is raised. No hard-coded rate is ever served.

Files that USE this module:
- bridgefi.application.quote_ledger (prices quotes)
- bridgefi.adapters.http.api (GET /exchange-rate)
- bridgefi.application.health (cache freshness)
- bridgefi.app (starts and stops the refresh loop)

Files that this module USES:
- bridgefi.adapters.providers.base (RateSource interface)
- bridgefi.domain.models (Rate)
- bridgefi.domain.errors (RateUnavailableError)
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Sequence

from bridgefi.adapters.providers.base import RateSource, RateSourceError
from bridgefi.domain.errors import RateUnavailableError
from bridgefi.domain.models import Rate, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class RateOracle:
    """Single-slot cached rate with ordered fallback across sources."""

    def __init__(
        self,
        sources: Sequence[RateSource],
        margin: float | Decimal = Decimal("0.02"),
        ttl: timedelta = timedelta(seconds=30),
        source_timeout: float = 5.0,
        max_stale: timedelta = timedelta(seconds=120),
        clock: Optional[Clock] = None,
    ):
        if not sources:
            raise ValueError("RateOracle needs at least one source")
        self.sources: List[RateSource] = list(sources)
        self.margin = Decimal(str(margin))
        self.ttl = ttl
        self.source_timeout = source_timeout
        self.max_stale = max_stale
        self.clock: Clock = clock or utcnow
        self._cached: Optional[Rate] = None
        self._lock: Optional[asyncio.Lock] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self.last_error: Optional[str] = None

    @property
    def cached_rate(self) -> Optional[Rate]:
        return self._cached

    def _cache_valid(self) -> bool:
        if self._cached is None:
            return False
        return self.clock() - self._cached.captured_at < self.ttl

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def get_rate(self) -> Rate:
        """
        Return the cached rate, refreshing it when older than the TTL.

        Concurrent callers share one fetch: the first caller refreshes under
        the lock, the rest find a fresh slot once it is released.

        Raises:
            RateUnavailableError: If no source answered and no usable cache exists
        """
        if self._cache_valid():
            return self._cached  # type: ignore[return-value]
        async with self._get_lock():
            if self._cache_valid():
                return self._cached  # type: ignore[return-value]
            return await self._refresh_locked()

    async def refresh(self) -> Rate:
        """Force a fetch regardless of cache age."""
        async with self._get_lock():
            return await self._refresh_locked()

    async def _refresh_locked(self) -> Rate:
        errors = []
        for source in self.sources:
            try:
                raw = await asyncio.wait_for(asyncio.to_thread(source.fiat_per_stable), timeout=self.source_timeout)
            except asyncio.TimeoutError:
                errors.append(f"{source.name}: timeout after {self.source_timeout}s")
                logger.warning("Rate source %s timed out, trying next", source.name)
                continue
            except RateSourceError as e:
                errors.append(f"{source.name}: {e}")
                logger.warning("Rate source %s failed, trying next: %s", source.name, e)
                continue

            rate = Rate.from_raw(raw, self.margin, source.name, captured_at=self.clock())
            self._cached = rate
            self.last_error = None
            logger.info(
                "Exchange rate updated from %s: usdc_to_ngn=%.2f ngn_to_usdc=%.8f (raw=%s, margin=%s)",
                source.name, rate.fiat_per_stable, rate.stable_per_fiat, raw, self.margin,
            )
            return rate

        self.last_error = "; ".join(errors)
        return self._stale_or_raise()

    def _stale_or_raise(self) -> Rate:
        cached = self._cached
        if cached is not None and self.clock() - cached.captured_at <= self.max_stale:
            logger.warning(
                "All rate sources failed, serving stale rate from %s captured at %s (%s)",
                cached.source, cached.captured_at.isoformat(), self.last_error,
            )
            return Rate(
                fiat_per_stable=cached.fiat_per_stable,
                stable_per_fiat=cached.stable_per_fiat,
                captured_at=cached.captured_at,
                source=cached.source,
                margin=cached.margin,
                stale=True,
            )
        logger.error("All rate sources failed and no usable cached rate: %s", self.last_error)
        raise RateUnavailableError(f"Exchange rate unavailable: {self.last_error}")

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the background refresh loop on the running event loop."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop(), name="rate-oracle-refresh")
            logger.info("Rate oracle refresh loop started (interval=%ss)", self.ttl.total_seconds())

    async def stop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Rate oracle refresh loop stopped")

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except RateUnavailableError as e:
                logger.error("Background rate refresh failed: %s", e)
            await asyncio.sleep(self.ttl.total_seconds())
