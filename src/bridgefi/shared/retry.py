# src/bridgefi/shared/retry.py
"""
Bounded Poller - Fixed-interval Retry With an Attempt Budget

Runs an async operation repeatedly at a fixed interval until it returns,
raises an error that is not retryable, or the attempt budget runs out.
The sleep function is injectable so tests can simulate time.

Files that USE this module:
- bridgefi.application.onramp (payment verification poll)

Files that this module USES:
- None (pure utility implementation)
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class PollExhausted(Exception):
    """Raised when the attempt budget is spent without a result."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


class BoundedPoller(Generic[T]):
    """
    Call an operation until it succeeds, at most ``max_attempts`` times.

    Only exceptions listed in ``retry_on`` cause another attempt; anything
    else propagates on the spot. There is no sleep after the final attempt.
    """

    def __init__(
        self,
        max_attempts: int,
        interval_seconds: float,
        retry_on: Tuple[Type[BaseException], ...],
        sleep: Optional[SleepFn] = None,
        name: str = "poll",
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.interval_seconds = interval_seconds
        self.retry_on = retry_on
        self.sleep: SleepFn = sleep or asyncio.sleep
        self.name = name

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run the operation under the attempt budget.

        Raises:
            PollExhausted: If every attempt raised a retryable error
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except self.retry_on as e:
                last_error = e
                logger.debug("%s: attempt %d/%d not ready: %s", self.name, attempt, self.max_attempts, e)
            if attempt < self.max_attempts:
                await self.sleep(self.interval_seconds)
        raise PollExhausted(self.max_attempts, last_error)
