"""Retry policy for registry operations.

Registry calls fail transiently: connections drop, load balancers answer
502/503, registries rate-limit with 429. The client turns those into
RegistryUnavailableError, which RetryPolicy retries with exponential
backoff before letting the last one propagate.

With the default RetryConfig a call is attempted three times, waiting
roughly 0.5s and then 1s in between.

Example:
    >>> policy = RetryPolicy(RetryConfig(max_attempts=5))
    >>> response = await policy.call(send_request)
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from steiger_core.oci.errors import RegistryUnavailableError
from steiger_core.schemas.oci import RetryConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.25


class RetryPolicy:
    """Exponential backoff over a fixed number of attempts.

    Only ``retry_on`` exceptions are retried; anything else propagates on
    the first occurrence.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retry_on: tuple[type[BaseException], ...] = (RegistryUnavailableError,),
    ) -> None:
        self.config = config or RetryConfig()
        self._retry_on = retry_on

    def calculate_delay(self, attempt: int) -> float:
        """Return the wait in seconds after the 0-indexed ``attempt`` failed.

        ``initial * multiplier**attempt``, capped at ``max_delay_ms``, then
        shifted by up to a quarter either way when jitter is on.
        """
        cfg = self.config
        delay_ms = min(cfg.initial_delay_ms * cfg.backoff_multiplier**attempt, cfg.max_delay_ms)
        if cfg.jitter:
            delay_ms *= 1 + random.uniform(-JITTER_FRACTION, JITTER_FRACTION)
        return max(delay_ms, 0.0) / 1000.0

    def should_retry(self, exception: BaseException) -> bool:
        return isinstance(exception, self._retry_on)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()`` until it succeeds or attempts run out.

        Raises:
            The last retryable exception once ``max_attempts`` is reached,
            or the first non-retryable one.
        """
        last_attempt = self.config.max_attempts - 1
        for attempt in range(self.config.max_attempts):
            try:
                return await operation()
            except Exception as e:
                if not self.should_retry(e):
                    raise
                if attempt == last_attempt:
                    logger.warning("retry_exhausted", attempts=attempt + 1, error=str(e))
                    raise
                delay = self.calculate_delay(attempt)
                logger.debug("retry_scheduled", attempt=attempt + 1, delay_seconds=delay, error=str(e))
                await asyncio.sleep(delay)
        raise AssertionError("max_attempts must be at least 1")


__all__ = ["RetryPolicy"]
