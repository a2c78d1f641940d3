"""Classification-based retry with exponential backoff.

Only whole provider calls are wrapped: a retry re-sends the full request,
never the tail of a broken stream.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import httpx

from anvil.config import Settings
from anvil.errors import EmptyCompletionError, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSPORT_ERROR_CODES = frozenset({"ERR_STREAM_PREMATURE_CLOSE", "ECONNRESET", "ETIMEDOUT"})
RETRYABLE_ERROR_TYPES = frozenset({"overloaded_error", "rate_limit_error", "api_error"})

RetryCallback = Callable[[int, float, BaseException], Awaitable[None]]


@dataclass
class RetryConfig:
    initial_backoff_ms: int = 200
    backoff_factor: float = 2.0
    max_retry_attempts: int = 3  # retries after the first call
    max_delay_s: float = 30.0
    retry_status_codes: frozenset[int] = field(default_factory=lambda: frozenset({429, 500, 502, 503, 504, 529}))
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        return cls(
            initial_backoff_ms=settings.retry_initial_backoff_ms,
            backoff_factor=settings.retry_backoff_factor,
            max_retry_attempts=settings.retry_max_attempts,
            max_delay_s=settings.retry_max_delay_s,
            retry_status_codes=frozenset(settings.retry_status_codes),
        )


def is_retryable(error: BaseException, config: RetryConfig) -> bool:
    """Transient (retry) vs terminal (propagate) classification."""
    if isinstance(error, EmptyCompletionError):
        return True
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, ProviderError):
        if error.status_code is not None and error.status_code in config.retry_status_codes:
            return True
        if error.error_type in RETRYABLE_ERROR_TYPES:
            return True
        if error.code in TRANSPORT_ERROR_CODES:
            return True
        # An in-stream error with nothing in it is a dropped connection in disguise
        if error.status_code is None and error.error_type is None and error.code is None:
            return True
    return False


class RetryController:
    """Runs an async operation, retrying transient failures with backoff."""

    def __init__(
        self,
        config: RetryConfig,
        on_retry: RetryCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._on_retry = on_retry
        self._sleep = sleep

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Seconds to wait before retry number `attempt` (1-based)."""
        config = self.config
        base = config.initial_backoff_ms / 1000 * config.backoff_factor ** (attempt - 1)
        if config.jitter:
            base = base / 2 + random.uniform(0, base / 2)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            base = max(base, retry_after)
        return min(base, config.max_delay_s)

    async def call_with_retry(self, op: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await op()
            except Exception as e:
                if not is_retryable(e, self.config):
                    raise
                attempt += 1
                if attempt > self.config.max_retry_attempts:
                    logger.error("Giving up after %d retries: %s", self.config.max_retry_attempts, e)
                    raise
                delay = self.delay_for(attempt, e)
                logger.warning(
                    "Transient provider error (attempt %d/%d), retrying in %.2fs: %s",
                    attempt,
                    self.config.max_retry_attempts,
                    delay,
                    e,
                )
                if self._on_retry is not None:
                    await self._on_retry(attempt, delay, e)
                await self._sleep(delay)
