"""Retry with exponential backoff for idempotent HTTP calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""

    def __init__(self, last_exception: Exception, attempts: int) -> None:
        """Initialize retry error.

        Args:
            last_exception: The final exception that caused failure.
            attempts: Number of attempts made.
        """
        self.last_exception = last_exception
        self.attempts = attempts
        super().__init__(
            f"Failed after {attempts} attempts. Last error: {last_exception}"
        )


class RetryStrategy:
    """Exponential backoff with optional jitter."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 0.5,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        exceptions: tuple[type[Exception], ...] = (Exception,),
    ) -> None:
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.exceptions = exceptions

    def should_retry(self, exception: Exception) -> bool:
        """Check if exception should trigger a retry."""
        return isinstance(exception, self.exceptions)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt number (0-indexed).

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        delay = min(
            self.initial_delay * (self.exponential_base**attempt), self.max_delay
        )
        if self.jitter:
            delay = delay * (0.5 + random.random())  # 50-150% of delay
        return delay

    async def run(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Call ``func`` until it succeeds or attempts run out.

        Raises:
            RetryError: When every attempt failed with a retryable exception.
            Exception: The first non-retryable exception, unchanged.
        """
        for attempt in range(self.max_attempts):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e):
                    raise

                if attempt >= self.max_attempts - 1:
                    logger.error(
                        f"All retry attempts exhausted for {func.__name__}",
                        extra={
                            "function": func.__name__,
                            "attempts": self.max_attempts,
                            "last_exception": str(e),
                        },
                    )
                    raise RetryError(e, self.max_attempts) from e

                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"Retrying {func.__name__} after {delay:.2f}s (attempt {attempt + 1}/{self.max_attempts})",
                    extra={
                        "function": func.__name__,
                        "attempt": attempt + 1,
                        "max_attempts": self.max_attempts,
                        "delay": delay,
                        "exception": str(e),
                    },
                )
                await asyncio.sleep(delay)

        raise RuntimeError("Retry logic error: no attempt made")
