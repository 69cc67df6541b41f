"""Shared utilities."""

from insforge.utils.retry import RetryError, RetryStrategy

__all__ = [
    "RetryError",
    "RetryStrategy",
]
