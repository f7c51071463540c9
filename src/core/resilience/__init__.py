"""Retry policy for calls to the tracker and summarizer services."""

from core.resilience.retry import DEFAULT_RETRY, RetryConfig, with_retry_async

__all__ = ["DEFAULT_RETRY", "RetryConfig", "with_retry_async"]
