"""
Retry policy shared by the tracker client and the summarizer worker.

RetryConfig decides whether an error is worth another attempt and how long
to wait first. with_retry_async applies it to a coroutine in-process (tracker
page fetches); the summarizer worker only borrows get_delay() because its
retries happen through Kafka redelivery.

Decision order:
- never_retry types and the last attempt stop immediately
- PipelineError subclasses answer for themselves via is_retryable
- anything else is classified by classify_exception()
- ThrottlingError.retry_after overrides the computed backoff
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import wraps

from core.errors.exceptions import (
    RETRYABLE_CATEGORIES,
    PipelineError,
    ThrottlingError,
    classify_exception,
    wrap_exception,
)
from core.types import ErrorCategory

logger = logging.getLogger(__name__)

# 2**32 seconds is far beyond any max_delay; keeps the float math finite
MAX_EXPONENT = 32


@dataclass
class RetryConfig:
    """Backoff and retry-eligibility settings.

    Attributes:
        max_attempts: Total attempts including the first (<= 0 disables
            in-process retries; get_delay() still works)
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor per attempt
        respect_permanent: Never retry errors classified PERMANENT
        respect_retry_after: Prefer ThrottlingError.retry_after when set
        never_retry: Exception types that must surface to the caller unretried
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    respect_permanent: bool = True
    respect_retry_after: bool = True
    never_retry: set[type[Exception]] = field(default_factory=set)

    def __post_init__(self):
        # Values may arrive as strings from YAML ${VAR} expansion
        self.max_attempts = int(self.max_attempts)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)
        self.respect_permanent = bool(self.respect_permanent)
        self.respect_retry_after = bool(self.respect_retry_after)

    def server_delay(self, error: Exception | None) -> float | None:
        """Delay requested by the remote side, capped at max_delay."""
        if not self.respect_retry_after or not isinstance(error, ThrottlingError):
            return None
        if not error.retry_after:
            return None
        return min(error.retry_after, self.max_delay)

    def get_delay(self, attempt: int, error: Exception | None = None) -> float:
        """
        Seconds to wait after the given 0-indexed attempt failed.

        Uses equal jitter: half of the exponential step is fixed and the
        other half random, so concurrent workers spread out without ever
        retrying immediately.
        """
        requested = self.server_delay(error)
        if requested is not None:
            return requested

        step = self.base_delay * (self.exponential_base ** min(attempt, MAX_EXPONENT))
        delay = step / 2 + random.uniform(0, step / 2)
        return min(delay, self.max_delay)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """True if error after 0-indexed attempt deserves another attempt."""
        if attempt >= self.max_attempts - 1:
            return False
        if self.never_retry and isinstance(error, tuple(self.never_retry)):
            return False

        if isinstance(error, PipelineError):
            return error.is_retryable

        category = classify_exception(error)
        if category == ErrorCategory.PERMANENT:
            return not self.respect_permanent
        return category in RETRYABLE_CATEGORIES


DEFAULT_RETRY = RetryConfig(max_attempts=3, base_delay=1.0)


def with_retry_async(
    config: RetryConfig | None = None,
    wrap_errors: bool = False,
):
    """
    Retry a coroutine function according to config.

    Args:
        config: Retry policy (DEFAULT_RETRY when omitted)
        wrap_errors: Convert non-pipeline exceptions with wrap_exception()
            before deciding, and raise the wrapped error on give-up

    Usage:
        fetch = with_retry_async(RetryConfig(max_attempts=3))(client._fetch_page)
        issues, next_url = await fetch(url, params, page)
    """
    policy = config or DEFAULT_RETRY

    def decorator(func: Callable):
        name = func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    error = e
                    if wrap_errors and not isinstance(e, PipelineError):
                        error = wrap_exception(e)
                    category = classify_exception(error).value

                    if not policy.should_retry(error, attempt):
                        logger.warning(
                            "Giving up on %s after %d attempt(s)",
                            name,
                            attempt + 1,
                            extra={
                                "operation": name,
                                "attempt": attempt + 1,
                                "max_attempts": policy.max_attempts,
                                "error_type": type(error).__name__,
                                "error_category": category,
                                "error_message": str(e)[:200],
                            },
                        )
                        if error is not e:
                            raise error from e
                        raise

                    delay = policy.get_delay(attempt, error)
                    logger.warning(
                        "Retrying %s in %.2fs",
                        name,
                        delay,
                        extra={
                            "operation": name,
                            "attempt": attempt + 1,
                            "max_attempts": policy.max_attempts,
                            "error_category": category,
                            "delay_seconds": round(delay, 2),
                            "delay_source": (
                                "server"
                                if policy.server_delay(error) is not None
                                else "exponential_backoff"
                            ),
                            "error_message": str(e)[:200],
                        },
                    )
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue

                if attempt > 0:
                    logger.info(
                        "%s succeeded on attempt %d",
                        name,
                        attempt + 1,
                        extra={"operation": name, "attempt": attempt + 1},
                    )
                return result

        return wrapper

    return decorator


__all__ = [
    "RetryConfig",
    "with_retry_async",
    "DEFAULT_RETRY",
]
