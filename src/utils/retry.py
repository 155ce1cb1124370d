"""Retry with exponential backoff for calls to external collaborators."""
import asyncio
import functools

import structlog

logger = structlog.get_logger(__name__)


class RetryConfig:
    """Configuration for retry logic."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 30.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0


DEFAULT_RETRYABLE_EXCEPTIONS = (ConnectionError, TimeoutError, asyncio.TimeoutError)


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: tuple = DEFAULT_RETRYABLE_EXCEPTIONS,
    sleep=asyncio.sleep,
):
    """Decorator for adding retry logic with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that should trigger a retry
        sleep: Awaitable sleep function

    Exceptions outside ``retryable_exceptions`` propagate immediately. When
    all attempts are exhausted the last exception is re-raised.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_exception = e
                    if attempt < max_retries:
                        delay = min(
                            base_delay * (exponential_base ** attempt),
                            max_delay
                        )
                        logger.warning(
                            "retry.attempt",
                            func=func.__name__,
                            attempt=attempt + 1,
                            max_retries=max_retries,
                            delay=delay,
                            error=str(e)
                        )
                        await sleep(delay)

            # All retries exhausted
            logger.error(
                "retry.max_retries_exceeded",
                func=func.__name__,
                max_retries=max_retries,
                last_error=str(last_exception)
            )
            raise last_exception

        return wrapper
    return decorator
