"""
Registry request retry logic with exponential backoff.

This module provides retry functionality for registry calls to handle
transient failures like 503 Service Unavailable, timeouts, and connection errors.
"""

import asyncio
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import aiohttp
from loguru import logger

# Type variable for generic decorator
F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass
class RegistryRetryConfig:
    """
    Configuration for registry retry behavior.

    :param max_retries: Maximum number of retry attempts (default: 3)
    :param backoff_factor: Exponential backoff multiplier (default: 1.0).
                          Delay calculated as: backoff_factor * (2 ** attempt)
    :param retry_on_timeout: Whether to retry on timeout errors (default: True)
    :param retry_on_connection_error: Whether to retry on connection errors (default: True)
    """

    max_retries: int = 3
    backoff_factor: float = 1.0
    retry_on_timeout: bool = True
    retry_on_connection_error: bool = True


def should_retry_exception(exc: BaseException, config: RegistryRetryConfig) -> bool:
    """
    Determine if an exception warrants a retry attempt.

    Retryable errors include:
    - HTTP 429 (Too Many Requests - rate limiting)
    - HTTP 500, 502, 503, 504 (server errors)
    - Timeout errors (if enabled in config)
    - Connection errors (if enabled in config)

    Non-retryable errors include:
    - HTTP 4xx (except 429) - client errors won't be fixed by retrying
    - Parsing errors
    - Cancellation of the calling task

    :param exc: The exception to evaluate
    :param config: Retry configuration
    :return: True if the error should be retried, False otherwise
    """
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status in RETRYABLE_STATUS_CODES

    # asyncio.TimeoutError is an alias of the builtin TimeoutError on 3.11+
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return config.retry_on_timeout

    if isinstance(exc, aiohttp.ClientConnectionError):
        return config.retry_on_connection_error

    return False


def retry_registry_call(config: RegistryRetryConfig) -> Callable[[F], F]:
    """
    Decorator to add retry logic with exponential backoff to a coroutine function.

    Usage:
        @retry_registry_call(config=RegistryRetryConfig(max_retries=3))
        async def my_api_call():
            ...

    :param config: Retry configuration
    :return: Decorated coroutine function with retry logic
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(config.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not should_retry_exception(e, config):
                        logger.debug(
                            f"{func.__name__} failed with non-retryable error: "
                            f"{e.__class__.__name__}"
                        )
                        raise

                    if attempt >= config.max_retries:
                        logger.warning(
                            f"{func.__name__} failed after {config.max_retries} retry attempts: "
                            f"{e.__class__.__name__}"
                        )
                        raise

                    delay = config.backoff_factor * (2**attempt)
                    logger.info(
                        f"{func.__name__} attempt {attempt + 1}/{config.max_retries + 1} failed "
                        f"({e.__class__.__name__}), retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry logic failed unexpectedly")

        return wrapper  # type: ignore

    return decorator
