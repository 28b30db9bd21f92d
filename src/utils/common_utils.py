import asyncio
import functools
import logging
import os
import random
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

T = TypeVar("T")

# Set up logging with environment variable
log_level_str = os.environ.get("LOG_LEVEL", "INFO")
log_level = getattr(logging, log_level_str, logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Simple logger function"""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(log_level)
    return logger


logger = logging.getLogger(__name__)


def time_execution(func):
    """
    Decorator to time the execution of a coroutine function.
    Logs execution time but returns only the original result.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = datetime.now()
        result = await func(*args, **kwargs)
        elapsed_time = datetime.now() - start_time
        logger.debug(f"{func.__name__} completed in {elapsed_time}")
        return result

    return wrapper


# Errors that are expected to heal on their own and are not worth reporting
TRANSIENT_ERRORS = (
    RedisConnectionError,
    RedisTimeoutError,
    asyncio.TimeoutError,
    httpx.TimeoutException,
    httpx.NetworkError,
)


def filter_transient_errors(event: dict, hint: dict) -> Optional[dict]:
    """
    Sentry before_send hook that drops transient network/Redis errors.

    Args:
        event: Sentry event payload
        hint: Sentry hint; carries exc_info for exception events

    Returns:
        The event to send, or None to drop it
    """
    exc_info = hint.get("exc_info") if hint else None
    if exc_info and isinstance(exc_info[1], TRANSIENT_ERRORS):
        return None
    return event


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    is_retryable: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Execute an async callable, retrying with exponential backoff + jitter.

    Args:
        func: Zero-argument coroutine function to call
        max_attempts: Total attempts including the first
        base_delay: Delay in seconds before the first retry
        max_delay: Cap for any single delay
        is_retryable: Return False to fail fast on non-transient errors
        sleep: Awaitable sleep function (injectable for tests)

    Returns:
        The callable's result

    Raises:
        The last exception once attempts are exhausted

    Algorithm:
        1. Call func; return on success
        2. On error: re-raise immediately if not retryable or on last attempt
        3. Sleep min(base * 2^(attempt-1) + jitter, max_delay), try again
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except Exception as e:
            last_error = e

            if is_retryable and not is_retryable(e):
                logger.warning(f"Non-retryable error on attempt {attempt}, failing fast: {e}")
                raise

            if attempt == max_attempts:
                logger.error(f"All {max_attempts} retry attempts exhausted: {e}")
                break

            jitter = random.uniform(0, base_delay / 2)
            delay = min(base_delay * (2 ** (attempt - 1)) + jitter, max_delay)
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed ({e}); retrying in {delay:.2f}s"
            )
            await sleep(delay)

    raise last_error
