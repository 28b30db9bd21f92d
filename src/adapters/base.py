"""
Platform adapter contract.

Each supported platform has exactly one adapter class. The aggregation
service maps Platform -> adapter once at startup and never inspects adapter
types afterwards.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, TypeVar

from config import (
    ADAPTER_RETRY_ATTEMPTS,
    ADAPTER_RETRY_BASE_DELAY,
    ADAPTER_RETRY_MAX_DELAY,
    CIRCUIT_FAILURE_THRESHOLD,
    CIRCUIT_MONITOR_WINDOW,
    CIRCUIT_RESET_TIMEOUT,
)
from errors import AdapterError, CircuitOpenError
from models import FetchResult, FetchTrendingOptions, Platform
from utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from utils.common_utils import retry_with_backoff

T = TypeVar("T")

logger = logging.getLogger(__name__)


class PlatformAdapter(ABC):
    """
    Fetches pages of trending videos from one external platform.

    Implementations must:
    - treat options.max_results as an upper bound on returned videos
    - honor options.page_token and report next_page_token where the platform paginates
    - raise AdapterError (never raw transport errors) on failure
    """

    platform: Platform

    @abstractmethod
    async def fetch_trending(self, options: FetchTrendingOptions) -> FetchResult:
        """Fetch one page of trending videos for a region/category."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap liveness probe: credentials present, quota left, etc."""

    def is_configured(self) -> bool:
        """
        Whether credentials for the platform are present.

        Unlike is_available this ignores temporary conditions such as an
        exhausted daily quota, so it decides what gets scheduled.
        """
        return True


class ResilientAdapter(PlatformAdapter):
    """
    Adapter base that wraps every outbound call in a circuit breaker and
    retry-with-backoff, converting whatever escapes into AdapterError.
    """

    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_attempts: int = ADAPTER_RETRY_ATTEMPTS,
        base_delay: float = ADAPTER_RETRY_BASE_DELAY,
        max_delay: float = ADAPTER_RETRY_MAX_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            f"{self.platform.value.lower()}-api",
            failure_threshold=CIRCUIT_FAILURE_THRESHOLD,
            reset_timeout=CIRCUIT_RESET_TIMEOUT,
            monitor_window=CIRCUIT_MONITOR_WINDOW,
        )
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    async def call_with_resilience(self, api_call: Callable[[], Awaitable[T]]) -> T:
        """
        Run `api_call` through the circuit breaker with retries.

        Raises:
            CircuitOpenError: the breaker rejected the call
            AdapterError: every attempt failed
        """
        try:
            return await retry_with_backoff(
                lambda: self.circuit_breaker.execute(api_call),
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                is_retryable=lambda e: not isinstance(e, CircuitBreakerOpen),
                sleep=self._sleep,
            )
        except CircuitBreakerOpen as e:
            raise CircuitOpenError(self.platform.value, str(e), e) from e
        except AdapterError:
            raise
        except Exception as e:
            raise AdapterError(self.platform.value, f"API unavailable: {e}", e) from e


def to_int(value) -> Optional[int]:
    """Parse a platform counter (string or number) into an int, or None."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
