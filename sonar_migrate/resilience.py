"""Retry and throttling policy for remote calls.

Writes are spaced by a minimum interval per connection; any call that hits a
rate limit (HTTP 429 or 503) is retried with exponential backoff. Other
failures propagate on the first attempt.
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from asyncio_throttle import Throttler
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sonar_migrate.config import RateLimitConfig
from sonar_migrate.errors import RateLimitError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RemoteCallPolicy:
    """Throttle and retry wrapper shared by every call on one connection."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        min_request_interval: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize the policy.

        Args:
            max_retries: Retries after the first attempt on rate limiting.
            base_delay: Seconds before the first retry, doubled for each next one.
            min_request_interval: Minimum seconds between two write calls. Zero
                disables throttling.
            sleep: Coroutine used to wait between retries; tests pass a fake.
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.min_request_interval = min_request_interval
        self._sleep = sleep or asyncio.sleep
        self._throttler = (
            Throttler(rate_limit=1, period=min_request_interval)
            if min_request_interval > 0
            else None
        )
        self._logger = logger.bind(
            max_retries=max_retries, min_request_interval=min_request_interval
        )

    @classmethod
    def from_config(
        cls,
        config: RateLimitConfig,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> "RemoteCallPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay,
            min_request_interval=config.min_request_interval,
            sleep=sleep,
        )

    def retry_delay(self, retry_number: int) -> float:
        """Delay before the given retry (1-based)."""
        return self.base_delay * 2 ** (retry_number - 1)

    def _log_retry(self, operation_name: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            self._logger.warning(
                "Rate limited, will retry",
                operation=operation_name,
                attempt=retry_state.attempt_number,
                delay=retry_state.next_action.sleep if retry_state.next_action else None,
                status_code=getattr(exc, "status_code", None),
                retry_after=getattr(exc, "retry_after", None),
            )

        return before_sleep

    async def call(
        self,
        operation_name: str,
        coro_func: Callable[[], Awaitable[T]],
        write: bool = False,
    ) -> T:
        """Execute a coroutine function under this policy.

        Args:
            operation_name: Human-readable name for logging.
            coro_func: Callable returning a fresh coroutine for each attempt.
            write: Whether the call modifies remote state and must be throttled.

        Returns:
            Result of the coroutine.

        Raises:
            RateLimitError: If the call is still rate limited after all retries.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, min=0),
            retry=retry_if_exception_type(RateLimitError),
            before_sleep=self._log_retry(operation_name),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                self._logger.debug(
                    "Executing operation",
                    operation=operation_name,
                    attempt=attempt.retry_state.attempt_number,
                    write=write,
                )
                if write and self._throttler is not None:
                    async with self._throttler:
                        return await coro_func()
                return await coro_func()

    def wrap(
        self, write: bool = False
    ) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
        """Decorator form of :meth:`call`."""

        def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
            @functools.wraps(func)
            async def wrapper(*args: Any, **kwargs: Any) -> T:
                return await self.call(
                    func.__name__, lambda: func(*args, **kwargs), write=write
                )

            return wrapper

        return decorator
