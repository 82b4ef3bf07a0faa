"""Retry and backoff policies for talking to rate-limited chain APIs.

The chain data provider answers with a distinct rate-limit signal. Those
responses are never treated as failures: the same call is repeated after a
fixed delay. Everything else that is transient surfaces to the caller, which
leaves the unit of work for the next indexing run.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional
from dataclasses import dataclass

import structlog

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class TransientError(Exception):
    """A remote answer could not be obtained this run."""
    pass


class RateLimitedError(TransientError):
    """The provider asked us to slow down."""
    pass


class RetryExhaustedException(TransientError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Optional[BaseException] = None):
        super().__init__(message)
        self.last_exception = last_exception


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    ``max_attempts`` of ``None`` retries until the call succeeds.
    """
    max_attempts: Optional[int] = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    backoff_multiplier: float = 1.0
    retriable_exceptions: tuple = (Exception,)


def rate_limit_config(delay: float, max_attempts: Optional[int] = None) -> RetryConfig:
    """Fixed-delay schedule used for rate-limit responses."""
    return RetryConfig(
        max_attempts=max_attempts,
        base_delay=delay,
        max_delay=delay,
        exponential_base=1.0,
        jitter=False,
        retriable_exceptions=(RateLimitedError,)
    )


class RetryMechanism:
    """Implements backoff retry with optional jitter."""

    def __init__(self, config: RetryConfig, sleep: Optional[Sleep] = None):
        self.config = config
        self.sleep = sleep or asyncio.sleep
        self.retries = 0

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt."""
        delay = (
            self.config.base_delay *
            (self.config.exponential_base ** attempt) *
            self.config.backoff_multiplier
        )

        if self.config.jitter:
            delay = delay * (0.5 + random.random() * 0.5)

        return min(delay, self.config.max_delay)

    def _has_attempts_left(self, attempt: int) -> bool:
        if self.config.max_attempts is None:
            return True
        return attempt < self.config.max_attempts - 1

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute coroutine function with retry logic."""
        attempt = 0
        name = getattr(func, "__name__", repr(func))

        while True:
            try:
                result = await func(*args, **kwargs)

                if attempt > 0:
                    logger.info(
                        "Call succeeded after retry",
                        function=name,
                        attempt=attempt + 1
                    )

                return result

            except self.config.retriable_exceptions as e:
                if not self._has_attempts_left(attempt):
                    logger.error(
                        "Call failed after all retries",
                        function=name,
                        attempts=attempt + 1,
                        error=str(e)
                    )
                    raise RetryExhaustedException(
                        f"Failed after {attempt + 1} attempts. Last error: {e}",
                        last_exception=e
                    )

                delay = self.calculate_delay(attempt)
                logger.warning(
                    "Call failed, retrying",
                    function=name,
                    attempt=attempt + 1,
                    error=str(e),
                    delay=delay
                )
                self.retries += 1
                attempt += 1
                await self.sleep(delay)
