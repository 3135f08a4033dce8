"""
Retry utilities with bounded backoff for marketplace API calls.

A rate-limited marketplace call waits a fixed interval and is retried once.
``RetryConfig`` and ``ExponentialBackoff`` also support longer exponential
schedules with jitter.
"""

import random
import time
from dataclasses import dataclass
from typing import Callable, Type, Tuple, Optional, Any

from listing_sync.utils.logger import get_logger
from listing_sync.utils.exceptions import RateLimitError, ServerError, NetworkError, RequestTimeoutError


logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True

    retry_on_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504)
    retry_on_exceptions: Tuple[Type[Exception], ...] = (
        RateLimitError,
        ServerError,
        NetworkError,
        RequestTimeoutError,
    )

    respect_retry_after: bool = True
    max_retry_after: float = 300.0


def rate_limit_retry_config(backoff_seconds: float = 2.0) -> RetryConfig:
    """Single fixed-delay retry on 429, nothing else."""
    return RetryConfig(
        max_retries=1,
        base_delay=backoff_seconds,
        max_delay=backoff_seconds,
        exponential_base=1.0,
        jitter=False,
        retry_on_status_codes=(429,),
        retry_on_exceptions=(RateLimitError,),
        respect_retry_after=False,
    )


class ExponentialBackoff:
    """
    Exponential backoff calculator with optional jitter.

    - delay = base_delay * exponential_base ** attempt
    - optional +/-25% jitter
    - capped at max_delay
    """

    def __init__(self, config: RetryConfig):
        self.config = config
        self.attempt = 0

    def reset(self) -> None:
        self.attempt = 0

    def calculate_delay(self, retry_after: Optional[Any] = None) -> float:
        """
        Calculate delay for the current attempt and advance the counter.

        Args:
            retry_after: Retry-After value from a 429 response

        Returns:
            Delay in seconds
        """
        if retry_after and self.config.respect_retry_after:
            try:
                value = float(retry_after)
                if value <= self.config.max_retry_after:
                    self.attempt += 1
                    logger.debug(f"Using Retry-After header: {value}s")
                    return value
                logger.warning(f"Retry-After too large ({value}s), using backoff schedule")
            except (ValueError, TypeError):
                logger.warning(f"Invalid Retry-After header: {retry_after}")

        delay = self.config.base_delay * (self.config.exponential_base ** self.attempt)

        if self.config.jitter:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        delay = min(delay, self.config.max_delay)
        self.attempt += 1

        logger.debug(f"Calculated retry delay: {delay:.2f}s (attempt {self.attempt})")
        return delay

    def should_retry(self, exception: Exception, status_code: Optional[int] = None) -> bool:
        """Decide whether the failed call should be attempted again."""
        if self.attempt >= self.config.max_retries:
            logger.debug(f"Max retries ({self.config.max_retries}) exceeded")
            return False

        if status_code and status_code in self.config.retry_on_status_codes:
            return True

        if isinstance(exception, self.config.retry_on_exceptions):
            return True

        return False


def retry_call(func: Callable, config: RetryConfig, *args,
               sleep: Callable[[float], None] = None, **kwargs) -> Any:
    """
    Call ``func`` and retry it according to ``config``.

    The last exception propagates once retries are exhausted.
    """
    sleep = sleep or time.sleep
    backoff = ExponentialBackoff(config)

    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            status_code = getattr(e, 'status_code', None)
            if not backoff.should_retry(e, status_code):
                raise

            delay = backoff.calculate_delay(getattr(e, 'retry_after', None))
            logger.info(
                f"Retrying {getattr(func, '__name__', 'call')} in {delay:.2f}s "
                f"(attempt {backoff.attempt}) after {type(e).__name__}"
            )
            sleep(delay)

