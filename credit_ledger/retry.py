"""
Retry utilities for credit-granting paths that must not be lost
"""
import logging
import random
import time
from typing import Callable, Any, Optional, List

from .service import UpstreamUnavailableError

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 0.2,
        max_delay: float = 5.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [UpstreamUnavailableError]

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= (0.5 + random.random() * 0.5)

    return delay


def retry_call(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call ``func`` with exponential backoff, re-raising the last error when attempts run out"""
    last_exception = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not any(isinstance(e, exc_type) for exc_type in config.retryable_exceptions):
                raise
            last_exception = e

            if attempt == config.max_attempts:
                logger.error("Max retry attempts (%d) reached for %s", config.max_attempts, func.__name__)
                break

            delay = calculate_delay(attempt, config)
            logger.warning(
                "Attempt %d/%d failed for %s: %s. Retrying in %.2fs",
                attempt, config.max_attempts, func.__name__, e, delay,
            )
            if delay > 0:
                time.sleep(delay)

    raise last_exception
