import random
from datetime import timedelta
from typing import Protocol

from depqueue.domain.errors import ConfigurationError

class RetryScheduler(Protocol):
    """Computes how long a retry job waits before it becomes eligible."""

    def next_retry_delay(self, attempt: int) -> timedelta:
        ...

class ExponentialRetryScheduler:
    def __init__(
        self,
        base_delay_seconds: int = 5,
        max_delay_seconds: int = 3600,
        jitter: bool = False
    ):
        if base_delay_seconds < 0 or max_delay_seconds < 0:
            raise ConfigurationError("Retry delays must not be negative")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter = jitter

    def next_retry_delay(self, attempt: int) -> timedelta:
        """
        Exponential backoff with optional jitter.

        Formula:
            delay = min(base * (2 ^ attempt), max_delay)
            if jitter:
                delay = delay + random_uniform(0, 0.1 * delay)

        Args:
            attempt: Number of retries already created for the original job.
                     0 means "the original failed, schedule the first retry".
        """
        if attempt < 0:
            attempt = 0

        # 2^20 seconds is ~12 days, far past any sane max_delay.
        safe_attempt = min(attempt, 20)

        delay = self.base_delay_seconds * (2 ** safe_attempt)

        if delay > self.max_delay_seconds:
            delay = self.max_delay_seconds

        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return timedelta(seconds=delay)

class FixedRetryScheduler:
    """Same delay before every retry. A delay of 0 retries immediately."""

    def __init__(self, delay_seconds: int = 0):
        if delay_seconds < 0:
            raise ConfigurationError("Retry delay must not be negative")
        self.delay_seconds = delay_seconds

    def next_retry_delay(self, attempt: int) -> timedelta:
        return timedelta(seconds=self.delay_seconds)

def build_retry_scheduler(settings) -> RetryScheduler:
    if settings.RETRY_POLICY == "exponential":
        return ExponentialRetryScheduler(
            base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER,
        )
    if settings.RETRY_POLICY == "fixed":
        return FixedRetryScheduler(settings.RETRY_BASE_DELAY_SECONDS)
    raise ConfigurationError(f"Unknown retry policy {settings.RETRY_POLICY!r}")
