"""
Retry policy for infrastructure failures at the dispatch layer
"""
import logging
import random
from dataclasses import dataclass
from enum import Enum

from ..config import EngineSettings


logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    FIXED_DELAY = "fixed"
    EXPONENTIAL_BACKOFF = "exponential"
    LINEAR_BACKOFF = "linear"


@dataclass
class RetryPolicy:
    """How often and how patiently a dispatch is redelivered"""
    max_retries: int = 5
    initial_delay: float = 1.0  # seconds
    max_delay: float = 60.0     # seconds
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    backoff_factor: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_dispatch_retries,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_factor=settings.retry_backoff_factor,
        )

    def can_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries


def calculate_retry_delay(retry_count: int, policy: RetryPolicy) -> float:
    """Delay before attempt ``retry_count + 1``"""
    if policy.strategy == RetryStrategy.FIXED_DELAY:
        delay = policy.initial_delay
    elif policy.strategy == RetryStrategy.LINEAR_BACKOFF:
        delay = policy.initial_delay * (retry_count + 1)
    else:
        delay = policy.initial_delay * (policy.backoff_factor ** retry_count)

    delay = min(delay, policy.max_delay)

    if policy.jitter:
        delay += random.uniform(0, delay * 0.1)

    return delay
