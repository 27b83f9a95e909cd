"""
Retry policy for outbound calls.

Each call site that talks to the API server or the metrics backend is
handed a RetryPolicy instead of running its own sleep loop, so backoff
behaviour can be configured and tested on its own.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from optipod.config import BaseConfig
from optipod.core.cluster import TransientClusterError

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    Exponential backoff with optional jitter.

    Attributes:
        max_attempts: Total number of tries, including the first.
        base_delay: Delay after the first failure in seconds.
        max_delay: Upper bound for any single delay.
        backoff_factor: Multiplier applied per attempt.
        jitter: Fraction of the delay added at random (0.1 = up to +10%).
        retry_on: Exception types considered transient.
        sleep: Sleep function, replaceable in tests.
    """
    max_attempts: int = 5
    base_delay: float = 0.1
    max_delay: float = 5.0
    backoff_factor: float = 2.0
    jitter: float = 0.1
    retry_on: tuple = (TransientClusterError,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_config(cls, app_config: BaseConfig, **overrides) -> "RetryPolicy":
        values = {
            "max_attempts": app_config.RETRY_MAX_ATTEMPTS,
            "base_delay": app_config.RETRY_BASE_DELAY,
            "max_delay": app_config.RETRY_MAX_DELAY,
            "backoff_factor": app_config.RETRY_BACKOFF_FACTOR,
            "jitter": app_config.RETRY_JITTER,
        }
        values.update(overrides)
        return cls(**values)

    def delay_for(self, attempt: int) -> float:
        """
        Calculate delay before the next retry.

        Args:
            attempt: The attempt number that just failed (0-based).

        Returns:
            Delay in seconds.
        """
        delay = self.base_delay * (self.backoff_factor ** attempt)
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return min(delay, self.max_delay)

    def call(
        self,
        func: Callable[..., Any],
        *args,
        on_retry: Optional[Callable[[int, Exception], None]] = None,
        **kwargs,
    ) -> Any:
        """
        Invoke func, retrying transient failures.

        Args:
            func: Callable to invoke.
            on_retry: Called with (attempt, error) before each retry sleep.

        Returns:
            Whatever func returns.

        Raises:
            The last transient error once attempts are exhausted, or any
            non-transient error immediately.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return func(*args, **kwargs)
            except self.retry_on as e:
                if attempt == attempts - 1:
                    logger.warning(
                        f"Giving up after {attempts} attempts: {e}"
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.debug(
                    f"Transient failure (attempt {attempt + 1}/{attempts}), "
                    f"retrying in {delay:.3f}s: {e}"
                )
                if on_retry is not None:
                    on_retry(attempt, e)
                self.sleep(delay)
