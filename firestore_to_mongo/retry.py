"""Bounded retry with exponential backoff for store calls."""

import functools
import logging
import time
from typing import Callable, Optional, TypeVar

from google.api_core.retry import exponential_sleep_generator

from .config import RetrySettings
from .exceptions import TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Re-runs a callable while it raises TransientIOError.

    ``attempts`` counts the first call, so attempts=3 means up to two
    retries. Delays follow google-api-core's jittered exponential curve.
    Any other exception propagates immediately.
    """

    def __init__(self, settings: Optional[RetrySettings] = None, sleep: Callable[[float], None] = time.sleep):
        self.settings = settings or RetrySettings()
        self._sleep = sleep

    def call(self, func: Callable[..., T], *args, description: str = "", **kwargs) -> T:
        label = description or getattr(func, "__name__", "operation")
        delays = exponential_sleep_generator(
            self.settings.initial_delay, self.settings.max_delay, self.settings.multiplier
        )
        attempts = self.settings.attempts
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)
            except TransientIOError as e:
                if attempt >= attempts:
                    logger.error(f"{label} failed after {attempts} attempt(s): {e}")
                    raise
                delay = next(delays)
                logger.warning(f"{label} retry {attempt}/{attempts - 1} in {delay:.1f}s: {e}")
                self._sleep(delay)
                attempt += 1

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Use the policy as a decorator."""

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)

        return wrapper


NO_RETRY = RetryPolicy(RetrySettings(attempts=1))
