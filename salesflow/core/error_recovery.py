"""Retry support for transient storage failures."""

import random
import time
from functools import wraps
from typing import Callable, Optional, Tuple, Type

from .exceptions import AutomationEngineError, StorageError, TransientError
from .logging import RetryLogger


class RetryConfig:
    """Exponential backoff settings for ``with_retry``."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
        jitter: bool = True,
        retry_on: Tuple[Type[Exception], ...] = (TransientError, StorageError),
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retry_on = retry_on

    def should_retry(self, error: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts or not isinstance(error, self.retry_on):
            return False
        if isinstance(error, AutomationEngineError):
            return error.recoverable
        return True

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Retry the decorated call while it raises a recoverable storage error."""
    config = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            retry_logger = RetryLogger(func.__qualname__)
            attempt = 0
            while True:
                attempt += 1
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not config.should_retry(e, attempt):
                        if attempt > 1:
                            retry_logger.attempt_failed(e, attempt, config.max_attempts, final=True)
                        raise
                    retry_logger.attempt_failed(e, attempt, config.max_attempts)
                    time.sleep(config.delay_for(attempt))
        return wrapper

    return decorator
