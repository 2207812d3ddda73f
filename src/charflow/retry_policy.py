"""Retry with exponential backoff.

``RetryPolicy.execute`` invokes an action and, on failure, sleeps
``min(base_delay * 2**attempt, max_delay)`` before trying again, up to
``max_retries`` retries. ``CircuitOpenError`` is never retried: it is
re-raised immediately, because an open breaker will reject the next
attempt as well.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type

from .exceptions import CircuitOpenError, RetryExhaustedError

logger = logging.getLogger(__name__)

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters.

    Attributes:
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, seconds
        max_delay: Upper bound for any single delay, seconds
        jitter: Fraction of the delay added at random (0 disables)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")


class RetryPolicy:
    """Bounded retries with exponential backoff.

    Example:
        policy = RetryPolicy(RetryConfig(max_retries=2, base_delay=5.0))
        handle = policy.execute(
            lambda: breaker.call(backend.submit, job),
            operation_name=f"submit {job.id}",
        )
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            config: Backoff parameters
            retry_on: Exception types that trigger a retry; others propagate at once
            sleep: Sleep function, injectable for tests
        """
        self.config = config or RetryConfig()
        self.retry_on = retry_on
        self._sleep = sleep

    def compute_delay(self, attempt: int, base_delay: float = None, max_delay: float = None) -> float:
        """Delay after the failed attempt with 0-based index ``attempt``."""
        base = self.config.base_delay if base_delay is None else base_delay
        cap = self.config.max_delay if max_delay is None else max_delay
        delay = min(base * (2 ** attempt), cap)
        if self.config.jitter:
            delay += random.uniform(0, delay * self.config.jitter)
        return delay

    def execute(
        self,
        action: Callable[[], Any],
        max_retries: int = None,
        base_delay: float = None,
        max_delay: float = None,
        operation_name: str = "operation",
        on_retry: Optional[RetryCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Run ``action`` with retries.

        Args:
            action: Zero-argument callable
            max_retries: Override of ``config.max_retries``
            base_delay: Override of ``config.base_delay``
            max_delay: Override of ``config.max_delay``
            operation_name: Label for logs and the exhaustion error
            on_retry: Called as ``on_retry(attempt, error, delay)`` before each
                      backoff sleep; ``attempt`` is the 1-based retry number
            cancel_event: When set, backoff is cut short and no further
                          attempt is made

        Returns:
            The action's result

        Raises:
            CircuitOpenError: Immediately, without retrying
            RetryExhaustedError: After the last allowed attempt failed,
                                 chained to the final error
            Exception: Errors not matching ``retry_on``, unchanged
        """
        retries = self.config.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValueError("max_retries must be >= 0")

        attempt = 0
        while True:
            try:
                result = action()
                if attempt > 0:
                    logger.info(f"[Retry] {operation_name} succeeded on retry {attempt}")
                return result
            except CircuitOpenError:
                raise
            except self.retry_on as e:
                logger.warning(
                    f"[Retry] {operation_name} failed (attempt {attempt + 1}/{retries + 1}): "
                    f"{type(e).__name__}: {e}"
                )
                cancelled = cancel_event is not None and cancel_event.is_set()
                if attempt >= retries or cancelled:
                    if cancelled:
                        logger.info(f"[Retry] {operation_name} cancelled, not retrying")
                    else:
                        logger.error(f"[Retry] Max retries reached for {operation_name}")
                    raise RetryExhaustedError(operation_name, attempt + 1, e) from e

                delay = self.compute_delay(attempt, base_delay, max_delay)
                if on_retry is not None:
                    on_retry(attempt + 1, e, delay)
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise RetryExhaustedError(operation_name, attempt + 1, e) from e
                else:
                    self._sleep(delay)
                attempt += 1
