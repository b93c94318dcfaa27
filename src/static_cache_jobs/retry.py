"""Retry with exponential backoff.

Delays are whole milliseconds. The delay before attempt ``n + 1`` is
``min(initial_delay * multiplier ** (n - 1), max_delay)``, optionally perturbed
by up to +/-10% jitter and never negative.
"""

import functools
import logging
import random
import time
from collections.abc import Callable, Mapping
from typing import ParamSpec, TypeVar

from .errors import ConditionNotMet, RetryExhausted
from .schemas import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")

JITTER_FACTOR = 0.1


def compute_delays(config: RetryConfig, count: int | None = None) -> list[int]:
    """Return the pre-jitter delay schedule between attempts.

    Args:
        config: Retry configuration
        count: Number of delays to compute (defaults to ``max_attempts - 1``)

    Returns:
        Delays in milliseconds, e.g. ``[100, 200, 400, 800, 1000]``
    """
    if count is None:
        count = config.max_attempts - 1
    delays: list[int] = []
    delay = float(config.initial_delay)
    for _ in range(count):
        delays.append(int(delay))
        delay = min(delay * config.multiplier, float(config.max_delay))
    return delays


def apply_jitter(delay: int, rng: random.Random | None = None) -> int:
    """Perturb ``delay`` by up to +/-10%, clamped at zero."""
    spread = int(delay * JITTER_FACTOR)
    if spread <= 0:
        return max(0, delay)
    offset = (rng or random).randint(-spread, spread)
    return max(0, delay + offset)


class RetryExecutor:
    """Runs callables with bounded retries and exponential backoff.

    The sleep between attempts is the only intentional blocking wait in the
    package; ``sleep`` is injectable so callers and tests can control it.

    Example:
        executor = RetryExecutor()
        html = executor.retry(lambda: producer.capture("42"), RetryConfig(max_attempts=2))
    """

    def __init__(
        self,
        default_config: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ):
        self.default_config: RetryConfig = default_config or RetryConfig()
        self._sleep: Callable[[float], None] = sleep
        self._rng: random.Random | None = rng

    def _wait(self, delay_ms: int) -> None:
        if delay_ms > 0:
            self._sleep(delay_ms / 1000)

    def _next_wait(self, delay: int, config: RetryConfig) -> int:
        return apply_jitter(delay, self._rng) if config.jitter else delay

    @staticmethod
    def _grow(delay: int, config: RetryConfig) -> int:
        return int(min(delay * config.multiplier, config.max_delay))

    @staticmethod
    def is_retryable(exc: BaseException, config: RetryConfig) -> bool:
        """An empty allow-list means every failure is retryable."""
        if config.fatal_exceptions and isinstance(exc, config.fatal_exceptions):
            return False
        if not config.retryable_exceptions:
            return True
        return isinstance(exc, config.retryable_exceptions)

    def retry(self, operation: Callable[[], T], config: RetryConfig | None = None) -> T:
        """Execute ``operation`` until it succeeds or attempts are exhausted.

        Raises:
            RetryExhausted: All attempts failed; wraps the last error
            Exception: A non-retryable error is re-raised unchanged
            ValueError: The config allows no attempts
        """
        config = config or self.default_config
        delay = config.initial_delay
        last_error: Exception | None = None

        for attempt in range(1, config.max_attempts + 1):
            if attempt > 1:
                logger.info(f"Retry attempt {attempt}/{config.max_attempts}")
            try:
                result = operation()
            except Exception as e:
                last_error = e
                if not self.is_retryable(e, config):
                    raise

                logger.warning(
                    f"Attempt {attempt}/{config.max_attempts} failed: "
                    f"{e.__class__.__name__}: {e}"
                )
                if attempt < config.max_attempts:
                    self._wait(self._next_wait(delay, config))
                    delay = self._grow(delay, config)
                continue

            if attempt > 1:
                logger.info(f"Operation succeeded on attempt {attempt}")
            return result

        if last_error is None:
            # Only reachable with an unvalidated config that allows no attempts
            raise ValueError(f"max_attempts must be at least 1, got {config.max_attempts}")
        logger.error(
            f"All {config.max_attempts} retry attempts failed. Last error: {last_error}"
        )
        raise RetryExhausted(config.max_attempts, last_error) from last_error

    def retry_with_condition(
        self,
        operation: Callable[[], T],
        should_retry: Callable[[T, int], bool],
        config: RetryConfig | None = None,
    ) -> T:
        """Retry based on inspecting the result rather than exceptions.

        ``should_retry(result, attempt)`` returns True when the result is not
        acceptable (for example an HTTP 503). Exceptions raised by the
        operation follow the exception rules of ``retry``.

        Raises:
            ConditionNotMet: No acceptable result within ``max_attempts``
            RetryExhausted: Every attempt raised
        """
        config = config or self.default_config
        delay = config.initial_delay
        last_result: T | None = None
        last_error: Exception | None = None

        for attempt in range(1, config.max_attempts + 1):
            try:
                result = operation()
            except Exception as e:
                if not self.is_retryable(e, config):
                    raise
                last_error = e
                logger.warning(f"Attempt {attempt}/{config.max_attempts} raised: {e}")
            else:
                last_error = None
                if not should_retry(result, attempt):
                    return result
                last_result = result
                logger.info(
                    f"Retrying based on condition (attempt {attempt}/{config.max_attempts})"
                )

            if attempt < config.max_attempts:
                self._wait(self._next_wait(delay, config))
                delay = self._grow(delay, config)

        if last_error is not None:
            raise RetryExhausted(config.max_attempts, last_error) from last_error
        raise ConditionNotMet(config.max_attempts, last_result)

    def retry_sequence(
        self,
        operations: Mapping[str, Callable[[], T]],
        config: RetryConfig | None = None,
    ) -> dict[str, T]:
        """Run named operations in order, each with retry.

        Stops at the first operation that exhausts its attempts.
        """
        results: dict[str, T] = {}
        for name, operation in operations.items():
            try:
                results[name] = self.retry(operation, config)
            except Exception:
                logger.error(f"Sequence failed at operation {name} (completed: {list(results)})")
                raise
        return results

    def wrap(self, func: Callable[P, T], config: RetryConfig | None = None) -> Callable[P, T]:
        """Return a callable that retries ``func`` with the given config."""

        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.retry(lambda: func(*args, **kwargs), config)

        return wrapper
