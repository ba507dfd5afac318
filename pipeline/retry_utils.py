"""Retry policy shared by the job queue and short in-process calls."""

from __future__ import annotations

import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import httpx

from backend.errors import is_retryable


T = TypeVar("T")

LOGGER = logging.getLogger("vap.retry")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    ``initial_delay`` is the wait before the first retry; each later retry
    multiplies it by ``backoff_multiplier`` up to ``max_delay``. ``jitter`` is
    the fraction the delay may be scaled by in either direction.
    """

    max_attempts: int = 3
    initial_delay: float = 30.0
    max_delay: float = 1800.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.2


def retry_config_from_env(prefix: str = "VAP_RETRY_") -> RetryConfig:
    """Build retry config from environment variables with sane defaults.

    Supported variables:
    - {prefix}MAX_ATTEMPTS (int)
    - {prefix}BASE_DELAY (float seconds)
    - {prefix}MAX_DELAY (float seconds)
    - {prefix}MULTIPLIER (float)
    - {prefix}JITTER (float fraction, 0..1)
    """
    defaults = RetryConfig()

    def _int_env(name: str, default: int, minimum: int) -> int:
        raw = os.getenv(name)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        return max(minimum, value)

    def _float_env(name: str, default: float, minimum: float, maximum: Optional[float] = None) -> float:
        raw = os.getenv(name)
        if raw is None:
            return default
        try:
            value = float(raw)
        except ValueError:
            return default
        value = max(minimum, value)
        return min(maximum, value) if maximum is not None else value

    max_attempts = _int_env(f"{prefix}MAX_ATTEMPTS", defaults.max_attempts, 1)
    initial_delay = _float_env(f"{prefix}BASE_DELAY", defaults.initial_delay, 0.0)
    max_delay = _float_env(f"{prefix}MAX_DELAY", defaults.max_delay, 0.0)
    backoff_multiplier = _float_env(f"{prefix}MULTIPLIER", defaults.backoff_multiplier, 1.0)
    jitter = _float_env(f"{prefix}JITTER", defaults.jitter, 0.0, 1.0)

    # Never cap below the first delay.
    max_delay = max(max_delay, initial_delay)

    return RetryConfig(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        backoff_multiplier=backoff_multiplier,
        jitter=jitter,
    )


def backoff_delay(
    retry_number: int,
    config: Optional[RetryConfig] = None,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Seconds to wait before retry number ``retry_number`` (1-based).

    ``min(initial * multiplier**(n-1), max) * uniform(1-jitter, 1+jitter)``
    """
    active = config or RetryConfig()
    exponent = max(0, retry_number - 1)
    base = min(active.initial_delay * (active.backoff_multiplier ** exponent), active.max_delay)
    if active.jitter <= 0:
        return base
    return base * rng(1.0 - active.jitter, 1.0 + active.jitter)


class MaxRetriesExceeded(Exception):
    """Exception raised when maximum retry attempts are exhausted."""

    pass


def _is_retryable_error(error: Exception) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or 500 <= status < 600
    return is_retryable(error)


def with_retry(
    operation: Callable[[], T],
    config: Optional[RetryConfig] = None,
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute an operation in-process with retry logic and exponential backoff.

    Non-retryable errors are re-raised unchanged on the first attempt.

    Raises:
        MaxRetriesExceeded: If all retry attempts are exhausted
    """
    if config is None:
        config = retry_config_from_env()

    last_error: Optional[Exception] = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return operation()
        except Exception as e:
            if not _is_retryable_error(e):
                raise
            last_error = e

            if attempt >= config.max_attempts:
                break

            delay = backoff_delay(attempt, config)
            LOGGER.warning(
                "retry.scheduled",
                extra={"event": operation_name, "retry_count": attempt, "error": str(e)},
            )
            sleep(delay)

    error_msg = f"{operation_name} failed after {config.max_attempts} attempts"
    if last_error:
        error_msg += f": {last_error}"
    raise MaxRetriesExceeded(error_msg) from last_error
