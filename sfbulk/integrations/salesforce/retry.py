"""
Retry policy and backoff calculation for Salesforce API calls.

Implements error-aware retry logic:
- 401/403/404/412 and business-logic errors -> fail immediately (no retry)
- 429 rate limit -> retry, honouring Retry-After up to a safety ceiling
- 500/502/503/504, timeouts, connection errors -> exponential backoff + jitter
- After max attempts -> RetriesExhaustedError wrapping the last error

Backoff formula: min(base_delay * 2^retry + jitter, max_delay)
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from sfbulk.integrations.salesforce.exceptions import (
    SalesforceError,
    SalesforceRateLimitError,
    RetriesExhaustedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retry configuration constants
MAX_ATTEMPTS = 4  # first attempt + 3 retries
BASE_DELAY_SECONDS = 0.5
MAX_DELAY_SECONDS = 30.0
JITTER_FACTOR = 0.25  # up to +25% of the exponential delay
MAX_RETRY_AFTER_SECONDS = 60.0


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry policy configuration.

    Attributes:
        max_attempts: Total attempts per call, including the first one
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Maximum backoff delay cap
        jitter_factor: Random jitter factor (0.25 = up to +25%)
        max_elapsed_seconds: Optional budget for the whole call, retries included
        max_retry_after_seconds: Largest server Retry-After honoured as-is
    """
    max_attempts: int = MAX_ATTEMPTS
    base_delay_seconds: float = BASE_DELAY_SECONDS
    max_delay_seconds: float = MAX_DELAY_SECONDS
    jitter_factor: float = JITTER_FACTOR
    max_elapsed_seconds: Optional[float] = None
    max_retry_after_seconds: float = MAX_RETRY_AFTER_SECONDS

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must not be negative")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        return cls(max_attempts=1)

    @classmethod
    def aggressive(cls) -> "RetryConfig":
        return cls(
            max_attempts=6,
            base_delay_seconds=0.1,
            max_delay_seconds=60.0,
            max_retry_after_seconds=120.0,
        )


@dataclass(frozen=True)
class RetryDecision:
    """
    Result of retry evaluation.

    Attributes:
        should_retry: Whether to retry the operation
        delay_seconds: Seconds to wait before retry (if retrying)
        reason: Human-readable explanation
    """
    should_retry: bool
    delay_seconds: float
    reason: str


def calculate_backoff(retry_number: int, config: RetryConfig = RetryConfig()) -> float:
    """
    Calculate backoff delay with exponential growth and jitter.

    Args:
        retry_number: Number of retries already made (0 for the first retry)
        config: Retry policy configuration

    Returns:
        Delay in seconds before next retry
    """
    delay = config.base_delay_seconds * (2 ** retry_number)
    jitter = random.uniform(0, delay * config.jitter_factor) if config.jitter_factor else 0.0
    return min(delay + jitter, config.max_delay_seconds)


def decide_retry(
    error: SalesforceError,
    attempts_made: int,
    config: RetryConfig = RetryConfig(),
    elapsed_seconds: float = 0.0,
) -> RetryDecision:
    """
    Determine if a failed call should be retried.

    Args:
        error: Classified error from the failed attempt
        attempts_made: Attempts made so far, including the failed one
        config: Retry policy configuration
        elapsed_seconds: Time spent on this call so far

    Returns:
        RetryDecision with delay for the next attempt
    """
    if not error.retryable:
        return RetryDecision(
            should_retry=False,
            delay_seconds=0,
            reason=f"Non-retryable error ({error.kind.value})",
        )

    if attempts_made >= config.max_attempts:
        return RetryDecision(
            should_retry=False,
            delay_seconds=0,
            reason=f"Max attempts ({config.max_attempts}) exceeded",
        )

    retry_after = error.retry_after if isinstance(error, SalesforceRateLimitError) else None
    if retry_after is not None and 0 <= retry_after <= config.max_retry_after_seconds:
        delay = float(retry_after)
        source = "retry-after"
    else:
        delay = calculate_backoff(attempts_made - 1, config)
        source = "backoff"

    if (
        config.max_elapsed_seconds is not None
        and elapsed_seconds + delay > config.max_elapsed_seconds
    ):
        return RetryDecision(
            should_retry=False,
            delay_seconds=0,
            reason=f"Retry would exceed max elapsed time ({config.max_elapsed_seconds}s)",
        )

    return RetryDecision(
        should_retry=True,
        delay_seconds=delay,
        reason=(
            f"Transient error ({error.kind.value}) - retry in {delay:.2f}s "
            f"via {source} (attempt {attempts_made + 1}/{config.max_attempts})"
        ),
    )


class RetryPolicy:
    """
    Runs one call with bounded retries.

    Holds only immutable configuration: every execute() owns its attempt
    counter and clock, so one policy can serve concurrent tasks.
    """

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "request",
    ) -> T:
        """
        Run operation, retrying transient failures.

        Args:
            operation: Zero-argument coroutine factory (called once per attempt)
            description: Label used in log records

        Returns:
            The operation's result

        Raises:
            RetriesExhaustedError: When the attempt or time budget is spent
            SalesforceError: Non-retryable errors, unchanged
        """
        attempts = 0
        start_time = time.monotonic()

        while True:
            attempts += 1
            try:
                return await operation()
            except SalesforceError as e:
                if not e.retryable:
                    raise

                decision = decide_retry(
                    e,
                    attempts_made=attempts,
                    config=self.config,
                    elapsed_seconds=time.monotonic() - start_time,
                )

                if not decision.should_retry:
                    logger.error(
                        "Salesforce call failed, retries exhausted",
                        extra={
                            "operation": description,
                            "attempts": attempts,
                            "error_kind": e.kind.value,
                            "reason": decision.reason,
                        },
                    )
                    raise RetriesExhaustedError(attempts=attempts, last_error=e) from e

                logger.warning(
                    "Salesforce call failed, retrying",
                    extra={
                        "operation": description,
                        "attempt": attempts,
                        "error_kind": e.kind.value,
                        "status_code": e.status_code,
                        "delay_seconds": decision.delay_seconds,
                    },
                )
                await asyncio.sleep(decision.delay_seconds)
