"""Bounded retry around one logical operation.

Every attempt is admitted by the CircuitBreaker first and reports exactly
one outcome back to it. Failures are classified through their OutcomeKind:
only transient failures (JSON parse / schema validation) are retried, with
exponential backoff before attempt k of min(1000 * 2^(k-2), 5000) ms.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .circuit_breaker import CircuitBreaker
from .errors import CircuitOpenError, Outcome, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 5000


def backoff_delay_ms(attempt: int) -> int:
    """Delay before the given attempt number (1-based). No delay before the first."""
    if attempt < 2:
        return 0
    return min(BASE_DELAY_MS * 2 ** (attempt - 2), MAX_DELAY_MS)


def default_should_retry(outcome: Outcome) -> bool:
    return outcome.is_transient


@dataclass(frozen=True)
class RetryOptions:
    """Per-call retry configuration."""

    max_retries: int = DEFAULT_MAX_RETRIES
    should_retry: Callable[[Outcome], bool] = default_should_retry
    on_retry: Callable[[RetryAttempt], None] | None = None


@dataclass(frozen=True)
class RetryAttempt:
    """One failed attempt that is about to be retried. Never persisted."""

    number: int
    error: BaseException
    delay_ms: int


class RetryPolicy:
    """Runs an operation with circuit-breaker admission and bounded retry."""

    def __init__(
        self,
        breaker: CircuitBreaker | None = None,
        options: RetryOptions | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._breaker = breaker
        self._options = options or RetryOptions()
        self._sleep = sleep

    @property
    def options(self) -> RetryOptions:
        return self._options

    async def run(self, operation: Callable[[], Awaitable[T]], operation_name: str | None = None) -> T:
        """Execute ``operation`` until it succeeds or retries are exhausted.

        Raises:
            CircuitOpenError: Admission denied before an attempt.
            RetryExhaustedError: Every attempt failed with a retryable error.
            Exception: The first non-retryable error, unchanged.
        """
        name = operation_name or (self._breaker.operation if self._breaker else "operation")
        max_retries = max(1, self._options.max_retries)
        delay_ms = 0

        for attempt in range(1, max_retries + 1):
            if delay_ms:
                logger.info(
                    "Waiting %dms before attempt %d/%d of %s",
                    delay_ms,
                    attempt,
                    max_retries,
                    name,
                    extra={"operation": name, "attempt": attempt},
                )
                await self._sleep(delay_ms / 1000)

            token = None
            if self._breaker is not None:
                token = await self._breaker.check_state()
                if not token.allowed:
                    logger.warning(
                        "Circuit breaker denied %s: %s",
                        name,
                        token.reason,
                        extra={"operation": name, "attempt": attempt},
                    )
                    raise CircuitOpenError(name, token.wait_seconds)

            logger.debug(
                "Attempt %d/%d of %s",
                attempt,
                max_retries,
                name,
                extra={"operation": name, "attempt": attempt},
            )
            outcome = await self._attempt(operation)

            if self._breaker is not None and token is not None:
                if outcome.is_success:
                    await self._breaker.record_success(token)
                else:
                    await self._breaker.record_failure(token)

            if outcome.is_success:
                if attempt > 1:
                    logger.info(
                        "%s succeeded on attempt %d",
                        name,
                        attempt,
                        extra={"operation": name, "attempt": attempt},
                    )
                return outcome.value  # type: ignore[return-value]

            error = outcome.error
            if error is None:
                raise RuntimeError(f"Attempt {attempt} of {name} failed without an error")

            logger.warning(
                "Attempt %d/%d of %s failed: %s",
                attempt,
                max_retries,
                name,
                error,
                extra={
                    "operation": name,
                    "attempt": attempt,
                    "error_type": type(error).__name__,
                    "outcome": outcome.kind.value,
                },
            )

            if not self._options.should_retry(outcome):
                raise error

            if attempt == max_retries:
                logger.error(f"All {max_retries} attempts of {name} failed")
                raise RetryExhaustedError(name, max_retries, error) from error

            delay_ms = backoff_delay_ms(attempt + 1)
            if self._options.on_retry is not None:
                self._options.on_retry(RetryAttempt(number=attempt, error=error, delay_ms=delay_ms))

        raise AssertionError("unreachable")  # pragma: no cover

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> Outcome[T]:
        try:
            return Outcome.ok(await operation())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return Outcome.failed(e)
