"""Resilience policies for outbound cloud directory calls.

Every read and write against the cloud identity directory goes through a
ResiliencePolicy, which composes three behaviours (innermost first):

1. Timeout: each attempt is bounded; an attempt that overruns is a transient failure.
2. Retry: transient failures (408, 429, 5xx, network errors, timeouts) are retried
   with exponential backoff (base ** attempt seconds) plus random jitter. A 429
   response carrying Retry-After overrides the computed delay.
3. Circuit breaker: consecutive transient failures open the circuit for a cooldown
   window. While open, calls fail fast without reaching the network. After the
   cooldown a single half-open trial call is admitted; its outcome closes or
   re-opens the circuit.

The breaker is consulted before every attempt and records every attempt's outcome,
so a retry sequence stops as soon as the circuit opens.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, TypeVar

from azure.core.exceptions import HttpResponseError, ServiceRequestError, ServiceResponseError

from .config import ResilienceConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP status codes that indicate a transient condition
TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

# Upper bound for server-provided Retry-After delays
MAX_RETRY_AFTER_SECONDS = 120.0


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, name: str, remaining_seconds: float) -> None:
        super().__init__(
            f"Circuit '{name}' is open, failing fast ({remaining_seconds:.1f}s until half-open)"
        )
        self.name = name
        self.remaining_seconds = remaining_seconds


class CallTimeoutError(TimeoutError):
    """Raised when a single attempt exceeds the configured timeout."""

    pass


def is_transient(error: BaseException) -> bool:
    """Classify an outbound call failure as transient (retryable) or fatal."""
    if isinstance(error, HttpResponseError):
        return error.status_code in TRANSIENT_STATUS_CODES
    if isinstance(error, (TimeoutError, ServiceRequestError, ServiceResponseError)):
        return True
    return False


def retry_after_seconds(error: BaseException) -> float | None:
    """Extract a Retry-After delay from a throttled response, if present.

    Supports both the delta-seconds and HTTP-date forms of the header.
    """
    if not isinstance(error, HttpResponseError) or error.status_code != 429:
        return None

    response: Any = getattr(error, "response", None)
    headers = getattr(response, "headers", None) if response is not None else None
    if not headers:
        return None

    value = headers.get("Retry-After") or headers.get("retry-after")
    if value is None:
        return None

    value = str(value).strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            retry_at = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=UTC)
        seconds = (retry_at - datetime.now(UTC)).total_seconds()

    return min(max(seconds, 0.0), MAX_RETRY_AFTER_SECONDS)


class CircuitBreaker:
    """Consecutive-failure circuit breaker with a single half-open trial call."""

    def __init__(
        self,
        name: str,
        failure_threshold: int,
        reset_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._name = name
        self._failure_threshold = failure_threshold
        self._reset_seconds = reset_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def remaining_seconds(self) -> float:
        """Seconds until an open circuit admits a half-open trial."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._reset_seconds - (self._clock() - self._opened_at))

    def before_call(self) -> None:
        """Admit or reject a call.

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with a trial in flight.
        """
        if self._state == CircuitState.OPEN:
            remaining = self.remaining_seconds()
            if remaining > 0:
                raise CircuitOpenError(self._name, remaining)
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(
                "Circuit breaker half-open, admitting trial call",
                extra={"circuit": self._name},
            )

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self._name, 0.0)
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(
                "Circuit breaker closed, calls allowed",
                extra={"circuit": self._name},
            )
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        self._trial_in_flight = False

        if (
            self._state == CircuitState.HALF_OPEN
            or self._consecutive_failures >= self._failure_threshold
        ):
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.error(
                "Circuit breaker opened after consecutive failures",
                extra={
                    "circuit": self._name,
                    "consecutive_failures": self._consecutive_failures,
                    "reset_seconds": self._reset_seconds,
                },
            )

    def release(self) -> None:
        """Release a half-open trial slot without recording an outcome."""
        self._trial_in_flight = False


class ResiliencePolicy:
    """Timeout -> retry -> circuit breaker composition for one downstream service."""

    def __init__(
        self,
        config: ResilienceConfig,
        *,
        name: str = "cloud-directory",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._name = name
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._breaker = CircuitBreaker(
            name=name,
            failure_threshold=config.breaker_failure_threshold,
            reset_seconds=config.breaker_reset_seconds,
            clock=clock,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def backoff_seconds(self, attempt: int, error: BaseException | None = None) -> float:
        """Delay before the attempt following `attempt` (1-based)."""
        server_delay = retry_after_seconds(error) if error is not None else None
        if server_delay is not None:
            return server_delay
        backoff = self._config.backoff_base_seconds**attempt
        jitter = self._rng.uniform(0, self._config.max_jitter_seconds)
        return backoff + jitter

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
    ) -> T:
        """Run an async operation under the composed policy.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt.
            operation_name: Human-readable name for logging.

        Returns:
            The operation's result.

        Raises:
            CircuitOpenError: If the circuit rejects the call.
            CallTimeoutError: If the last attempt timed out.
            Exception: The last transient error once attempts are exhausted, or the
                first fatal error.
        """
        max_attempts = self._config.max_attempts

        for attempt in range(1, max_attempts + 1):
            self._breaker.before_call()

            try:
                # Cancels the coroutine only; executor-backed calls bound their own I/O
                result = await asyncio.wait_for(operation(), timeout=self._config.timeout_seconds)
            except TimeoutError:
                error: Exception = CallTimeoutError(
                    f"{operation_name} timed out after {self._config.timeout_seconds}s"
                )
            except asyncio.CancelledError:
                self._breaker.release()
                raise
            except Exception as e:
                error = e
            else:
                self._breaker.record_success()
                return result

            if not is_transient(error):
                # The service answered; a fatal response is not a health signal
                if isinstance(error, HttpResponseError):
                    self._breaker.record_success()
                else:
                    self._breaker.release()
                raise error

            self._breaker.record_failure()

            if attempt >= max_attempts or self._breaker.state == CircuitState.OPEN:
                logger.error(
                    f"{operation_name} failed",
                    extra={
                        "circuit": self._name,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "circuit_state": self._breaker.state.value,
                        "error": str(error),
                    },
                )
                raise error

            wait_time = self.backoff_seconds(attempt, error)
            logger.warning(
                f"{operation_name} failed, retrying",
                extra={
                    "circuit": self._name,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "wait_seconds": round(wait_time, 3),
                    "status_code": getattr(error, "status_code", None),
                    "error": str(error),
                },
            )
            await self._sleep(wait_time)

        # SAFETY: every loop iteration returns or raises
        raise AssertionError("Retry loop completed without a result")
