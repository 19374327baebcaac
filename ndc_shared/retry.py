"""
Retry mechanism for resilient provider operations.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from ndc_shared.cancellation import CancellationToken, remaining_time, run_cancellable
from ndc_shared.circuit_breaker import CircuitBreaker
from ndc_shared.errors import (
    BreakerOpenError,
    CallCancelledError,
    NdcGatewayException,
    is_retryable,
    wrap_unexpected,
)
from ndc_shared.logging import get_logger
from ndc_shared.metrics import MetricsCollector


Classifier = Callable[[BaseException], bool]


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable backoff configuration for one call type."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.0
    classifier: Classifier = field(default=is_retryable, compare=False)
    # Non-idempotent calls are only retried when the caller supplies an idempotency key
    idempotent: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("delays and jitter must be >= 0")

    def backoff(self, attempt: int) -> float:
        """Deterministic part of the delay before attempt ``attempt + 1``."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


class RetryContext(Protocol):
    """What the executor needs to know about the call it is retrying."""

    operation: str
    attempt: int
    deadline: Optional[float]
    cancel_token: Optional[CancellationToken]
    idempotency_key: Optional[str]


class RetryExecutor:
    """Runs an operation under a retry policy, optionally behind a circuit breaker."""

    def __init__(self,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 jitter_source: Callable[[float, float], float] = random.uniform,
                 metrics: Optional[MetricsCollector] = None):
        self._sleep = sleep
        self._jitter_source = jitter_source
        self._metrics = metrics
        self.logger = get_logger("retry")

    def compute_delay(self, policy: RetryPolicy, attempt: int) -> float:
        """Delay after failed attempt ``attempt``: capped backoff plus jitter."""
        delay = policy.backoff(attempt)
        if policy.jitter > 0:
            delay += self._jitter_source(0.0, policy.jitter)
        return delay

    async def execute(self,
                      operation: Callable[[], Awaitable[Any]],
                      policy: RetryPolicy,
                      context: RetryContext,
                      breaker: Optional[CircuitBreaker] = None) -> Any:
        """Execute ``operation`` until it succeeds or the policy gives up.

        Raises the terminal ``NdcGatewayException``. An open breaker fails the
        sequence immediately instead of burning attempts against it.
        """
        retries_allowed = policy.idempotent or context.idempotency_key is not None
        max_attempts = policy.max_attempts if retries_allowed else 1
        history: List[Dict[str, Any]] = []
        # a replayed call keeps counting from the attempts it already made
        previous_attempts = context.attempt

        for attempt in range(1, max_attempts + 1):
            context.attempt = previous_attempts + attempt
            self.logger.debug(
                "Retry attempt",
                operation=context.operation,
                attempt=attempt,
                max_attempts=max_attempts
            )

            try:
                if breaker is not None:
                    awaitable = breaker.call(operation)
                else:
                    awaitable = operation()
                result = await run_cancellable(awaitable, context.cancel_token, context.deadline)

                if attempt > 1:
                    self.logger.info("Retry succeeded", operation=context.operation, attempt=attempt)
                return result

            except (BreakerOpenError, CallCancelledError) as e:
                if history:
                    e.details.setdefault("attempts", history)
                raise
            except Exception as e:
                error = wrap_unexpected(e)
                if error is not e:
                    error.__cause__ = e
                retryable = policy.classifier(error)
                history.append({
                    "attempt": attempt,
                    "kind": error.kind.value,
                    "code": error.code,
                    "message": error.message,
                    "retryable": retryable
                })

                if not retryable:
                    self.logger.error(
                        "Operation failed with non-retryable error",
                        operation=context.operation,
                        attempt=attempt,
                        error_code=error.code,
                        error=error.message
                    )
                    error.retryable = False
                    if len(history) > 1:
                        error.details["attempts"] = history
                    raise error

                if attempt == max_attempts:
                    self.logger.error(
                        "All retry attempts exhausted",
                        operation=context.operation,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        error_code=error.code,
                        error=error.message
                    )
                    if not retries_allowed:
                        error.details["retry_suppressed"] = "non_idempotent"
                        error.details["classified_retryable"] = True
                        error.retryable = False
                        raise error
                    raise error.mark_exhausted(history)

                delay = self.compute_delay(policy, attempt)
                remaining = remaining_time(context.deadline)
                if remaining is not None and delay >= remaining:
                    self.logger.warning(
                        "Deadline leaves no room for another attempt",
                        operation=context.operation,
                        attempt=attempt,
                        delay=delay,
                        remaining=remaining
                    )
                    raise error.mark_exhausted(history)

                self.logger.warning(
                    "Retry attempt failed, waiting before next attempt",
                    operation=context.operation,
                    attempt=attempt,
                    delay=delay,
                    error_code=error.code,
                    error=error.message
                )
                if self._metrics:
                    self._metrics.record_retry(context.operation, attempt)

                await run_cancellable(self._sleep(delay), context.cancel_token, context.deadline)

        # max_attempts >= 1 guarantees a return or raise inside the loop
        raise NdcGatewayException("Retry loop ended without an outcome")
