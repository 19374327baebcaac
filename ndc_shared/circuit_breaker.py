"""
Circuit breaker pattern implementation for resilient provider calls.

Breakers are keyed (typically ``operation@host``) and owned by a
``CircuitBreakerManager`` instance; there is no process-global registry.
"""

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from ndc_shared.errors import BreakerOpenError, is_dependency_failure
from ndc_shared.logging import get_logger
from ndc_shared.metrics import MetricsCollector


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if the dependency recovered


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one family of breakers."""

    failure_threshold: int = 5
    success_threshold: int = 1
    cooldown: float = 30.0
    cooldown_multiplier: float = 1.0
    max_cooldown: float = 300.0
    # Optional failure-ratio trip over a sliding time window
    window_seconds: float = 60.0
    failure_rate_threshold: Optional[float] = None
    minimum_calls: int = 10

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.cooldown < 0 or self.max_cooldown < self.cooldown:
            raise ValueError("cooldown must be >= 0 and <= max_cooldown")
        if self.failure_rate_threshold is not None and not 0 < self.failure_rate_threshold <= 1:
            raise ValueError("failure_rate_threshold must be within (0, 1]")


class CircuitBreaker:
    """Circuit breaker for a single key.

    Every state read and write happens under ``_lock`` and never spans an
    ``await``, so all callers observe one consistent state and the half-open
    trial slot is handed to exactly one caller.
    """

    def __init__(self,
                 name: str,
                 config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time,
                 metrics: Optional[MetricsCollector] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock
        self._wall_clock = wall_clock
        self._metrics = metrics
        self._lock = threading.Lock()

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0
        self._cooldown = self.config.cooldown
        self._trial_in_flight = False
        self._last_transition_time = wall_clock()
        self._outcomes: Deque[Tuple[float, bool]] = deque()

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            self._promote_if_cooled_down()
            return self._state

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self.state == CircuitBreakerState.OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        is_trial = self._acquire()
        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            self._release(is_trial)
            raise
        except Exception as e:
            if is_dependency_failure(e):
                self.record_failure(is_trial, e)
            else:
                # the dependency answered; it is reachable
                self.record_success(is_trial)
            raise
        self.record_success(is_trial)
        return result

    def _acquire(self) -> bool:
        """Admit a call or raise ``BreakerOpenError``. Returns True for a half-open trial."""
        with self._lock:
            self._promote_if_cooled_down()

            if self._state == CircuitBreakerState.CLOSED:
                return False

            if self._state == CircuitBreakerState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                self.logger.info("Admitting half-open trial call", breaker=self.name)
                return True

            if self._state == CircuitBreakerState.OPEN:
                remaining = self._cooldown - (self._clock() - self._opened_at)
            else:
                remaining = 0.0

        if self._metrics:
            self._metrics.record_breaker_rejection(self.name)
        self.logger.debug("Circuit breaker rejected call", breaker=self.name)
        raise BreakerOpenError(self.name, remaining)

    def _release(self, is_trial: bool) -> None:
        """Give back a trial slot without recording an outcome."""
        if not is_trial:
            return
        with self._lock:
            self._trial_in_flight = False

    def record_success(self, is_trial: bool = False) -> None:
        """Record a successful call."""
        with self._lock:
            self._record_outcome(failed=False)
            if is_trial:
                self._trial_in_flight = False
            if self._state == CircuitBreakerState.HALF_OPEN:
                if not is_trial:
                    return
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._cooldown = self.config.cooldown
                    self._transition(CircuitBreakerState.CLOSED)
            elif self._state == CircuitBreakerState.CLOSED:
                self._failure_count = 0

    def record_failure(self, is_trial: bool = False, error: Optional[BaseException] = None) -> None:
        """Record a failure and update state."""
        with self._lock:
            self._record_outcome(failed=True)
            if is_trial:
                self._trial_in_flight = False

            if self._state == CircuitBreakerState.HALF_OPEN:
                if not is_trial:
                    return
                self._cooldown = min(self._cooldown * self.config.cooldown_multiplier,
                                     self.config.max_cooldown)
                self._open()
                return

            if self._state != CircuitBreakerState.CLOSED:
                return

            self._failure_count += 1
            self._success_count = 0
            self.logger.warning(
                "Circuit breaker recorded failure",
                breaker=self.name,
                failure_count=self._failure_count,
                threshold=self.config.failure_threshold,
                error=str(error) if error else None
            )

            if self._failure_count >= self.config.failure_threshold or self._failure_rate_exceeded():
                self._open()

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._cooldown = self.config.cooldown
            self._outcomes.clear()
            self._trial_in_flight = False
            self._transition(CircuitBreakerState.CLOSED)

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        with self._lock:
            self._promote_if_cooled_down()
            return {
                "name": self.name,
                "state": self._state.value,
                "consecutive_failures": self._failure_count,
                "consecutive_successes": self._success_count,
                "last_transition_time": self._last_transition_time,
                "cooldown_seconds": self._cooldown,
                "trial_in_flight": self._trial_in_flight,
                "failure_threshold": self.config.failure_threshold
            }

    # Helpers below expect ``_lock`` to be held.

    def _promote_if_cooled_down(self) -> None:
        if (self._state == CircuitBreakerState.OPEN
                and self._clock() - self._opened_at >= self._cooldown):
            self._transition(CircuitBreakerState.HALF_OPEN)

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._transition(CircuitBreakerState.OPEN)

    def _transition(self, new_state: CircuitBreakerState) -> None:
        old_state = self._state
        self._state = new_state
        self._failure_count = 0
        self._success_count = 0
        self._last_transition_time = self._wall_clock()
        if new_state != CircuitBreakerState.CLOSED:
            self._outcomes.clear()

        log = self.logger.warning if new_state == CircuitBreakerState.OPEN else self.logger.info
        log(
            "Circuit breaker state changed",
            breaker=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            cooldown_seconds=self._cooldown
        )
        if self._metrics:
            self._metrics.record_breaker_transition(self.name, old_state.value, new_state.value)

    def _record_outcome(self, failed: bool) -> None:
        if self.config.failure_rate_threshold is None:
            return
        now = self._clock()
        self._outcomes.append((now, failed))
        horizon = now - self.config.window_seconds
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def _failure_rate_exceeded(self) -> bool:
        if self.config.failure_rate_threshold is None:
            return False
        total = len(self._outcomes)
        if total < self.config.minimum_calls:
            return False
        failures = sum(1 for _, failed in self._outcomes if failed)
        return failures / total >= self.config.failure_rate_threshold


class CircuitBreakerManager:
    """Manager for multiple keyed circuit breakers."""

    def __init__(self,
                 config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 wall_clock: Callable[[], float] = time.time,
                 metrics: Optional[MetricsCollector] = None):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._wall_clock = wall_clock
        self._metrics = metrics
        self._lock = threading.Lock()
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("circuit_breaker_manager")

    def get_circuit_breaker(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for a key."""
        with self._lock:
            breaker = self.circuit_breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config=self.config,
                    clock=self._clock,
                    wall_clock=self._wall_clock,
                    metrics=self._metrics
                )
                self.circuit_breakers[name] = breaker
                self.logger.info("Created circuit breaker", name=name)
            return breaker

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        with self._lock:
            breakers = list(self.circuit_breakers.items())
        return {name: cb.get_state() for name, cb in breakers}

    def reset(self, name: str) -> bool:
        """Reset one breaker; returns False when the key is unknown."""
        with self._lock:
            breaker = self.circuit_breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True


def breaker_key(operation: str, host: str) -> str:
    """Key scoping breaker state to one operation against one host."""
    return f"{operation}@{host}"
