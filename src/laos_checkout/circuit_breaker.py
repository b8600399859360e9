"""
Circuit breaker guarding calls to the payment gateway.

Stops calling a failing gateway for a cooldown period after repeated
failures so checkout requests fail fast instead of piling up.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"        # Normal operation
    OPEN = "OPEN"            # Blocking calls
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker."""
    # Number of failures before opening the circuit
    failure_threshold: int = 5

    # Time to wait in OPEN before a trial call is allowed (seconds)
    reset_timeout: float = 60.0


@dataclass
class CircuitStats:
    """Call counters for a circuit breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0


class CircuitBreaker:
    """
    Three-state circuit breaker.

    The failure count is only cleared by a successful HALF_OPEN trial (or a
    manual reset); successes while CLOSED leave it untouched, so failures
    interleaved with successes still accumulate toward the threshold.

    HALF_OPEN admits a single trial call; others are rejected until it
    settles.

    Usage:
        breaker = CircuitBreaker("stripe")
        session = await breaker.execute(lambda: gateway.create_session(req))
    """

    def __init__(
        self,
        name: str = "payment_gateway",
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._stats = CircuitStats()
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> Optional[float]:
        return self._last_failure_time

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` under the breaker.

        Raises:
            PaymentGatewayError: If the circuit is OPEN and the reset timeout
                has not yet elapsed, or a half-open trial is already
                running. ``operation`` is not invoked.
            Exception: Whatever ``operation`` raised, after it is recorded.

        A cancelled call is not counted as a failure. If it was the half-open
        trial, the circuit returns to OPEN with its timeout already elapsed,
        so the next call becomes the new trial.
        """
        await self._before_call()
        try:
            result = await operation()
        except Exception:
            await self._on_failure()
            raise
        except BaseException:
            self._release_trial()
            raise
        await self._on_success()
        return result

    async def _before_call(self) -> None:
        async with self._lock:
            self._stats.total_calls += 1

            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed > self._config.reset_timeout:
                    self._transition_to(CircuitState.HALF_OPEN)
                    logger.info("Circuit breaker %s transitioning to half-open", self._name)
                    return

            # OPEN within the timeout, or HALF_OPEN with the trial call running
            self._stats.rejected_calls += 1
            raise PaymentGatewayError(
                original_error="Circuit breaker is OPEN",
                message="Payment service temporarily unavailable",
            )

    async def _on_success(self) -> None:
        async with self._lock:
            self._stats.successful_calls += 1
            if self._state == CircuitState.HALF_OPEN:
                self._failure_count = 0
                self._transition_to(CircuitState.CLOSED)
                logger.info("Circuit breaker %s closed after recovery", self._name)

    async def _on_failure(self) -> None:
        async with self._lock:
            self._stats.failed_calls += 1
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if (
                self._state != CircuitState.OPEN
                and self._failure_count >= self._config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)
                logger.warning(
                    "Circuit breaker %s opened after %d failures",
                    self._name,
                    self._failure_count,
                )

    def _release_trial(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
            logger.info("Circuit breaker %s trial call abandoned", self._name)

    def _transition_to(self, new_state: CircuitState) -> None:
        self._state = new_state
        self._stats.state_changes += 1

    async def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        async with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._last_failure_time = None
            logger.info("Circuit breaker %s manually reset", self._name)

    def get_state_info(self) -> Dict[str, Any]:
        """Get detailed state information."""
        info: Dict[str, Any] = {
            "name": self._name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self._config.failure_threshold,
            "stats": {
                "total_calls": self._stats.total_calls,
                "successful_calls": self._stats.successful_calls,
                "failed_calls": self._stats.failed_calls,
                "rejected_calls": self._stats.rejected_calls,
                "state_changes": self._stats.state_changes,
            },
        }
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            elapsed = self._clock() - self._last_failure_time
            info["recovery_in_seconds"] = max(0.0, self._config.reset_timeout - elapsed)
        return info
