"""
Circuit Breaker for the Generative Backend

After repeated failures the circuit opens and generator calls fail fast
with CircuitOpenError, which callers turn into deterministic fallbacks.
"""

import asyncio
from enum import Enum
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Optional, Callable, TypeVar, Awaitable

from loguru import logger

from src.config import get_settings
from src.core.exceptions import CircuitOpenError
from src.utils.metrics import metrics

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"        # Calls flow through, failures counted
    OPEN = "open"            # Calls rejected until recovery timeout
    HALF_OPEN = "half_open"  # Limited trial calls


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


@dataclass
class CircuitStats:
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejections: int = 0
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    state_changes: int = 0


class CircuitBreaker:
    """
    CLOSED -> OPEN after `failure_threshold` consecutive failures.
    OPEN -> HALF_OPEN once `recovery_timeout` seconds have passed.
    HALF_OPEN -> CLOSED on a successful trial call, back to OPEN on a failed one.

    Usage:
        breaker = CircuitBreaker(name="generator")
        text = await breaker.call(lambda: backend.complete(prompt, system_prompt))
    """

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[float] = None,
        half_open_max_calls: Optional[int] = None,
    ):
        settings = get_settings()
        self.name = name
        self._failure_threshold = failure_threshold or settings.circuit_breaker_failure_threshold
        self._recovery_timeout = recovery_timeout or settings.circuit_breaker_recovery_timeout
        self._half_open_max_calls = half_open_max_calls or settings.circuit_breaker_half_open_max_calls

        self._state = CircuitState.CLOSED
        self._stats = CircuitStats()
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Run `func` through the breaker.

        Raises:
            CircuitOpenError: circuit is open or the half-open trial budget is used up
        """
        in_trial = False
        async with self._lock:
            self._check_recovery()

            if self._state == CircuitState.OPEN:
                self._stats.total_rejections += 1
                raise CircuitOpenError(self.name, self._retry_after())

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self._half_open_max_calls:
                    self._stats.total_rejections += 1
                    raise CircuitOpenError(self.name, self._retry_after())
                self._half_open_calls += 1
                in_trial = True

        # Executed outside the lock so concurrent calls are not serialized
        try:
            result = await func()
        except asyncio.CancelledError:
            # An abandoned trial call proves nothing; give its slot back
            if in_trial and self._state == CircuitState.HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1
            raise
        except Exception as e:
            await self._record_failure(e)
            raise
        await self._record_success()
        return result

    def _retry_after(self) -> float:
        if not self._stats.opened_at:
            return self._recovery_timeout
        elapsed = (datetime.now(timezone.utc) - self._stats.opened_at).total_seconds()
        return max(self._recovery_timeout - elapsed, 0.0)

    def _check_recovery(self) -> None:
        if self._state != CircuitState.OPEN or not self._stats.opened_at:
            return

        elapsed = (datetime.now(timezone.utc) - self._stats.opened_at).total_seconds()
        if elapsed >= self._recovery_timeout:
            self._transition_to(CircuitState.HALF_OPEN)
            self._half_open_calls = 0

    async def _record_success(self) -> None:
        async with self._lock:
            self._stats.consecutive_failures = 0
            self._stats.total_successes += 1
            self._stats.last_success_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit '{self.name}' recovered, closing")
                self._transition_to(CircuitState.CLOSED)

    async def _record_failure(self, error: Exception) -> None:
        async with self._lock:
            self._stats.consecutive_failures += 1
            self._stats.total_failures += 1
            self._stats.last_failure_time = datetime.now(timezone.utc)

            logger.warning(
                f"Circuit '{self.name}' failure {self._stats.consecutive_failures}/{self._failure_threshold}: {error}"
            )

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit '{self.name}' trial call failed, reopening")
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._stats.consecutive_failures >= self._failure_threshold:
                logger.error(f"Circuit '{self.name}' threshold reached, opening")
                self._transition_to(CircuitState.OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.OPEN:
            self._stats.opened_at = datetime.now(timezone.utc)

        metrics.circuit_state.set(_STATE_GAUGE[new_state], circuit=self.name)
        logger.info(f"Circuit '{self.name}' state: {old_state.value} -> {new_state.value}")

    async def reset(self) -> None:
        """Manually close the circuit."""
        async with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._stats.consecutive_failures = 0
            self._half_open_calls = 0

    async def force_open(self) -> None:
        """Manually open the circuit (maintenance, tests)."""
        async with self._lock:
            self._transition_to(CircuitState.OPEN)

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._stats.consecutive_failures,
            "total_failures": self._stats.total_failures,
            "total_successes": self._stats.total_successes,
            "total_rejections": self._stats.total_rejections,
            "failure_threshold": self._failure_threshold,
            "recovery_timeout_seconds": self._recovery_timeout,
            "opened_at": self._stats.opened_at.isoformat() if self._stats.opened_at else None,
        }


_generator_circuit: Optional[CircuitBreaker] = None


def get_generator_circuit() -> CircuitBreaker:
    """Get or create the process-wide generator circuit."""
    global _generator_circuit
    if _generator_circuit is None:
        _generator_circuit = CircuitBreaker(name="generator")
    return _generator_circuit
