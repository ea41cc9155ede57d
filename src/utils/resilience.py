"""Parcel Tracker — Resilience Utilities.

Circuit breaker wrapped around each status provider, so a tracking
source that keeps failing is skipped for a while instead of costing a
full timeout on every code of every poll cycle.

Circuit Breaker states:
  CLOSED    → normal operation, requests flow through
  OPEN      → provider is failing, requests blocked for the cooldown
  HALF_OPEN → cooldown expired, one test request allowed

Usage:
    cb = CircuitBreaker("spx-page", failure_threshold=5, cooldown_seconds=300)
    snapshot = await cb.call(provider.fetch, code)
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable

from src.utils.logger import get_logger

logger = get_logger(__name__)


class CircuitOpenError(Exception):
    """Raised when a circuit breaker is OPEN and blocking requests."""

    def __init__(self, name: str, remaining_seconds: float) -> None:
        self.name = name
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Circuit '{name}' is OPEN, retry in {remaining_seconds:.0f}s"
        )


class CircuitBreaker:
    """Consecutive-failure circuit breaker for one external source.

    After `failure_threshold` failures in a row the circuit opens and
    rejects calls for `cooldown_seconds`. The first call after the
    cooldown is a test: success closes the circuit, failure reopens it
    with `half_open_cooldown`.

    Attributes:
        name: Source name, used in logs and health output.
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        half_open_cooldown: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.base_cooldown = cooldown_seconds
        self.cooldown_seconds = cooldown_seconds
        self.half_open_cooldown = half_open_cooldown
        self._clock = clock

        self._state = self.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._total_trips = 0

    @property
    def state(self) -> str:
        """Current state, accounting for cooldown expiry."""
        if self._state == self.OPEN:
            if self._clock() - self._opened_at >= self.cooldown_seconds:
                return self.HALF_OPEN
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == self.OPEN

    @property
    def remaining_cooldown(self) -> float:
        if self._state != self.OPEN:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def total_trips(self) -> int:
        return self._total_trips

    async def call(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Run an async callable through the breaker.

        Raises:
            CircuitOpenError: If the circuit is OPEN.
            Exception: Whatever func raised, after recording the failure.
        """
        current_state = self.state
        if current_state == self.OPEN:
            raise CircuitOpenError(self.name, self.remaining_cooldown)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e, current_state)
            raise
        self.record_success(current_state)
        return result

    def record_success(self, state: str | None = None) -> None:
        """Close the circuit after a successful call."""
        if (state or self.state) == self.HALF_OPEN:
            logger.info("Circuit '%s': HALF_OPEN → CLOSED (test succeeded)", self.name)
        self._state = self.CLOSED
        self._failure_count = 0
        self.cooldown_seconds = self.base_cooldown

    def record_failure(self, error: BaseException, state: str | None = None) -> None:
        """Count a failed call and open the circuit when needed."""
        state = state or self.state
        self._failure_count += 1

        if state == self.HALF_OPEN:
            self._state = self.OPEN
            self._opened_at = self._clock()
            self.cooldown_seconds = self.half_open_cooldown
            logger.warning(
                "Circuit '%s': HALF_OPEN → OPEN (test failed: %s, cooldown: %.0fs)",
                self.name, type(error).__name__, self.cooldown_seconds,
            )
            return

        if self._failure_count >= self.failure_threshold:
            self._state = self.OPEN
            self._opened_at = self._clock()
            self._total_trips += 1
            logger.warning(
                "Circuit '%s': CLOSED → OPEN (trip #%d, %d failures, "
                "cooldown: %.0fs). Error: %s",
                self.name, self._total_trips, self._failure_count,
                self.cooldown_seconds, str(error)[:200],
            )
        else:
            logger.debug(
                "Circuit '%s': failure %d/%d: %s",
                self.name, self._failure_count, self.failure_threshold,
                type(error).__name__,
            )

    def reset(self) -> None:
        """Force the circuit back to CLOSED."""
        self._state = self.CLOSED
        self._failure_count = 0
        self.cooldown_seconds = self.base_cooldown
        logger.info("Circuit '%s': manually reset to CLOSED", self.name)

    def to_dict(self) -> dict[str, Any]:
        """Serialize state for the health endpoint."""
        return {
            "name": self.name,
            "state": self.state,
            "failure_count": self._failure_count,
            "total_trips": self._total_trips,
            "remaining_cooldown": round(self.remaining_cooldown, 1),
        }
