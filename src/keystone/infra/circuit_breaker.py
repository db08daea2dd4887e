"""Fast-fail guard in front of the Keystone backend.

Only ``RemoteUnavailable`` counts against a breaker; a bug in a caller
(``KeyError`` while mapping a record, say) never takes the backend offline.
Once ``failure_threshold`` consecutive remote failures pile up, requests are
refused with ``CircuitOpenError`` until ``cooldown_seconds`` have passed.
After that exactly one request is let through: success closes the circuit,
failure restarts the cooldown.
"""

from __future__ import annotations

import time
from enum import Enum
from types import TracebackType
from typing import Callable, Self

import structlog

from keystone.config import settings
from keystone.core.errors import RemoteUnavailable

logger = structlog.get_logger()


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure breaker, usable as ``async with breaker: ...``."""

    __slots__ = (
        "name",
        "failure_threshold",
        "cooldown_seconds",
        "_clock",
        "_failures",
        "_tripped_at",
        "_trial_running",
    )

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._failures = 0
        self._tripped_at = 0.0
        self._trial_running = False

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def state(self) -> BreakerState:
        if self._failures < self.failure_threshold:
            return BreakerState.CLOSED
        if self._clock() - self._tripped_at < self.cooldown_seconds:
            return BreakerState.OPEN
        return BreakerState.HALF_OPEN

    @property
    def is_open(self) -> bool:
        return self.state is BreakerState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self.state is BreakerState.HALF_OPEN

    def should_allow_request(self) -> bool:
        state = self.state
        if state is BreakerState.CLOSED:
            return True
        if state is BreakerState.HALF_OPEN and not self._trial_running:
            self._trial_running = True
            logger.info("api_circuit_trial_request", breaker=self.name)
            return True
        return False

    def record_success(self) -> None:
        if self._failures:
            logger.info("api_circuit_recovered", breaker=self.name, failures=self._failures)
        self.reset()

    def record_failure(self) -> None:
        self._trial_running = False
        self._failures += 1
        self._tripped_at = self._clock()
        if self._failures == self.failure_threshold:
            logger.warning(
                "api_circuit_tripped",
                breaker=self.name,
                failures=self._failures,
                cooldown_s=self.cooldown_seconds,
            )

    def reset(self) -> None:
        self._failures = 0
        self._tripped_at = 0.0
        self._trial_running = False

    async def __aenter__(self) -> Self:
        if not self.should_allow_request():
            raise CircuitOpenError(self.name)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.record_success()
        elif issubclass(exc_type, RemoteUnavailable):
            self.record_failure()
        else:
            self._trial_running = False


class CircuitOpenError(RemoteUnavailable):
    """The breaker refused the request; the backend was not contacted."""

    def __init__(self, breaker_name: str) -> None:
        super().__init__(breaker_name, "circuit breaker is open, service appears down")
        self.breaker_name = breaker_name


def api_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        "keystone_api",
        failure_threshold=settings.api_breaker_failure_threshold,
        cooldown_seconds=settings.api_breaker_cooldown_s,
    )
