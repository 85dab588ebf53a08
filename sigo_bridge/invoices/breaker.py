"""Circuit breaker and call statistics for the Siigo client.

One breaker per SigoClient (never module-global):

- CLOSED: calls go through; consecutive transient failures are counted
- OPEN: calls fail fast with CircuitOpenError until the reset time passes
- HALF_OPEN: trial calls go through; enough successes close the circuit,
  any failure reopens it with a longer reset time (capped)

Only transient failures (timeouts, connect errors, 429, 5xx) count. A
rejected document or a 404 means the service is answering.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from sigo_bridge.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure breaker with growing reset time."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        success_threshold: int = 2,
        reset_seconds: float = 30.0,
        multiplier: float = 1.5,
        max_reset_seconds: float = 180.0,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_seconds = reset_seconds
        self.multiplier = multiplier
        self.max_reset_seconds = max_reset_seconds
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.open_until = 0.0
        self.current_reset = reset_seconds
        self.total_calls = 0
        self.total_failures = 0
        self.total_rejected = 0

    def before_call(self) -> None:
        """Let a call through, or raise CircuitOpenError while the circuit is open."""
        if self.state == CircuitState.OPEN:
            now = self._clock()
            if now < self.open_until:
                self.total_rejected += 1
                raise CircuitOpenError(retry_after=self.open_until - now)
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            logger.info("Circuit %s half-open, trying the service again", self.name)
        self.total_calls += 1

    def record_success(self) -> None:
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self.current_reset = self.reset_seconds
                logger.info("Circuit %s closed, service recovered", self.name)

    def record_failure(self) -> None:
        self.failure_count += 1
        self.total_failures += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.open_until = self._clock() + self.current_reset
        logger.warning(
            "Circuit %s opened: %d failures, retry after %.0fs",
            self.name,
            self.failure_count,
            self.current_reset,
        )
        self.current_reset = min(self.current_reset * self.multiplier, self.max_reset_seconds)

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.open_until = 0.0
        self.current_reset = self.reset_seconds

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "open_until": self.open_until if self.state == CircuitState.OPEN else None,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejected": self.total_rejected,
        }


@dataclass
class OperationStats:
    requests: int = 0
    errors: int = 0
    total_ms: float = 0.0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "errors": self.errors,
            "avg_ms": round(self.total_ms / self.requests, 1) if self.requests else 0.0,
            "last_error": self.last_error,
        }


@dataclass
class CallStats:
    """Per-operation request counts, errors and latency."""

    operations: dict[str, OperationStats] = field(default_factory=dict)

    def record(self, operation: str, elapsed_ms: float, error: str | None = None) -> None:
        stats = self.operations.setdefault(operation, OperationStats())
        stats.requests += 1
        stats.total_ms += elapsed_ms
        if error:
            stats.errors += 1
            stats.last_error = error

    def to_dict(self) -> dict[str, Any]:
        return {name: stats.to_dict() for name, stats in sorted(self.operations.items())}
