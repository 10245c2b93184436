"""
Circuit breaker for upstream sources.

Fails fast once an upstream has failed repeatedly and lets a probe
through after a cool-down to test recovery. The breaker never retries;
it only gates the operation it is given.
"""

from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar
import logging
import time

from regwatch.services.ingestion.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    CLOSED -> OPEN after `failure_threshold` consecutive failures.
    OPEN -> HALF_OPEN on the first call after `open_timeout` seconds.
    HALF_OPEN -> CLOSED after `half_open_successes` consecutive successes,
    or back to OPEN on any failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        open_timeout: float = 60.0,
        half_open_successes: int = 3,
        clock: Optional[Callable[[], float]] = None,
        excluded: tuple[type[BaseException], ...] = (),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.open_timeout = open_timeout
        self.half_open_successes = half_open_successes
        self._clock = clock or time.monotonic
        # Raised by the operation but not a sign of upstream trouble
        self.excluded = excluded

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` through the breaker.

        Raises:
            CircuitOpenError: if the circuit is OPEN and still cooling down.
            Anything `operation` raises, after recording the failure.
        """
        if self.state == CircuitState.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0.0)
            if elapsed < self.open_timeout:
                raise CircuitOpenError(self.name, self.open_timeout - elapsed)
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            logger.info(f"Circuit breaker {self.name} entering HALF_OPEN")

        try:
            result = await operation()
        except self.excluded:
            raise
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self):
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.half_open_successes:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info(f"Circuit breaker {self.name} CLOSED after recovery")

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.success_count = 0
            logger.warning(f"Circuit breaker {self.name} reopened after failed probe")
        elif self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            logger.warning(
                f"Circuit breaker {self.name} OPEN after {self.failure_count} failures"
            )

    def reset(self):
        """Force CLOSED with zero counters. Operator recovery only."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
        }
