"""
Shared resilience state for one pipeline instance.
"""

from typing import Callable, Optional

from regwatch.config import ResilienceSettings
from regwatch.services.ingestion.circuit_breaker import CircuitBreaker
from regwatch.services.ingestion.errors import RateLimitExceeded
from regwatch.services.ingestion.rate_limiter import RateLimiter


class ResilienceRegistry:
    """
    Circuit breakers keyed by source id plus the rate limiter.

    Passed into the orchestrator so each run (or test) can start from
    fresh state rather than from process-wide globals.
    """

    def __init__(
        self,
        settings: Optional[ResilienceSettings] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings or ResilienceSettings()
        self.rate_limiter = rate_limiter or RateLimiter()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, key: str) -> CircuitBreaker:
        """Breaker for `key`, created CLOSED on first use."""
        if key not in self._breakers:
            self._breakers[key] = CircuitBreaker(
                name=key,
                failure_threshold=self.settings.breaker_failure_threshold,
                open_timeout=self.settings.breaker_open_timeout_seconds,
                half_open_successes=self.settings.breaker_half_open_successes,
                clock=self._clock,
                excluded=(RateLimitExceeded,),
            )
        return self._breakers[key]

    def reset_breaker(self, key: str) -> bool:
        breaker = self._breakers.get(key)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def get_status(self) -> dict:
        return {
            "breakers": [b.get_stats() for _, b in sorted(self._breakers.items())],
            "rate_limits": self.rate_limiter.get_all_status(),
        }
