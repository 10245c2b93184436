"""
Rate limiting for upstream APIs.

Tracks attempted calls per upstream key and refuses calls once the
key's quota for the current window is used. Callers skip the source
for this cycle instead of waiting.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
import logging

from regwatch.models.domain import QuotaPeriod, Source

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Windowed call counter with per-upstream quotas.

    Features:
    - Rolling one-hour window, or a calendar-day counter (UTC) for daily quotas
    - Separate quotas for authenticated and unauthenticated callers
    - Every attempt counts, successful or not
    - Keys without a configured quota are never limited
    """

    # Published quotas per upstream key: (unauthenticated, authenticated, period)
    DEFAULT_LIMITS = {
        "openfda": (1000, 120000, QuotaPeriod.DAY),
        "federal_register": (1000, 1000, QuotaPeriod.HOUR),
        "epa_echo": (500, 500, QuotaPeriod.HOUR),
        "fsis_api": (500, 500, QuotaPeriod.HOUR),
    }

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._request_times: dict[str, list[datetime]] = defaultdict(list)
        self._custom_limits: dict[str, tuple[Optional[int], Optional[int], QuotaPeriod]] = {}

    def set_limit(
        self,
        key: str,
        unauthenticated: Optional[int],
        authenticated: Optional[int] = None,
        period: QuotaPeriod = QuotaPeriod.HOUR,
    ):
        """Set a custom quota for an upstream key."""
        self._custom_limits[key] = (unauthenticated, authenticated, period)

    def configure_source(self, source: Source):
        """Register the quota declared on a source, if any."""
        if source.quota_unauthenticated is None and source.quota_authenticated is None:
            return
        self.set_limit(
            source.limiter_key,
            source.quota_unauthenticated,
            source.quota_authenticated,
            source.quota_period,
        )

    def _get_limit(self, key: str, authenticated: bool) -> tuple[Optional[int], QuotaPeriod]:
        """Quota and period for a key, None meaning unlimited."""
        limits = self._custom_limits.get(key) or self.DEFAULT_LIMITS.get(key)
        if limits is None:
            return None, QuotaPeriod.HOUR

        unauthenticated, authed, period = limits
        if authenticated and authed is not None:
            return authed, period
        return unauthenticated, period

    def _window_start(self, period: QuotaPeriod, now: datetime) -> datetime:
        if period == QuotaPeriod.DAY:
            return now.replace(hour=0, minute=0, second=0, microsecond=0)
        return now - timedelta(hours=1)

    def _prune(self, key: str, period: QuotaPeriod, now: datetime) -> list[datetime]:
        cutoff = self._window_start(period, now)
        recent = [t for t in self._request_times[key] if t > cutoff]
        self._request_times[key] = recent
        return recent

    def check(self, key: str, authenticated: bool = False) -> bool:
        """True if a call to `key` is allowed right now."""
        quota, period = self._get_limit(key, authenticated)
        if quota is None:
            return True

        now = self._clock()
        used = len(self._prune(key, period, now))
        if used >= quota:
            logger.warning(
                f"Rate limit reached for {key}: {used}/{quota} per {period.value}"
            )
            return False
        return True

    def record(self, key: str):
        """Record an attempted call against `key`, dropping calls outside its window."""
        now = self._clock()
        _, period = self._get_limit(key, authenticated=False)
        self._prune(key, period, now).append(now)

    def check_and_record(self, key: str, authenticated: bool = False) -> bool:
        """
        Gate a call and count it when allowed.

        Returns:
            True if the call may proceed, False if it should be skipped
        """
        if not self.check(key, authenticated):
            return False
        self.record(key)
        return True

    def get_status(self, key: str, authenticated: bool = False) -> dict:
        """Get current quota usage for a key."""
        quota, period = self._get_limit(key, authenticated)
        used = len(self._prune(key, period, self._clock()))

        return {
            "key": key,
            "quota": quota,
            "period": period.value,
            "authenticated": authenticated,
            "current_requests": used,
            "available": None if quota is None else max(quota - used, 0),
        }

    def get_all_status(self) -> list[dict]:
        """Get status for all tracked keys."""
        keys = set(self._request_times.keys()) | set(self._custom_limits.keys())
        return [self.get_status(k) for k in sorted(keys)]
