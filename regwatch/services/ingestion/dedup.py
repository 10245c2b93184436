"""
Near-duplicate detection against recently persisted alerts.
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
import logging
import re

from regwatch.models.domain import Alert
from regwatch.storage.base import AlertStore

logger = logging.getLogger(__name__)

# Below this length, containment matches too many unrelated titles
SUBSTRING_MIN_LENGTH = 20

# Identifiers that name the same regulatory action across differently worded titles
REGULATORY_ID_PATTERNS = [
    re.compile(r"\b[FDZ]-\d{4}-\d{4}\b"),  # FDA recall numbers
    re.compile(r"\brecall\s+(?:number|no\.?|#)\s*:?\s*(\d{3}-\d{4})\b", re.I),  # FSIS
]


def normalize_title(title: str) -> str:
    """Case-insensitive, whitespace-trimmed comparison form."""
    return " ".join(title.lower().split())


def regulatory_ids(text: str) -> set[str]:
    ids = set()
    for pattern in REGULATORY_ID_PATTERNS:
        ids.update(m.group(m.lastindex or 0).upper() for m in pattern.finditer(text))
    return ids


def titles_match(candidate: str, existing: str) -> bool:
    """
    Exact match after normalization, or containment in either direction
    when both titles are long enough for containment to mean something.
    """
    a = normalize_title(candidate)
    b = normalize_title(existing)
    if not a or not b:
        return False
    if a == b:
        return True
    if len(a) > SUBSTRING_MIN_LENGTH and len(b) > SUBSTRING_MIN_LENGTH:
        return a in b or b in a
    return False


class Deduplicator:
    """
    Decides whether an alert is already stored.

    Alerts carrying an external id are never title-matched: the store's
    upsert on (source, external_id) resolves them. Everything else is
    compared against the same source's alerts from the trailing window.
    """

    def __init__(
        self,
        store: AlertStore,
        window_days: int = 7,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.window = timedelta(days=window_days)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._recent_cache: dict[str, list[Alert]] = {}
        self._remembered: dict[str, list[Alert]] = defaultdict(list)
        self._cache_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def window_start(self) -> datetime:
        return self._clock() - self.window

    async def recent_alerts(self, source: str) -> list[Alert]:
        """Stored alerts of `source` in the window plus those remembered this run."""
        async with self._cache_locks[source]:
            if source not in self._recent_cache:
                self._recent_cache[source] = await self.store.query_recent_alerts_by_source(
                    source, self.window_start()
                )
        return self._recent_cache[source] + self._remembered[source]

    def remember(self, alert: Alert):
        """Make an alert inserted during this run visible to later checks."""
        self._remembered[alert.source].append(alert)

    def clear(self):
        self._recent_cache.clear()
        self._remembered.clear()
        self._cache_locks.clear()

    async def is_duplicate(self, alert: Alert) -> bool:
        if alert.external_id:
            return False

        candidate_ids = regulatory_ids(f"{alert.title} {alert.summary}")
        window_start = self.window_start()

        for existing in await self.recent_alerts(alert.source):
            if existing.published_date < window_start:
                continue
            if titles_match(alert.title, existing.title):
                logger.debug(f"Duplicate title for {alert.source}: {alert.title[:60]}")
                return True
            if candidate_ids and candidate_ids & regulatory_ids(f"{existing.title} {existing.summary}"):
                logger.debug(f"Duplicate regulatory id for {alert.source}: {alert.title[:60]}")
                return True
        return False
