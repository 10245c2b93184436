"""
Urgency scoring for normalized alerts.

The deterministic score is:

    source priority
    + 2 per urgency keyword found in title + summary
    + recency bonus (+3 within 24h, +1 within 72h)
    + agency keyword boosts
    + region boost (Global +2, US +1)

and is mapped to a tier with per-family thresholds (see FAMILY_THRESHOLDS).
Every term is non-negative, so more matched keywords never lower the score.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from regwatch.models.domain import Alert, Source, Urgency
from regwatch.services.enrichment import EnrichmentClient, EnrichmentError
from regwatch.services.ingestion.structured_logging import StructuredLogger

KEYWORD_POINTS = 2

# Used when a source declares no keywords of its own
DEFAULT_URGENCY_KEYWORDS = [
    "recall", "outbreak", "warning", "alert", "urgent",
    "immediate", "critical", "emergency",
]

RECENCY_BONUSES = [
    (timedelta(hours=24), 3),
    (timedelta(hours=72), 1),
]

REGION_BOOSTS = {
    "global": 2,
    "us": 1,
}

# Extra points per agency when its announcements contain these phrases
AGENCY_KEYWORD_BOOSTS: dict[str, list[tuple[int, tuple[str, ...]]]] = {
    "GSA": [
        (6, ("emergency procurement", "suspension", "debarment")),
        (4, ("contract award", "solicitation", "price adjustment")),
        (2, ("schedule", "acquisition", "policy")),
    ],
    "FDA": [
        (3, ("class i", "death", "serious adverse")),
        (1, ("class ii",)),
    ],
    "FSIS": [
        (3, ("listeria", "e. coli o157", "public health alert")),
    ],
}


@dataclass(frozen=True)
class TierThresholds:
    """Minimum score for each tier; anything below `medium` is Low."""
    critical: float
    high: float
    medium: float

    def __post_init__(self):
        if not self.critical > self.high > self.medium:
            raise ValueError("Tier thresholds must be strictly decreasing")

    def tier(self, score: float) -> Urgency:
        if score >= self.critical:
            return Urgency.CRITICAL
        if score >= self.high:
            return Urgency.HIGH
        if score >= self.medium:
            return Urgency.MEDIUM
        return Urgency.LOW


FAMILY_THRESHOLDS = {
    # Agency feeds, press releases and scraped listings
    "default": TierThresholds(critical=18, high=14, medium=9),
    # Recall feeds are high priority already; a fresh recall with one keyword is High
    "recalls": TierThresholds(critical=17, high=13, medium=9),
    # Rulemaking and enforcement documents rarely demand same-day action
    "rules": TierThresholds(critical=20, high=15, medium=10),
}

# AI score (1-10) -> tier
AI_TIERS = [
    (9, Urgency.CRITICAL),
    (7, Urgency.HIGH),
    (4, Urgency.MEDIUM),
]


def ai_score_to_tier(score: int) -> Urgency:
    for minimum, tier in AI_TIERS:
        if score >= minimum:
            return tier
    return Urgency.LOW


@dataclass
class Classification:
    score: float
    urgency: Urgency
    method: str  # "deterministic" or "ai"
    summary: Optional[str] = None
    matched_keywords: tuple[str, ...] = ()


class UrgencyClassifier:
    """
    Deterministic scorer with an optional AI-assisted path.

    AI failures (errors, timeouts, unparseable output) are logged as
    warnings and the deterministic result is used instead.
    """

    def __init__(
        self,
        enrichment: Optional[EnrichmentClient] = None,
        enrichment_timeout: float = 10.0,
        events: Optional[StructuredLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.enrichment = enrichment
        self.enrichment_timeout = enrichment_timeout
        self.events = events or StructuredLogger(function_name="classify_urgency")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def thresholds_for(self, source: Source) -> TierThresholds:
        return FAMILY_THRESHOLDS.get(source.scoring_family, FAMILY_THRESHOLDS["default"])

    def matched_keywords(self, text: str, source: Source) -> list[str]:
        keywords = source.keywords or DEFAULT_URGENCY_KEYWORDS
        text = text.lower()
        seen = []
        for keyword in keywords:
            k = keyword.lower().strip()
            if k and k in text and k not in seen:
                seen.append(k)
        return seen

    def recency_bonus(self, published: datetime) -> int:
        age = self._clock() - published
        for window, bonus in RECENCY_BONUSES:
            if age <= window:
                return bonus
        return 0

    def agency_boost(self, agency: str, text: str) -> int:
        text = text.lower()
        boost = 0
        for points, phrases in AGENCY_KEYWORD_BOOSTS.get(agency.upper(), []):
            if any(phrase in text for phrase in phrases):
                boost += points
        return boost

    def score(self, alert: Alert, source: Source) -> tuple[float, list[str]]:
        """Deterministic score and the keywords that contributed to it."""
        text = f"{alert.title} {alert.summary}"
        keywords = self.matched_keywords(text, source)

        total = float(source.priority)
        total += KEYWORD_POINTS * len(keywords)
        total += self.recency_bonus(alert.published_date)
        total += self.agency_boost(alert.agency, text)
        total += REGION_BOOSTS.get(alert.region.lower(), 0)
        return total, keywords

    def classify_deterministic(
        self,
        alert: Alert,
        source: Source,
        hint: Optional[Urgency] = None,
    ) -> Classification:
        score, keywords = self.score(alert, source)
        tier = self.thresholds_for(source).tier(score)
        return Classification(
            score=score,
            urgency=Urgency.most_urgent(tier, hint),
            method="deterministic",
            matched_keywords=tuple(keywords),
        )

    async def classify(
        self,
        alert: Alert,
        source: Source,
        hint: Optional[Urgency] = None,
    ) -> Classification:
        """
        Classify an alert. An upstream hint (e.g. recall class) can raise
        the tier but never lower it.
        """
        result = self.classify_deterministic(alert, source, hint)
        if self.enrichment is None:
            return result

        try:
            verdict = await asyncio.wait_for(
                self.enrichment.classify(alert.title, alert.summary),
                timeout=self.enrichment_timeout,
            )
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                reason = f"timed out after {self.enrichment_timeout:.0f}s"
            elif isinstance(e, EnrichmentError):
                reason = str(e)
            else:
                reason = f"{type(e).__name__}: {e}"
            await self.events.log_warning(
                f"AI classification failed, using deterministic score: {reason}",
                error_kind="enrichment",
                source=source.id,
                title=alert.title[:120],
            )
            return result

        return Classification(
            score=result.score,
            urgency=Urgency.most_urgent(ai_score_to_tier(verdict.urgency_score), hint),
            method="ai",
            summary=verdict.summary,
            matched_keywords=result.matched_keywords,
        )
