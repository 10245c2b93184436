"""
Domain models for RegWatch.
These are the core business entities, independent of database representation.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class SourceKind(str, Enum):
    """How a source publishes its announcements."""
    RSS = "rss"
    API = "api"
    SCRAPER = "scraper"


class Urgency(str, Enum):
    """Coarse severity tier driving downstream alerting priority."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _URGENCY_ORDER.index(self)

    @classmethod
    def most_urgent(cls, *tiers: Optional["Urgency"]) -> "Urgency":
        present = [t for t in tiers if t is not None]
        if not present:
            return cls.LOW
        return max(present, key=lambda t: t.rank)


_URGENCY_ORDER = [Urgency.LOW, Urgency.MEDIUM, Urgency.HIGH, Urgency.CRITICAL]


class Severity(str, Enum):
    """Log severity derived from an event."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RunStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class HealthStatus(str, Enum):
    """Per-source status shown to operators."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class QuotaPeriod(str, Enum):
    HOUR = "hour"
    DAY = "day"


# =============================================================================
# Sources
# =============================================================================

class Source(BaseModel):
    """One configured upstream feed, API or page."""
    id: str
    name: str
    agency: str
    region: str = "US"
    kind: SourceKind
    urls: list[str] = Field(min_length=1)
    backup_urls: list[str] = Field(default_factory=list)
    polling_interval_minutes: int = Field(default=60, ge=1)
    priority: int = Field(default=5, description="Base urgency weight")
    keywords: list[str] = Field(default_factory=list)
    is_active: bool = True

    # Item filtering
    include_keywords: list[str] = Field(
        default_factory=list,
        description="When set, only items mentioning one of these are kept",
    )
    max_items: int = Field(default=50, ge=1)

    # Format specifics
    api_profile: str = "generic"
    selectors: dict[str, str] = Field(default_factory=dict)
    params: dict[str, Any] = Field(default_factory=dict)
    auth_param: Optional[str] = None
    empty_on_404: bool = False
    fallback_source: Optional[str] = Field(
        default=None,
        description="Id of a source whose feeds are used when every endpoint fails with a 5xx, 429 or network error",
    )

    # Quotas and pacing
    rate_limit_key: Optional[str] = None
    quota_unauthenticated: Optional[int] = None
    quota_authenticated: Optional[int] = None
    quota_period: QuotaPeriod = QuotaPeriod.HOUR
    request_delay_seconds: float = 0.0

    # Scoring and health
    scoring_family: str = "default"
    freshness_hours: Optional[float] = None

    @property
    def limiter_key(self) -> str:
        return self.rate_limit_key or self.id


# =============================================================================
# Alerts
# =============================================================================

class Alert(BaseModel):
    """Canonical normalized regulatory event."""
    title: str
    source: str
    agency: str
    region: str
    urgency: Urgency = Urgency.LOW
    summary: str = ""
    published_date: datetime
    external_url: Optional[str] = None
    full_content: Optional[str] = None
    external_id: Optional[str] = None
    provenance: Optional[str] = Field(
        default=None,
        description="Feed the alert was read from when it differs from source",
    )
    score: Optional[float] = None


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"
    ERROR = "error"


# =============================================================================
# Run bookkeeping
# =============================================================================

class RunState(BaseModel):
    """Per-source bookkeeping of the last poll."""
    source_id: str
    last_run_at: Optional[datetime] = None
    next_eligible_at: Optional[datetime] = None
    last_status: Optional[RunStatus] = None
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_nonempty_at: Optional[datetime] = None
    last_item_count: int = 0


class ErrorLogEntry(BaseModel):
    """Append-only structured log record."""
    function_name: str
    error_kind: Optional[str] = None
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    severity: Severity
    created_at: datetime = Field(default_factory=utcnow)
