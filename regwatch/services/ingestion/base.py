"""
Base classes and data models for alert ingestion.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from regwatch.models.domain import Source, Urgency
from regwatch.services.ingestion.errors import ErrorKind


@dataclass
class RawItem:
    """
    One entry as read from an upstream, before normalization.

    Produced by a parser, consumed by the normalizer, never persisted
    as-is (it is serialized into Alert.full_content for audit).
    """
    title: str
    description: str = ""
    link: Optional[str] = None
    published: Optional[str] = None  # Format varies by source
    external_id: Optional[str] = None
    urgency_hint: Optional[Urgency] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "link": self.link,
            "published": self.published,
            "external_id": self.external_id,
            "urgency_hint": self.urgency_hint.value if self.urgency_hint else None,
            "extra": self.extra,
        }


class FeedParser(ABC):
    """Turns a response body into raw items for one source kind."""

    @abstractmethod
    def parse(
        self,
        content: Union[str, bytes],
        source: Source,
        base_url: Optional[str] = None,
    ) -> list[RawItem]:
        """
        Parse a response body.

        Raises:
            ParseError: the body does not have the expected shape
        """


class SourceStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class SourceResult:
    """Outcome of processing one source in a batch."""
    source_id: str
    source_name: str
    status: SourceStatus
    items_fetched: int = 0
    alerts_new: int = 0
    alerts_updated: int = 0
    alerts_duplicate: int = 0
    alerts_failed: int = 0
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    skip_reason: Optional[str] = None
    endpoints: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == SourceStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_name": self.source_name,
            "status": self.status.value,
            "items_fetched": self.items_fetched,
            "alerts_new": self.alerts_new,
            "alerts_updated": self.alerts_updated,
            "alerts_duplicate": self.alerts_duplicate,
            "alerts_failed": self.alerts_failed,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "skip_reason": self.skip_reason,
            "endpoints": self.endpoints,
            "duration_seconds": round(self.duration_seconds, 3),
        }

    def __str__(self) -> str:
        if self.status == SourceStatus.SKIPPED:
            return f"- {self.source_name}: skipped ({self.skip_reason})"
        status = "✓" if self.success else "✗"
        text = (
            f"{status} {self.source_name}: "
            f"fetched={self.items_fetched}, new={self.alerts_new}, "
            f"updated={self.alerts_updated}, duplicates={self.alerts_duplicate}, "
            f"time={self.duration_seconds:.1f}s"
        )
        if self.error:
            text += f", error=[{self.error_kind.value if self.error_kind else 'unknown'}] {self.error}"
        return text


@dataclass
class RunReport:
    """Per-source results of one batch plus aggregate totals."""
    results: dict[str, SourceResult] = field(default_factory=dict)
    environment_error: Optional[str] = None
    deadline_reached: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.environment_error is None

    def add(self, result: SourceResult):
        self.results[result.source_id] = result

    def _count(self, status: SourceStatus) -> int:
        return sum(1 for r in self.results.values() if r.status == status)

    @property
    def totals(self) -> dict[str, int]:
        return {
            "sources_succeeded": self._count(SourceStatus.SUCCESS),
            "sources_failed": self._count(SourceStatus.ERROR),
            "sources_skipped": self._count(SourceStatus.SKIPPED),
            "items_fetched": sum(r.items_fetched for r in self.results.values()),
            "alerts_new": sum(r.alerts_new for r in self.results.values()),
            "alerts_updated": sum(r.alerts_updated for r in self.results.values()),
            "alerts_duplicate": sum(r.alerts_duplicate for r in self.results.values()),
        }

    @property
    def total_alerts_processed(self) -> int:
        return self.totals["alerts_new"] + self.totals["alerts_updated"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.ok,
            "totalAlertsProcessed": self.total_alerts_processed,
            "totals": self.totals,
            "deadline_reached": self.deadline_reached,
            "environment_error": self.environment_error,
            "duration_seconds": round(self.duration_seconds, 3),
            "results": {k: r.to_dict() for k, r in self.results.items()},
        }
