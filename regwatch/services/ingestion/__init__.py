"""
Regulatory alert ingestion.

This package turns agency feeds into stored alerts:
- Resilient fetching (retries, circuit breakers, rate limits)
- RSS/Atom, JSON API and HTML parsers
- Normalization, urgency classification and deduplication
- Source orchestration, run state and health
"""

# errors must load first: storage.sql imports it while this package initializes
from regwatch.services.ingestion.errors import (
    CircuitOpenError,
    ErrorKind,
    IngestionError,
    NetworkError,
    NoResultsError,
    ParseError,
    RateLimitExceeded,
    StorageError,
    UpstreamHTTPError,
)
from regwatch.services.ingestion.base import (
    FeedParser,
    RawItem,
    RunReport,
    SourceResult,
    SourceStatus,
)
from regwatch.services.ingestion.rate_limiter import RateLimiter
from regwatch.services.ingestion.circuit_breaker import CircuitBreaker, CircuitState
from regwatch.services.ingestion.registry import ResilienceRegistry
from regwatch.services.ingestion.fetcher import FetchResult, RetryingFetcher
from regwatch.services.ingestion.rss import RSSParser
from regwatch.services.ingestion.json_api import JSONAPIParser
from regwatch.services.ingestion.scraper import HTMLScraper
from regwatch.services.ingestion.normalizer import Normalizer
from regwatch.services.ingestion.urgency import UrgencyClassifier
from regwatch.services.ingestion.dedup import Deduplicator
from regwatch.services.ingestion.structured_logging import StructuredLogger
from regwatch.services.ingestion.orchestrator import SourceOrchestrator
from regwatch.services.ingestion.scheduler import IngestionScheduler

__all__ = [
    # Errors
    "CircuitOpenError",
    "ErrorKind",
    "IngestionError",
    "NetworkError",
    "NoResultsError",
    "ParseError",
    "RateLimitExceeded",
    "StorageError",
    "UpstreamHTTPError",
    # Results
    "FeedParser",
    "RawItem",
    "RunReport",
    "SourceResult",
    "SourceStatus",
    # Resilience
    "RateLimiter",
    "CircuitBreaker",
    "CircuitState",
    "ResilienceRegistry",
    "FetchResult",
    "RetryingFetcher",
    # Parsers
    "RSSParser",
    "JSONAPIParser",
    "HTMLScraper",
    # Pipeline
    "Normalizer",
    "UrgencyClassifier",
    "Deduplicator",
    "StructuredLogger",
    "SourceOrchestrator",
    "IngestionScheduler",
]
