"""
Error taxonomy for the ingestion pipeline.

Every failure a source can produce is one of these, so the orchestrator
can record a typed outcome per source instead of a bare message.
"""

import math
from enum import Enum
from typing import Any, Optional

import httpx


class ErrorKind(str, Enum):
    """Family of a pipeline failure."""
    NETWORK = "network"
    UPSTREAM_HTTP = "upstream_http"
    PARSE = "parse"
    NO_RESULTS = "no_results"
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    STORAGE = "storage"
    UNKNOWN = "unknown"

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorKind":
        if isinstance(exc, IngestionError):
            return exc.kind
        if isinstance(exc, httpx.TransportError):
            return cls.NETWORK
        if isinstance(exc, httpx.HTTPStatusError):
            return cls.UPSTREAM_HTTP
        return cls.UNKNOWN


class IngestionError(Exception):
    """Base class for failures raised while processing a source."""

    kind = ErrorKind.UNKNOWN
    retryable = False

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class NetworkError(IngestionError):
    """Timeout, DNS failure or refused connection."""

    kind = ErrorKind.NETWORK
    retryable = True


class UpstreamHTTPError(IngestionError):
    """Non-2xx response from an upstream."""

    kind = ErrorKind.UPSTREAM_HTTP

    def __init__(
        self,
        status_code: int,
        url: str,
        retry_after: Optional[float] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(f"HTTP {status_code} from {url}", context)
        self.status_code = status_code
        self.url = url
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


class ParseError(IngestionError):
    """Malformed or unexpected response body."""

    kind = ErrorKind.PARSE


class NoResultsError(IngestionError):
    """Well-formed but empty results for longer than the source's freshness window."""

    kind = ErrorKind.NO_RESULTS


class CircuitOpenError(IngestionError):
    """The breaker rejected the call without attempting network I/O."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, name: str, retry_in_seconds: float):
        super().__init__(
            f"Circuit breaker {name} is OPEN. Retry in {math.ceil(retry_in_seconds)}s",
            {"breaker": name, "retry_in_seconds": retry_in_seconds},
        )
        self.retry_in_seconds = retry_in_seconds


class RateLimitExceeded(IngestionError):
    """Quota for the current window is used up; the source is skipped this cycle."""

    kind = ErrorKind.RATE_LIMITED


class StorageError(IngestionError):
    """The persistence layer could not be reached or rejected the operation."""

    kind = ErrorKind.STORAGE
