"""
Severity-classified event logging for the ingestion pipeline.

Every event goes to structlog and is appended to the alert store's log
table. Logging must never take the pipeline down, so persistence
failures are reported to structlog and swallowed.
"""

from collections import Counter
from typing import Any, Optional

import structlog

from regwatch.models.domain import ErrorLogEntry, Severity
from regwatch.services.ingestion.errors import (
    ErrorKind,
    NoResultsError,
    ParseError,
    UpstreamHTTPError,
)
from regwatch.storage.base import AlertStore

logger = structlog.get_logger(__name__)

_LEVELS = {
    Severity.INFO: "info",
    Severity.WARNING: "warning",
    Severity.ERROR: "error",
    Severity.CRITICAL: "critical",
}


def determine_severity(exc: BaseException, context: Optional[dict[str, Any]] = None) -> Severity:
    """
    Severity of a failure.

    Precedence:
    1. NoResultsError is critical (upstream data went stale)
    2. Anything with a retry still pending is a warning
    3. 5xx upstream failures are critical
    4. ParseError and everything else surfaced to the orchestrator is an error
    """
    context = context or {}

    if isinstance(exc, NoResultsError):
        return Severity.CRITICAL
    if context.get("will_retry"):
        return Severity.WARNING
    if isinstance(exc, UpstreamHTTPError) and exc.is_server_error:
        return Severity.CRITICAL
    if isinstance(exc, ParseError):
        return Severity.ERROR
    return Severity.ERROR


class StructuredLogger:
    """
    Records pipeline events with a derived severity.

    Usage:
        events = StructuredLogger(store, "fetch_source")
        await events.log_error(exc, source="fda_recalls", endpoint=url, attempt=2)
    """

    def __init__(self, store: Optional[AlertStore] = None, function_name: str = "ingestion"):
        self.store = store
        self.function_name = function_name
        self._severity_counts: Counter = Counter()
        self._kind_counts: Counter = Counter()

    def bind(self, function_name: str) -> "StructuredLogger":
        """Logger for another function name sharing this one's store and counters."""
        bound = StructuredLogger(self.store, function_name)
        bound._severity_counts = self._severity_counts
        bound._kind_counts = self._kind_counts
        return bound

    async def log_error(self, exc: BaseException, **context: Any) -> ErrorLogEntry:
        context = {**getattr(exc, "context", {}), **context}
        if isinstance(exc, UpstreamHTTPError):
            context.setdefault("status_code", exc.status_code)

        return await self._emit(
            message=str(exc) or type(exc).__name__,
            severity=determine_severity(exc, context),
            error_kind=ErrorKind.from_exception(exc).value,
            context=context,
        )

    async def log_info(self, message: str, **context: Any) -> ErrorLogEntry:
        return await self._emit(message, Severity.INFO, None, context)

    async def log_warning(self, message: str, error_kind: Optional[str] = None, **context: Any) -> ErrorLogEntry:
        return await self._emit(message, Severity.WARNING, error_kind, context)

    async def log_critical(self, message: str, error_kind: Optional[str] = None, **context: Any) -> ErrorLogEntry:
        return await self._emit(message, Severity.CRITICAL, error_kind, context)

    async def _emit(
        self,
        message: str,
        severity: Severity,
        error_kind: Optional[str],
        context: dict[str, Any],
    ) -> ErrorLogEntry:
        entry = ErrorLogEntry(
            function_name=self.function_name,
            error_kind=error_kind,
            message=message,
            context=_jsonable(context),
            severity=severity,
        )

        self._severity_counts[severity.value] += 1
        if error_kind:
            self._kind_counts[error_kind] += 1

        fields = {k: v for k, v in entry.context.items() if k != "event"}
        fields.update(
            function_name=self.function_name,
            error_kind=error_kind,
            severity=severity.value,
        )
        getattr(logger, _LEVELS[severity])(message, **fields)

        if self.store is not None:
            try:
                await self.store.append_log(entry)
            except Exception as e:
                logger.error(
                    "Failed to persist log entry",
                    function_name=self.function_name,
                    original_message=message,
                    error=str(e),
                )

        return entry

    def get_error_stats(self) -> dict[str, Any]:
        """Counts of logged events by severity and by error kind."""
        return {
            "total": sum(self._severity_counts.values()),
            "by_severity": dict(self._severity_counts),
            "by_kind": dict(self._kind_counts),
        }


def _jsonable(context: dict[str, Any]) -> dict[str, Any]:
    """Context values as JSON-friendly scalars."""
    clean = {}
    for key, value in context.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            clean[key] = value
        elif isinstance(value, (list, tuple)):
            clean[key] = [v if isinstance(v, (str, int, float, bool)) else str(v) for v in value]
        elif hasattr(value, "value") and isinstance(getattr(value, "value"), str):
            clean[key] = value.value
        else:
            clean[key] = str(value)
    return clean
