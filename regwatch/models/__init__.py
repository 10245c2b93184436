"""Domain and database models."""

from regwatch.models.domain import (
    Alert,
    ErrorLogEntry,
    HealthStatus,
    QuotaPeriod,
    RunState,
    RunStatus,
    Severity,
    Source,
    SourceKind,
    UpsertOutcome,
    Urgency,
)

__all__ = [
    "Alert",
    "ErrorLogEntry",
    "HealthStatus",
    "QuotaPeriod",
    "RunState",
    "RunStatus",
    "Severity",
    "Source",
    "SourceKind",
    "UpsertOutcome",
    "Urgency",
]
