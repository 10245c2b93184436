"""
Persistence interface consumed by the ingestion pipeline.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from regwatch.models.domain import Alert, ErrorLogEntry, RunState, UpsertOutcome


class AlertStore(ABC):
    """
    The pipeline's only contract with storage.

    Implementations must:
    - Treat (source, external_id) as the upsert key when external_id is set
    - Return alerts with timezone-aware published dates
    - Raise StorageError when the backend cannot be reached at all
    """

    @abstractmethod
    async def upsert_alert(self, alert: Alert) -> UpsertOutcome:
        """
        Insert an alert, or update the existing row sharing its external id.

        Returns:
            INSERTED for a new row, UPDATED when an external-id conflict
            was resolved, ERROR when the row was rejected.
        """

    @abstractmethod
    async def query_recent_alerts_by_source(
        self,
        source: str,
        since: datetime,
    ) -> list[Alert]:
        """Alerts from `source` published at or after `since`."""

    @abstractmethod
    async def get_run_state(self, source_id: str) -> Optional[RunState]:
        """Last poll bookkeeping for a source, or None if never polled."""

    @abstractmethod
    async def set_run_state(self, state: RunState) -> None:
        """Replace the run state for `state.source_id`."""

    @abstractmethod
    async def append_log(self, entry: ErrorLogEntry) -> None:
        """Append a structured log record."""

    async def ping(self) -> None:
        """Raise StorageError if the backend is unreachable."""

    async def close(self) -> None:
        pass
