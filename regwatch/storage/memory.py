"""
In-process alert store for dry runs and tests.
"""

from datetime import datetime, timezone
from typing import Optional

from regwatch.models.domain import Alert, ErrorLogEntry, RunState, UpsertOutcome
from regwatch.storage.base import AlertStore


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class InMemoryAlertStore(AlertStore):
    """Keeps everything in lists and dicts; nothing survives the process."""

    def __init__(self):
        self.alerts: list[Alert] = []
        self.run_states: dict[str, RunState] = {}
        self.logs: list[ErrorLogEntry] = []

    async def upsert_alert(self, alert: Alert) -> UpsertOutcome:
        if alert.external_id:
            for i, existing in enumerate(self.alerts):
                if (
                    existing.source == alert.source
                    and existing.external_id == alert.external_id
                ):
                    self.alerts[i] = alert.model_copy()
                    return UpsertOutcome.UPDATED

        self.alerts.append(alert.model_copy())
        return UpsertOutcome.INSERTED

    async def query_recent_alerts_by_source(
        self,
        source: str,
        since: datetime,
    ) -> list[Alert]:
        since = _aware(since)
        return [
            a.model_copy()
            for a in self.alerts
            if a.source == source and _aware(a.published_date) >= since
        ]

    async def get_run_state(self, source_id: str) -> Optional[RunState]:
        state = self.run_states.get(source_id)
        return state.model_copy() if state else None

    async def set_run_state(self, state: RunState) -> None:
        self.run_states[state.source_id] = state.model_copy()

    async def append_log(self, entry: ErrorLogEntry) -> None:
        self.logs.append(entry)
