"""
SQLAlchemy-backed alert store.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from regwatch.models.database import Database, DBAlert, DBErrorLog, DBRunState
from regwatch.models.domain import (
    Alert,
    ErrorLogEntry,
    RunState,
    RunStatus,
    UpsertOutcome,
    Urgency,
)
from regwatch.services.ingestion.errors import StorageError
from regwatch.storage.base import AlertStore

logger = logging.getLogger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SQLAlchemyAlertStore(AlertStore):
    """AlertStore over the async SQLAlchemy engine in `Database`."""

    def __init__(self, database: Database):
        self.database = database

    async def upsert_alert(self, alert: Alert) -> UpsertOutcome:
        try:
            async with self.database.async_session() as session:
                existing = None
                if alert.external_id:
                    result = await session.execute(
                        select(DBAlert).where(
                            DBAlert.source == alert.source,
                            DBAlert.external_id == alert.external_id,
                        )
                    )
                    existing = result.scalar_one_or_none()

                if existing is not None:
                    self._copy_into(existing, alert)
                    outcome = UpsertOutcome.UPDATED
                else:
                    row = DBAlert()
                    self._copy_into(row, alert)
                    session.add(row)
                    outcome = UpsertOutcome.INSERTED

                await session.commit()
                return outcome

        except IntegrityError as e:
            logger.warning(f"Rejected alert '{alert.title[:60]}' from {alert.source}: {e.orig}")
            return UpsertOutcome.ERROR
        except OperationalError as e:
            raise StorageError(f"Database unavailable: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to upsert alert from {alert.source}: {e}") from e

    async def query_recent_alerts_by_source(
        self,
        source: str,
        since: datetime,
    ) -> list[Alert]:
        try:
            async with self.database.async_session() as session:
                result = await session.execute(
                    select(DBAlert)
                    .where(DBAlert.source == source, DBAlert.published_date >= since)
                    .order_by(DBAlert.published_date.desc())
                )
                return [self._to_alert(row) for row in result.scalars()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query recent alerts for {source}: {e}") from e

    async def get_run_state(self, source_id: str) -> Optional[RunState]:
        try:
            async with self.database.async_session() as session:
                row = await session.get(DBRunState, source_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read run state for {source_id}: {e}") from e

        if row is None:
            return None
        return RunState(
            source_id=row.source_id,
            last_run_at=_utc(row.last_run_at),
            next_eligible_at=_utc(row.next_eligible_at),
            last_status=RunStatus(row.last_status) if row.last_status else None,
            last_error=row.last_error,
            last_success_at=_utc(row.last_success_at),
            last_nonempty_at=_utc(row.last_nonempty_at),
            last_item_count=row.last_item_count or 0,
        )

    async def set_run_state(self, state: RunState) -> None:
        try:
            async with self.database.async_session() as session:
                row = await session.get(DBRunState, state.source_id)
                if row is None:
                    row = DBRunState(source_id=state.source_id)
                    session.add(row)
                row.last_run_at = state.last_run_at
                row.next_eligible_at = state.next_eligible_at
                row.last_status = state.last_status.value if state.last_status else None
                row.last_error = state.last_error
                row.last_success_at = state.last_success_at
                row.last_nonempty_at = state.last_nonempty_at
                row.last_item_count = state.last_item_count
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to write run state for {state.source_id}: {e}") from e

    async def append_log(self, entry: ErrorLogEntry) -> None:
        try:
            async with self.database.async_session() as session:
                session.add(DBErrorLog(
                    function_name=entry.function_name,
                    error_kind=entry.error_kind,
                    message=entry.message,
                    context_json=entry.context,
                    severity=entry.severity.value,
                    created_at=entry.created_at,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to append log entry: {e}") from e

    async def ping(self) -> None:
        try:
            async with self.database.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Database unreachable: {e}") from e

    async def close(self) -> None:
        await self.database.dispose()

    def _copy_into(self, row: DBAlert, alert: Alert) -> None:
        row.title = alert.title
        row.source = alert.source
        row.agency = alert.agency
        row.region = alert.region
        row.urgency = alert.urgency.value
        row.score = alert.score
        row.summary = alert.summary
        row.published_date = alert.published_date
        row.external_url = alert.external_url
        row.full_content = alert.full_content
        row.external_id = alert.external_id
        row.provenance = alert.provenance

    def _to_alert(self, row: DBAlert) -> Alert:
        return Alert(
            title=row.title,
            source=row.source,
            agency=row.agency,
            region=row.region,
            urgency=Urgency(row.urgency),
            score=row.score,
            summary=row.summary or "",
            published_date=_utc(row.published_date),
            external_url=row.external_url,
            full_content=row.full_content,
            external_id=row.external_id,
            provenance=row.provenance,
        )
