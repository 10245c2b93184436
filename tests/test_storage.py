"""
Tests for the SQLAlchemy alert store on a throwaway SQLite file.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from conftest import NOW
from regwatch.models.database import Database
from regwatch.models.domain import Alert, ErrorLogEntry, RunState, RunStatus, Severity, UpsertOutcome, Urgency
from regwatch.services.ingestion.errors import StorageError
from regwatch.storage.sql import SQLAlchemyAlertStore


def make_alert(title: str, **overrides) -> Alert:
    fields = {
        "title": title,
        "source": "FDA Recalls",
        "agency": "FDA",
        "region": "US",
        "urgency": Urgency.HIGH,
        "summary": "Possible Listeria contamination.",
        "published_date": NOW - timedelta(days=1),
        "external_url": "https://fda.gov/a",
        "external_id": "F-1234-2024",
        "score": 15.0,
    }
    fields.update(overrides)
    return Alert(**fields)


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'regwatch.db'}")
    await database.create_tables()
    store = SQLAlchemyAlertStore(database)
    yield store
    await store.close()


class TestSQLAlchemyAlertStore:
    """Tests for the SQL-backed store."""

    @pytest.mark.asyncio
    async def test_upsert_by_external_id(self, sql_store):
        assert await sql_store.upsert_alert(make_alert("Acme Recalls Cheese")) == UpsertOutcome.INSERTED
        assert await sql_store.upsert_alert(
            make_alert("Acme Recalls Cheese (Updated)", urgency=Urgency.CRITICAL)
        ) == UpsertOutcome.UPDATED

        alerts = await sql_store.query_recent_alerts_by_source("FDA Recalls", NOW - timedelta(days=7))
        assert len(alerts) == 1
        assert alerts[0].title == "Acme Recalls Cheese (Updated)"
        assert alerts[0].urgency == Urgency.CRITICAL

    @pytest.mark.asyncio
    async def test_alerts_without_external_id_are_inserted(self, sql_store):
        await sql_store.upsert_alert(make_alert("Notice one", external_id=None))
        await sql_store.upsert_alert(make_alert("Notice two", external_id=None))

        alerts = await sql_store.query_recent_alerts_by_source("FDA Recalls", NOW - timedelta(days=7))
        assert {a.title for a in alerts} == {"Notice one", "Notice two"}

    @pytest.mark.asyncio
    async def test_same_external_id_other_source(self, sql_store):
        await sql_store.upsert_alert(make_alert("Acme Recalls Cheese"))
        outcome = await sql_store.upsert_alert(make_alert("Acme Recalls Cheese", source="FSIS"))
        assert outcome == UpsertOutcome.INSERTED

    @pytest.mark.asyncio
    async def test_query_window_and_timezones(self, sql_store):
        await sql_store.upsert_alert(make_alert("Recent", external_id="1"))
        await sql_store.upsert_alert(make_alert("Old", external_id="2", published_date=NOW - timedelta(days=30)))

        alerts = await sql_store.query_recent_alerts_by_source("FDA Recalls", NOW - timedelta(days=7))

        assert [a.title for a in alerts] == ["Recent"]
        assert alerts[0].published_date == NOW - timedelta(days=1)
        assert alerts[0].published_date.tzinfo is not None

    @pytest.mark.asyncio
    async def test_run_state_round_trip(self, sql_store):
        assert await sql_store.get_run_state("fda_recalls") is None

        state = RunState(
            source_id="fda_recalls",
            last_run_at=NOW,
            next_eligible_at=NOW + timedelta(minutes=30),
            last_status=RunStatus.ERROR,
            last_error="[network] Timeout",
            last_success_at=NOW - timedelta(hours=3),
            last_item_count=0,
        )
        await sql_store.set_run_state(state)
        assert await sql_store.get_run_state("fda_recalls") == state

        await sql_store.set_run_state(state.model_copy(update={"last_status": RunStatus.SUCCESS}))
        assert (await sql_store.get_run_state("fda_recalls")).last_status == RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_append_log_and_ping(self, sql_store):
        await sql_store.ping()
        await sql_store.append_log(ErrorLogEntry(
            function_name="process_source",
            error_kind="parse",
            message="bad feed",
            context={"source": "fda_recalls", "attempt": 1},
            severity=Severity.ERROR,
        ))

    @pytest.mark.asyncio
    async def test_missing_tables_raise_storage_error(self, tmp_path):
        store = SQLAlchemyAlertStore(Database(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"))
        try:
            with pytest.raises(StorageError):
                await store.get_run_state("fda_recalls")
        finally:
            await store.close()
