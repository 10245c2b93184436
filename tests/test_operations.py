"""
Tests for the operator-facing pieces: source catalog, health, settings,
scheduler, batch job and CLI.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import ValidationError

from conftest import NOW
from regwatch.cli import build_parser, main
from regwatch.config import ResilienceSettings, Settings, get_settings
from regwatch.jobs.ingestion import IngestionJob, run_ingestion
from regwatch.models.domain import HealthStatus, RunState, RunStatus
from regwatch.services.enrichment import LLMEnrichmentClient
from regwatch.services.ingestion.base import RunReport, SourceResult, SourceStatus
from regwatch.services.ingestion.catalog import DEFAULT_SOURCES, filter_sources, get_sources, load_sources
from regwatch.services.ingestion.health import (
    freshness_threshold,
    health_report,
    overall_status,
    source_health,
)
from regwatch.services.ingestion.scheduler import IngestionScheduler
from regwatch.storage.memory import InMemoryAlertStore


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestCatalog:
    """Tests for the built-in source catalog."""

    def test_ids_are_unique(self):
        ids = [s.id for s in DEFAULT_SOURCES]
        assert len(ids) == len(set(ids))

    def test_catalog_covers_agencies(self):
        agencies = {s.agency for s in DEFAULT_SOURCES if s.is_active}
        assert {"FDA", "FSIS", "CDC", "EPA"} <= agencies

    def test_get_sources_returns_copies(self):
        sources = get_sources()
        sources[0].priority = 99
        assert DEFAULT_SOURCES[0].priority != 99

    def test_filter_sources(self, make_source):
        sources = [
            make_source("a", agency="FDA"),
            make_source("b", agency="EPA"),
            make_source("c", agency="FDA", region="EU"),
            make_source("d", agency="FDA", is_active=False),
        ]
        assert [s.id for s in filter_sources(sources, agency="fda")] == ["a", "c"]
        assert [s.id for s in filter_sources(sources, region="us")] == ["a", "b"]
        assert [s.id for s in filter_sources(sources, agency="FDA", include_inactive=True)] == ["a", "c", "d"]

    def test_load_sources(self, tmp_path):
        path = tmp_path / "sources.json"
        path.write_text(json.dumps([{
            "id": "state_ag",
            "name": "State Agriculture Alerts",
            "agency": "STATE",
            "kind": "rss",
            "urls": ["https://agri.example.gov/rss"],
        }]))

        sources = load_sources(path)
        assert sources[0].id == "state_ag"
        assert sources[0].polling_interval_minutes == 60

    def test_invalid_source_file(self, tmp_path):
        path = tmp_path / "sources.json"
        path.write_text(json.dumps([{"id": "x", "name": "X", "agency": "FDA", "kind": "rss", "urls": []}]))

        with pytest.raises(ValidationError):
            load_sources(path)


class TestHealth:
    """Tests for freshness-based health."""

    def test_thresholds_by_agency(self, make_source):
        assert freshness_threshold(make_source(agency="FDA")) == timedelta(hours=24)
        assert freshness_threshold(make_source(agency="FSIS")) == timedelta(hours=12)
        assert freshness_threshold(make_source(agency="CDC")) == timedelta(hours=72)
        assert freshness_threshold(make_source(agency="EFSA")) == timedelta(hours=48)
        assert freshness_threshold(make_source(agency="FDA", freshness_hours=2)) == timedelta(hours=2)

    @pytest.mark.parametrize("age_hours,expected", [
        (1, HealthStatus.HEALTHY),
        (24, HealthStatus.HEALTHY),
        (30, HealthStatus.DEGRADED),
        (49, HealthStatus.CRITICAL),
    ])
    def test_source_health(self, make_source, age_hours, expected):
        state = RunState(source_id="fda_recalls", last_success_at=NOW - timedelta(hours=age_hours))
        assert source_health(make_source(agency="FDA"), state, NOW) == expected

    def test_never_succeeded_is_unknown(self, make_source):
        assert source_health(make_source(), None, NOW) == HealthStatus.UNKNOWN
        state = RunState(source_id="fda_recalls", last_status=RunStatus.ERROR)
        assert source_health(make_source(), state, NOW) == HealthStatus.UNKNOWN

    def test_overall_status(self):
        assert overall_status([]) == HealthStatus.UNKNOWN
        assert overall_status([HealthStatus.HEALTHY]) == HealthStatus.HEALTHY
        assert overall_status([HealthStatus.HEALTHY, HealthStatus.UNKNOWN]) == HealthStatus.DEGRADED
        assert overall_status([HealthStatus.DEGRADED, HealthStatus.CRITICAL]) == HealthStatus.CRITICAL

    @pytest.mark.asyncio
    async def test_health_report(self, make_source, store):
        fda = make_source("fda_recalls")
        epa = make_source("epa_news", agency="EPA")
        await store.set_run_state(RunState(
            source_id="fda_recalls",
            last_run_at=NOW,
            last_status=RunStatus.ERROR,
            last_error="[network] Timeout",
            last_success_at=NOW - timedelta(hours=30),
        ))

        report = await health_report([fda, epa], store, NOW)

        assert report["overall_status"] == "degraded"
        by_id = {e["source_id"]: e for e in report["sources"]}
        assert by_id["fda_recalls"]["status"] == "degraded"
        assert by_id["fda_recalls"]["last_error"] == "[network] Timeout"
        assert by_id["epa_news"]["status"] == "unknown"


class TestSettings:
    """Tests for configuration loading."""

    def test_defaults(self):
        settings = make_settings()
        assert settings.dedup_window_days == 7
        assert settings.resilience.max_retries == 3
        assert settings.resilience.breaker_failure_threshold == 5

    def test_resilience_env_prefix(self, monkeypatch):
        monkeypatch.setenv("RESILIENCE_MAX_RETRIES", "5")
        monkeypatch.setenv("RESILIENCE_BREAKER_OPEN_TIMEOUT_SECONDS", "120")

        resilience = ResilienceSettings()
        assert resilience.max_retries == 5
        assert resilience.breaker_open_timeout_seconds == 120

    def test_ceiling_must_be_positive(self):
        with pytest.raises(ValidationError):
            ResilienceSettings(backoff_max_seconds=0)


class TestIngestionScheduler:
    """Tests for the periodic runner."""

    @pytest.mark.asyncio
    async def test_run_now_records_report(self):
        report = RunReport()
        report.add(SourceResult("fda_recalls", "FDA Recalls", SourceStatus.SUCCESS, alerts_new=2))
        run_batch = AsyncMock(return_value=report)
        scheduler = IngestionScheduler(run_batch, interval_minutes=15)

        assert await scheduler.run_now() is report

        status = scheduler.get_status()
        assert status["last_run"] is not None
        assert status["interval_minutes"] == 15
        assert status["last_report"]["totalAlertsProcessed"] == 2

    @pytest.mark.asyncio
    async def test_failed_batch_is_contained(self):
        scheduler = IngestionScheduler(AsyncMock(side_effect=RuntimeError("boom")))

        assert await scheduler.run_now() is None
        assert scheduler.last_run is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = IngestionScheduler(AsyncMock(return_value=RunReport()), interval_minutes=30)

        scheduler.start(run_immediately=False)
        try:
            status = scheduler.get_status()
            assert status["running"]
            assert status["next_run"] is not None
        finally:
            scheduler.stop()

        assert not scheduler.is_running


class TestIngestionJob:
    """Tests for pipeline wiring."""

    @pytest.mark.asyncio
    async def test_dry_run_uses_memory_store(self, make_source):
        job = IngestionJob(make_settings(), sources=[make_source()], dry_run=True)
        await job.initialize()
        try:
            assert isinstance(job.store, InMemoryAlertStore)
            assert job.orchestrator.classifier.enrichment is None
        finally:
            await job.close()

    @pytest.mark.asyncio
    async def test_enrichment_requires_key(self, make_source):
        settings = make_settings(enrichment_enabled=True, anthropic_api_key=None, openai_api_key=None)
        job = IngestionJob(settings, store=InMemoryAlertStore(), sources=[make_source()])
        await job.initialize()
        assert job.orchestrator.classifier.enrichment is None
        await job.close()

        settings = make_settings(enrichment_enabled=True, anthropic_api_key="test-key")
        job = IngestionJob(settings, store=InMemoryAlertStore(), sources=[make_source()])
        await job.initialize()
        assert isinstance(job.orchestrator.classifier.enrichment, LLMEnrichmentClient)
        await job.close()

    @pytest.mark.asyncio
    async def test_fda_key_is_passed_through(self, make_source):
        job = IngestionJob(
            make_settings(fda_api_key="fda-key"), store=InMemoryAlertStore(), sources=[make_source()]
        )
        await job.initialize()
        assert job.orchestrator.api_keys == {"openfda": "fda-key"}
        await job.close()

    @pytest.mark.asyncio
    async def test_sql_store_created(self, make_source, tmp_path):
        settings = make_settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'job.db'}")
        job = IngestionJob(settings, sources=[make_source()])
        await job.initialize()
        try:
            await job.store.ping()
            report = await job.health()
            assert report["overall_status"] == "degraded"
            assert report["sources"][0]["status"] == "unknown"
        finally:
            await job.close()

    @pytest.mark.asyncio
    async def test_unreachable_database_is_reported(self, tmp_path):
        """An unopenable database ends the batch with an environment error, not a crash."""
        settings = make_settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'regwatch.db'}")

        report = await run_ingestion(settings=settings, agency="FDA")

        assert not report.ok
        assert "Database unreachable" in report.environment_error
        assert report.results == {}


class TestCLI:
    """Tests for argument parsing and command output."""

    def test_parser(self):
        args = build_parser().parse_args(
            ["run", "--agency", "FDA", "--force", "--deadline", "120", "--dry-run", "-o", "out.json"]
        )
        assert args.command == "run"
        assert args.agency == "FDA"
        assert args.force and args.dry_run
        assert args.deadline == 120.0
        assert args.output == "out.json"

    def test_no_command(self, capsys):
        assert main([]) == 1

    def test_sources_command(self, capsys):
        assert main(["sources", "--agency", "FSIS"]) == 0
        out = capsys.readouterr().out
        assert "SOURCE CONFIGURATION" in out
        assert "FSIS" in out

    def test_run_command(self, capsys, tmp_path):
        report = RunReport()
        report.add(SourceResult("fda_recalls", "FDA Recalls", SourceStatus.SUCCESS, alerts_new=3))
        output = tmp_path / "report.json"

        with patch("regwatch.cli.IngestionJob") as job_cls:
            job = job_cls.return_value
            job.initialize = AsyncMock()
            job.run = AsyncMock(return_value=report)
            job.close = AsyncMock()

            code = main(["run", "--dry-run", "--agency", "FDA", "--output", str(output)])

        assert code == 0
        job_cls.assert_called_once_with(dry_run=True)
        job.run.assert_awaited_once_with(
            region=None, agency="FDA", force_refresh=False, deadline_seconds=None
        )
        assert "✓ FDA Recalls" in capsys.readouterr().out
        assert json.loads(output.read_text())["totalAlertsProcessed"] == 3

    def test_commands_with_unreachable_database(self, capsys, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'regwatch.db'}")
        get_settings.cache_clear()
        try:
            assert main(["run", "--agency", "FDA"]) == 1
            assert main(["health"]) == 1
        finally:
            get_settings.cache_clear()

        out = capsys.readouterr().out
        assert out.count("Environment failure") == 2

    def test_run_command_environment_failure(self, capsys):
        report = RunReport(environment_error="Database unreachable")

        with patch("regwatch.cli.IngestionJob") as job_cls:
            job = job_cls.return_value
            job.initialize = AsyncMock()
            job.run = AsyncMock(return_value=report)
            job.close = AsyncMock()

            assert main(["run"]) == 1

        assert "Environment failure" in capsys.readouterr().out
