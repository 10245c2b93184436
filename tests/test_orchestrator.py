"""
Tests for batch orchestration.

Every source talks to httpx.MockTransport; sleeps and clocks are faked
so retries, deadlines and polling intervals run instantly.
"""

import json
from datetime import timedelta

import httpx
import pytest

from conftest import NOW, FakeMonotonic, RecordingSleep, mock_client, rss_feed
from regwatch.config import ResilienceSettings
from regwatch.models.domain import RunState, RunStatus, Severity, SourceKind, Urgency
from regwatch.services.ingestion.base import SourceStatus
from regwatch.services.ingestion.circuit_breaker import CircuitState
from regwatch.services.ingestion.errors import ErrorKind, StorageError
from regwatch.services.ingestion.fetcher import RetryingFetcher
from regwatch.services.ingestion.orchestrator import SourceOrchestrator
from regwatch.services.ingestion.rate_limiter import RateLimiter
from regwatch.services.ingestion.registry import ResilienceRegistry
from regwatch.storage.memory import InMemoryAlertStore


class Router:
    """MockTransport handler dispatching on host; unknown hosts get a 404."""

    def __init__(self, routes: dict, monotonic: FakeMonotonic = None, cost: float = 0.0):
        self.routes = routes
        self.calls: list[httpx.Request] = []
        self.monotonic = monotonic
        self.cost = cost

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.monotonic is not None:
            self.monotonic.advance(self.cost)
        response = self.routes.get(request.url.host)
        if response is None:
            return httpx.Response(404)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response

    def hosts(self) -> list[str]:
        return [r.url.host for r in self.calls]


def build(
    sources,
    router,
    store=None,
    clock=None,
    monotonic=None,
    max_retries=0,
    **kwargs,
) -> SourceOrchestrator:
    resilience = ResilienceSettings(max_retries=max_retries, backoff_jitter_seconds=0.0)
    limiter = RateLimiter(clock=clock)
    sleep = RecordingSleep()
    fetcher = RetryingFetcher(
        resilience,
        client=mock_client(router),
        rate_limiter=limiter,
        sleep=sleep,
    )
    return SourceOrchestrator(
        store=store or InMemoryAlertStore(),
        fetcher=fetcher,
        sources=sources,
        registry=ResilienceRegistry(resilience, limiter, clock=monotonic or FakeMonotonic()),
        clock=clock,
        monotonic=monotonic or FakeMonotonic(),
        sleep=sleep,
        **kwargs,
    )


def feed(*titles: str) -> httpx.Response:
    items = [(t, f"guid-{i}-{abs(hash(t)) % 10000}") for i, t in enumerate(titles)]
    return httpx.Response(200, text=rss_feed(*items), headers={"content-type": "application/rss+xml"})


class UnreachableStore(InMemoryAlertStore):
    async def ping(self):
        raise StorageError("connection refused")


class TestSourceOrchestrator:
    """Tests for the batch runner."""

    @pytest.mark.asyncio
    async def test_successful_run_persists_alerts(self, make_source, store, clock):
        source = make_source(priority=9, keywords=["recall"])
        router = Router({
            "fda-recalls.example.gov": feed(
                "Acme Foods Recalls Soft Cheese Due to Possible Listeria",
                "FDA Approves New Labeling Format for Snacks",
            ),
        })
        orchestrator = build([source], router, store=store, clock=clock)

        report = await orchestrator.run()

        assert report.ok
        result = report.results["fda_recalls"]
        assert result.status == SourceStatus.SUCCESS
        assert result.items_fetched == 2
        assert result.alerts_new == 2
        assert report.total_alerts_processed == 2

        recall = next(a for a in store.alerts if "Cheese" in a.title)
        assert recall.source == source.name
        assert recall.urgency.rank >= Urgency.MEDIUM.rank
        assert recall.score is not None

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, make_source, store, clock):
        """One failing source does not affect the others."""
        good = make_source("fda_recalls")
        bad = make_source("epa_news", agency="EPA")
        router = Router({
            "fda-recalls.example.gov": feed("Acme Foods Recalls Soft Cheese"),
            "epa-news.example.gov": httpx.Response(500),
        })
        orchestrator = build([good, bad], router, store=store, clock=clock)

        report = await orchestrator.run()

        assert report.ok
        assert report.results["fda_recalls"].status == SourceStatus.SUCCESS
        failed = report.results["epa_news"]
        assert failed.status == SourceStatus.ERROR
        assert failed.error_kind == ErrorKind.UPSTREAM_HTTP
        assert report.totals["sources_failed"] == 1
        assert len(store.alerts) == 1

        critical = [log for log in store.logs if log.severity == Severity.CRITICAL]
        assert critical and critical[0].context["source"] == "epa_news"

    @pytest.mark.asyncio
    async def test_run_state_on_success_and_error(self, make_source, store, clock):
        good = make_source("fda_recalls")
        bad = make_source("epa_news", agency="EPA")
        store.run_states["epa_news"] = RunState(
            source_id="epa_news",
            last_success_at=NOW - timedelta(days=1),
            last_nonempty_at=NOW - timedelta(days=1),
        )
        router = Router({
            "fda-recalls.example.gov": feed("Acme Foods Recalls Soft Cheese"),
            "epa-news.example.gov": httpx.Response(403),
        })

        await build([good, bad], router, store=store, clock=clock).run()

        ok = store.run_states["fda_recalls"]
        assert ok.last_status == RunStatus.SUCCESS
        assert ok.last_run_at == NOW
        assert ok.last_success_at == NOW
        assert ok.next_eligible_at == NOW + timedelta(minutes=60)
        assert ok.last_item_count == 1

        failed = store.run_states["epa_news"]
        assert failed.last_status == RunStatus.ERROR
        assert failed.last_run_at == NOW
        assert failed.last_error.startswith("[upstream_http] HTTP 403")
        # Previous success is kept for health reporting
        assert failed.last_success_at == NOW - timedelta(days=1)

    @pytest.mark.asyncio
    async def test_polling_interval_skips_source(self, make_source, store, clock):
        source = make_source("fda_recalls", polling_interval_minutes=60)
        store.run_states["fda_recalls"] = RunState(
            source_id="fda_recalls", last_run_at=NOW - timedelta(minutes=10)
        )
        router = Router({"fda-recalls.example.gov": feed("Acme Foods Recalls Soft Cheese")})
        orchestrator = build([source], router, store=store, clock=clock)

        report = await orchestrator.run()
        assert report.results["fda_recalls"].status == SourceStatus.SKIPPED
        assert router.calls == []

        report = await orchestrator.run(force_refresh=True)
        assert report.results["fda_recalls"].status == SourceStatus.SUCCESS
        assert len(router.calls) == 1

    @pytest.mark.asyncio
    async def test_deadline_skips_unstarted_sources(self, make_source, store, clock):
        """Sources still queued when the deadline passes are skipped, not failed."""
        monotonic = FakeMonotonic()
        first = make_source("fda_recalls", priority=9)
        second = make_source("epa_news", agency="EPA", priority=1)
        router = Router(
            {
                "fda-recalls.example.gov": feed("Acme Foods Recalls Soft Cheese"),
                "epa-news.example.gov": feed("EPA Announces Settlement with Plant"),
            },
            monotonic=monotonic,
            cost=10.0,
        )
        orchestrator = build(
            [second, first], router, store=store, clock=clock, monotonic=monotonic, max_concurrency=1
        )

        report = await orchestrator.run(deadline_seconds=5)

        assert report.deadline_reached
        assert report.results["fda_recalls"].status == SourceStatus.SUCCESS
        skipped = report.results["epa_news"]
        assert skipped.status == SourceStatus.SKIPPED
        assert skipped.skip_reason == "batch deadline reached"
        assert router.hosts() == ["fda-recalls.example.gov"]

    @pytest.mark.asyncio
    async def test_environment_failure(self, make_source, clock):
        router = Router({"fda-recalls.example.gov": feed("Acme Foods Recalls Soft Cheese")})
        orchestrator = build([make_source()], router, store=UnreachableStore(), clock=clock)

        report = await orchestrator.run()

        assert not report.ok
        assert "connection refused" in report.environment_error
        assert report.results == {}
        assert router.calls == []
        assert report.to_dict()["success"] is False

    @pytest.mark.asyncio
    async def test_filters(self, make_source, store, clock):
        sources = [
            make_source("fda_recalls"),
            make_source("epa_news", agency="EPA"),
            make_source("efsa_news", agency="EFSA", region="EU"),
            make_source("fda_old", is_active=False),
        ]
        router = Router({f"{s.id.replace('_', '-')}.example.gov": feed(f"Announcement from {s.id} today") for s in sources})
        orchestrator = build(sources, router, store=store, clock=clock)

        report = await orchestrator.run(agency="fda")
        assert list(report.results) == ["fda_recalls"]

        report = await orchestrator.run(region="EU", force_refresh=True)
        assert list(report.results) == ["efsa_news"]

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, make_source, store, clock):
        """Re-ingesting the same feed updates rows instead of adding new ones."""
        source = make_source()
        router = Router({"fda-recalls.example.gov": feed(
            "Acme Foods Recalls Soft Cheese",
            "Beta Labs Recalls Eye Drops Nationwide",
        )})
        orchestrator = build([source], router, store=store, clock=clock)

        await orchestrator.run()
        report = await orchestrator.run(force_refresh=True)

        assert len(store.alerts) == 2
        assert report.results["fda_recalls"].alerts_new == 0
        assert report.results["fda_recalls"].alerts_updated == 2

    @pytest.mark.asyncio
    async def test_duplicates_without_ids_within_run(self, make_source, store, clock):
        source = make_source("fda_warning_letters", kind=SourceKind.SCRAPER, selectors={"item": ".card", "title": "h3"})
        page = """
        <div class="card"><h3>Acme Foods Inc - Warning Letter</h3></div>
        <div class="card"><h3>ACME FOODS INC -  WARNING LETTER</h3></div>
        """
        router = Router({"fda-warning-letters.example.gov": httpx.Response(200, text=page)})

        report = await build([source], router, store=store, clock=clock).run()

        result = report.results["fda_warning_letters"]
        assert result.alerts_new == 1
        assert result.alerts_duplicate == 1

    @pytest.mark.asyncio
    async def test_backup_url(self, make_source, store, clock):
        source = make_source(
            urls=["https://old.example.gov/rss.xml"],
            backup_urls=["https://new.example.gov/rss.xml"],
        )
        router = Router({
            "old.example.gov": httpx.Response(410),
            "new.example.gov": feed("Acme Foods Recalls Soft Cheese"),
        })

        report = await build([source], router, store=store, clock=clock).run()

        result = report.results["fda_recalls"]
        assert result.success
        assert result.endpoints == ["https://old.example.gov/rss.xml", "https://new.example.gov/rss.xml"]

    @pytest.mark.asyncio
    async def test_partial_endpoint_failure(self, make_source, store, clock):
        """A source succeeds when at least one of its endpoints does."""
        source = make_source(
            "federal_register",
            urls=["https://a.example.gov/feed.xml", "https://b.example.gov/feed.xml"],
            request_delay_seconds=2.0,
        )
        router = Router({
            "a.example.gov": httpx.Response(500),
            "b.example.gov": feed("Final Rule on Food Labeling Published"),
        })
        orchestrator = build([source], router, store=store, clock=clock)

        report = await orchestrator.run()

        assert report.results["federal_register"].success
        assert report.results["federal_register"].alerts_new == 1
        assert 2.0 in orchestrator._sleep.delays

    @pytest.mark.asyncio
    async def test_empty_on_404(self, make_source, store, clock):
        source = make_source(
            "openfda_food",
            kind=SourceKind.API,
            api_profile="openfda_enforcement",
            empty_on_404=True,
        )
        router = Router({})

        report = await build([source], router, store=store, clock=clock).run()

        assert report.results["openfda_food"].status == SourceStatus.SUCCESS
        assert report.results["openfda_food"].items_fetched == 0

    @pytest.mark.asyncio
    async def test_no_match_404s_do_not_open_the_circuit(self, make_source, store, clock):
        source = make_source(
            "openfda_food",
            kind=SourceKind.API,
            api_profile="openfda_enforcement",
            empty_on_404=True,
        )
        router = Router({})
        orchestrator = build([source], router, store=store, clock=clock)

        for _ in range(6):
            report = await orchestrator.run(force_refresh=True)
            assert report.results["openfda_food"].status == SourceStatus.SUCCESS

        assert len(router.calls) == 6
        assert orchestrator.registry.breaker("openfda_food").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_server_errors_switch_to_fallback_source(self, make_source, store, clock):
        """An API that keeps failing is replaced by its agency's RSS feed for the run."""
        rss = make_source("fda_recalls", is_active=False)
        api = make_source(
            "openfda_food",
            kind=SourceKind.API,
            api_profile="openfda_enforcement",
            fallback_source="fda_recalls",
        )
        router = Router({
            "openfda-food.example.gov": httpx.Response(500),
            "fda-recalls.example.gov": feed("Acme Foods Recalls Soft Cheese Due to Possible Listeria"),
        })

        report = await build([api, rss], router, store=store, clock=clock).run()

        result = report.results["openfda_food"]
        assert result.status == SourceStatus.SUCCESS
        assert result.alerts_new == 1
        assert "https://fda-recalls.example.gov/feed.xml" in result.endpoints
        assert store.alerts[0].source == api.name
        assert any(
            log.context.get("fallback_source") == "fda_recalls" and log.context.get("status_code") == 500
            for log in store.logs
        )

    @pytest.mark.asyncio
    async def test_client_errors_do_not_use_fallback_source(self, make_source, store, clock):
        rss = make_source("fda_recalls", is_active=False)
        api = make_source(
            "openfda_food",
            kind=SourceKind.API,
            api_profile="openfda_enforcement",
            fallback_source="fda_recalls",
        )
        router = Router({
            "openfda-food.example.gov": httpx.Response(403),
            "fda-recalls.example.gov": feed("Acme Foods Recalls Soft Cheese"),
        })

        report = await build([api, rss], router, store=store, clock=clock).run()

        assert report.results["openfda_food"].status == SourceStatus.ERROR
        assert router.hosts() == ["openfda-food.example.gov"]

    @pytest.mark.asyncio
    async def test_stale_source_raises_no_results(self, make_source, store, clock):
        source = make_source("fsis_recalls", agency="FSIS")
        store.run_states["fsis_recalls"] = RunState(
            source_id="fsis_recalls",
            last_success_at=NOW - timedelta(hours=1),
            last_nonempty_at=NOW - timedelta(days=2),
        )
        router = Router({"fsis-recalls.example.gov": feed()})

        report = await build([source], router, store=store, clock=clock).run()

        result = report.results["fsis_recalls"]
        assert result.status == SourceStatus.ERROR
        assert result.error_kind == ErrorKind.NO_RESULTS
        assert store.run_states["fsis_recalls"].last_success_at == NOW - timedelta(hours=1)
        assert any(
            log.severity == Severity.CRITICAL and log.error_kind == "no_results" for log in store.logs
        )

    @pytest.mark.asyncio
    async def test_empty_feed_within_freshness_is_fine(self, make_source, store, clock):
        source = make_source("fsis_recalls", agency="FSIS")
        store.run_states["fsis_recalls"] = RunState(
            source_id="fsis_recalls", last_nonempty_at=NOW - timedelta(hours=2)
        )
        router = Router({"fsis-recalls.example.gov": feed()})

        report = await build([source], router, store=store, clock=clock).run()

        assert report.results["fsis_recalls"].success
        assert store.run_states["fsis_recalls"].last_nonempty_at == NOW - timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_rate_limited_source_is_skipped(self, make_source, store, clock):
        source = make_source("openfda_food", rate_limit_key="openfda_test", quota_unauthenticated=0)
        router = Router({"openfda-food.example.gov": feed("Acme Foods Recalls Soft Cheese")})
        orchestrator = build([source], router, store=store, clock=clock)

        report = await orchestrator.run()

        result = report.results["openfda_food"]
        assert result.status == SourceStatus.SKIPPED
        assert result.error_kind == ErrorKind.RATE_LIMITED
        assert router.calls == []
        assert orchestrator.registry.breaker("openfda_food").failure_count == 0

    @pytest.mark.asyncio
    async def test_api_key_added_for_authenticated_sources(self, make_source, store, clock):
        source = make_source(
            "openfda_food",
            kind=SourceKind.API,
            api_profile="openfda_enforcement",
            auth_param="api_key",
            rate_limit_key="openfda",
            params={"limit": 10},
        )
        payload = {"results": [{
            "product_description": "Soft cheese",
            "classification": "Class I",
            "recall_number": "F-1234-2024",
            "report_date": "20240601",
        }]}
        router = Router({"openfda-food.example.gov": httpx.Response(200, json=payload)})
        orchestrator = build([source], router, store=store, clock=clock, api_keys={"openfda": "secret"})

        report = await orchestrator.run()

        assert report.results["openfda_food"].alerts_new == 1
        assert router.calls[0].url.params["api_key"] == "secret"
        assert router.calls[0].url.params["limit"] == "10"
        # Class I hint lifts the tier to at least High
        assert store.alerts[0].urgency.rank >= Urgency.HIGH.rank

    @pytest.mark.asyncio
    async def test_retry_warnings_are_logged(self, make_source, store, clock):
        source = make_source()
        responses = iter([httpx.Response(503), feed("Acme Foods Recalls Soft Cheese")])
        router = Router({"fda-recalls.example.gov": lambda request: next(responses)})

        report = await build([source], router, store=store, clock=clock, max_retries=2).run()

        assert report.results["fda_recalls"].success
        warnings = [log for log in store.logs if log.context.get("will_retry")]
        assert len(warnings) == 1
        assert warnings[0].severity == Severity.WARNING
        assert warnings[0].context["status_code"] == 503

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self, make_source, store, clock):
        source = make_source()
        router = Router({"fda-recalls.example.gov": httpx.ConnectTimeout("timed out")})
        orchestrator = build([source], router, store=store, clock=clock)

        for _ in range(5):
            await orchestrator.run(force_refresh=True)
        report = await orchestrator.run(force_refresh=True)

        assert report.results["fda_recalls"].error_kind == ErrorKind.CIRCUIT_OPEN
        assert len(router.calls) == 5

    @pytest.mark.asyncio
    async def test_same_host_spacing(self, make_source, store, clock):
        monotonic = FakeMonotonic()
        sources = [
            make_source("fr_fda", urls=["https://www.federalregister.gov/a.xml"]),
            make_source("fr_epa", agency="EPA", urls=["https://www.federalregister.gov/b.xml"]),
        ]
        router = Router({"www.federalregister.gov": feed("Final Rule on Food Labeling Published")})
        orchestrator = build(
            sources, router, store=store, clock=clock, monotonic=monotonic, same_host_delay=1.5
        )
        orchestrator._sleep = RecordingSleep(monotonic)

        await orchestrator.run()

        assert orchestrator._sleep.delays == [1.5]

    @pytest.mark.asyncio
    async def test_report_serializes(self, make_source, store, clock):
        router = Router({"fda-recalls.example.gov": feed("Acme Foods Recalls Soft Cheese")})
        report = await build([make_source()], router, store=store, clock=clock).run()

        data = json.loads(json.dumps(report.to_dict()))
        assert data["success"] is True
        assert data["totalAlertsProcessed"] == 1
        assert data["results"]["fda_recalls"]["status"] == "success"
