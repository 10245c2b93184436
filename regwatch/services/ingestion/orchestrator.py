"""
Source Orchestrator - runs one ingestion batch across all sources.

Per source: eligibility check -> rate limit gate -> fetch through the
source's circuit breaker -> parse -> normalize -> classify -> dedup ->
upsert -> run state. Sources run concurrently in a bounded pool, and a
failure in one source is recorded in its SourceResult without touching
the others.
"""

import asyncio
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import structlog

from regwatch.models.domain import RunState, RunStatus, Source, SourceKind, UpsertOutcome
from regwatch.services.ingestion.base import (
    FeedParser,
    RawItem,
    RunReport,
    SourceResult,
    SourceStatus,
)
from regwatch.services.ingestion.catalog import filter_sources
from regwatch.services.ingestion.dedup import Deduplicator
from regwatch.services.ingestion.errors import (
    CircuitOpenError,
    ErrorKind,
    IngestionError,
    NetworkError,
    NoResultsError,
    RateLimitExceeded,
    StorageError,
    UpstreamHTTPError,
)
from regwatch.services.ingestion.fetcher import Expect, FetchResult, RetryingFetcher
from regwatch.services.ingestion.health import freshness_threshold
from regwatch.services.ingestion.json_api import JSONAPIParser
from regwatch.services.ingestion.normalizer import Normalizer, truncate
from regwatch.services.ingestion.registry import ResilienceRegistry
from regwatch.services.ingestion.rss import RSSParser
from regwatch.services.ingestion.scraper import HTMLScraper
from regwatch.services.ingestion.structured_logging import StructuredLogger
from regwatch.services.ingestion.urgency import UrgencyClassifier
from regwatch.storage.base import AlertStore

logger = structlog.get_logger(__name__)

EXPECTED_FORMAT: dict[SourceKind, Expect] = {
    SourceKind.RSS: "xml",
    SourceKind.API: "json",
    SourceKind.SCRAPER: "html",
}

# Failures after which a source switches to its fallback source
FALLBACK_ERRORS = (UpstreamHTTPError, NetworkError, CircuitOpenError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceOrchestrator:
    """
    Runs fetch -> parse -> normalize -> classify -> dedup -> persist for
    every eligible source.

    Features:
    - Priority order with a bounded worker pool
    - Per-source polling intervals, bypassed by force_refresh
    - Minimum spacing between requests to the same host
    - Hard deadline: sources not yet started are skipped
    - Typed per-source results; only an unreachable store fails the batch
    """

    def __init__(
        self,
        store: AlertStore,
        fetcher: RetryingFetcher,
        sources: list[Source],
        registry: Optional[ResilienceRegistry] = None,
        normalizer: Optional[Normalizer] = None,
        classifier: Optional[UrgencyClassifier] = None,
        events: Optional[StructuredLogger] = None,
        parsers: Optional[dict[SourceKind, FeedParser]] = None,
        api_keys: Optional[dict[str, str]] = None,
        dedup_window_days: int = 7,
        max_concurrency: int = 5,
        same_host_delay: float = 0.0,
        deadline_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.fetcher = fetcher
        self.sources = sources
        self._sources_by_id = {s.id: s for s in sources}
        self.registry = registry or ResilienceRegistry(rate_limiter=fetcher.rate_limiter)
        self.events = events or StructuredLogger(store, "run_ingestion")
        self.normalizer = normalizer or Normalizer(clock=clock)
        self.classifier = classifier or UrgencyClassifier(
            events=self.events.bind("classify_urgency"),
            clock=clock,
        )
        self.parsers = parsers or {
            SourceKind.RSS: RSSParser(),
            SourceKind.API: JSONAPIParser(),
            SourceKind.SCRAPER: HTMLScraper(),
        }
        self.api_keys = api_keys or {}
        self.deduplicator = Deduplicator(store, window_days=dedup_window_days, clock=clock)
        self.max_concurrency = max_concurrency
        self.same_host_delay = same_host_delay
        self.deadline_seconds = deadline_seconds

        self._clock = clock or _utcnow
        self._monotonic = monotonic
        self._sleep = sleep
        self._host_last_request: dict[str, float] = {}
        self._host_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        for source in sources:
            self.registry.rate_limiter.configure_source(source)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def run(
        self,
        region: Optional[str] = None,
        agency: Optional[str] = None,
        force_refresh: bool = False,
        deadline_seconds: Optional[float] = None,
    ) -> RunReport:
        """
        Process every active source matching the filters.

        Never raises for source-level failures. If the store cannot be
        reached at all the report carries `environment_error` and no
        source is processed.
        """
        started = self._monotonic()
        report = RunReport()
        deadline_seconds = deadline_seconds if deadline_seconds is not None else self.deadline_seconds
        deadline = started + deadline_seconds if deadline_seconds is not None else None

        logger.info(
            "Starting ingestion run",
            region=region,
            agency=agency,
            force_refresh=force_refresh,
            deadline_seconds=deadline_seconds,
        )

        try:
            await self.store.ping()
        except StorageError as e:
            report.environment_error = str(e)
            report.duration_seconds = self._monotonic() - started
            logger.critical("Alert store unreachable, aborting run", error=str(e))
            return report

        selected = sorted(
            filter_sources(self.sources, region=region, agency=agency),
            key=lambda s: s.priority,
            reverse=True,
        )
        self.deduplicator.clear()

        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks = [
            self._run_in_pool(source, semaphore, deadline, force_refresh, report)
            for source in selected
        ]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        for source, outcome in zip(selected, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Source worker crashed", source=source.id, error=repr(outcome))
                outcome = SourceResult(
                    source_id=source.id,
                    source_name=source.name,
                    status=SourceStatus.ERROR,
                    error_kind=ErrorKind.from_exception(outcome),
                    error=str(outcome) or type(outcome).__name__,
                )
            report.add(outcome)

        report.duration_seconds = self._monotonic() - started
        logger.info(
            "Ingestion run finished",
            duration_seconds=round(report.duration_seconds, 2),
            deadline_reached=report.deadline_reached,
            **report.totals,
        )
        return report

    async def _run_in_pool(
        self,
        source: Source,
        semaphore: asyncio.Semaphore,
        deadline: Optional[float],
        force_refresh: bool,
        report: RunReport,
    ) -> SourceResult:
        async with semaphore:
            if deadline is not None and self._monotonic() >= deadline:
                report.deadline_reached = True
                return SourceResult(
                    source_id=source.id,
                    source_name=source.name,
                    status=SourceStatus.SKIPPED,
                    skip_reason="batch deadline reached",
                )
            return await self.process_source(source, force_refresh=force_refresh)

    # ------------------------------------------------------------------
    # Single source
    # ------------------------------------------------------------------

    async def process_source(self, source: Source, force_refresh: bool = False) -> SourceResult:
        """Run the full pipeline for one source and record its run state."""
        started = self._monotonic()
        now = self._clock()
        result = SourceResult(source_id=source.id, source_name=source.name, status=SourceStatus.SUCCESS)
        events = self.events.bind("process_source")
        state: Optional[RunState] = None

        try:
            state = await self.store.get_run_state(source.id)

            if not force_refresh and self._too_soon(source, state, now):
                result.status = SourceStatus.SKIPPED
                result.skip_reason = "polling interval not elapsed"
                return result

            authenticated = self._api_key_for(source) is not None
            if not self.registry.rate_limiter.check(source.limiter_key, authenticated):
                raise RateLimitExceeded(
                    f"Quota exhausted for {source.limiter_key}",
                    {"source": source.id},
                )

            items = await self._fetch_items(source, result, events)
            result.items_fetched = len(items)

            if not items:
                self._check_staleness(source, state, now)

            await self._persist_items(source, items, result, events)

        except RateLimitExceeded as e:
            result.status = SourceStatus.SKIPPED
            result.error_kind = e.kind
            result.skip_reason = "rate limit reached"
            await events.log_warning(str(e), error_kind=e.kind.value, source=source.id)
            return result

        except Exception as e:
            result.status = SourceStatus.ERROR
            result.error_kind = ErrorKind.from_exception(e)
            result.error = str(e) or type(e).__name__
            await events.log_error(
                e,
                source=source.id,
                source_name=source.name,
                endpoint=result.endpoints[-1] if result.endpoints else source.urls[0],
                retries_exhausted=getattr(e, "retryable", False),
            )

        finally:
            result.duration_seconds = self._monotonic() - started

        await self._record_run_state(source, state, result, now)

        if result.success:
            await events.log_info(
                f"Processed {source.name}",
                source=source.id,
                items_fetched=result.items_fetched,
                alerts_new=result.alerts_new,
                alerts_updated=result.alerts_updated,
                alerts_duplicate=result.alerts_duplicate,
            )
        return result

    def _too_soon(self, source: Source, state: Optional[RunState], now: datetime) -> bool:
        if state is None or state.last_run_at is None:
            return False
        return now - state.last_run_at < timedelta(minutes=source.polling_interval_minutes)

    def _api_key_for(self, source: Source) -> Optional[str]:
        if not source.auth_param:
            return None
        return self.api_keys.get(source.limiter_key) or self.api_keys.get(source.id)

    def _check_staleness(self, source: Source, state: Optional[RunState], now: datetime):
        """Raise NoResultsError once a source has been empty for longer than its freshness window."""
        if state is None or state.last_nonempty_at is None:
            return
        empty_for = now - state.last_nonempty_at
        if empty_for > freshness_threshold(source):
            raise NoResultsError(
                f"{source.name} returned no items for {empty_for.total_seconds() / 3600:.0f}h",
                {"source": source.id, "last_nonempty_at": state.last_nonempty_at.isoformat()},
            )

    # ------------------------------------------------------------------
    # Fetch + parse
    # ------------------------------------------------------------------

    async def _fetch_items(
        self,
        source: Source,
        result: SourceResult,
        events: StructuredLogger,
        allow_fallback: bool = True,
    ) -> list[RawItem]:
        """
        Fetch and parse every endpoint of a source.

        An endpoint failure is tolerated while at least one endpoint of
        the source succeeds. If all fail with a transient error and the
        source names a fallback source, the fallback's feeds are used
        instead; otherwise the first error is raised.
        """
        parser = self.parsers[source.kind]
        breaker = self.registry.breaker(source.id)
        api_key = self._api_key_for(source)

        params = dict(source.params)
        if api_key and source.auth_param:
            params[source.auth_param] = api_key

        items: list[RawItem] = []
        failures: list[Exception] = []

        for i, url in enumerate(source.urls):
            if i > 0 and source.request_delay_seconds:
                await self._sleep(source.request_delay_seconds)

            backup = source.backup_urls[i] if i < len(source.backup_urls) else None
            result.endpoints.append(url)
            retries: list[tuple[BaseException, int, float]] = []

            async def fetch_once(url: str = url, backup: Optional[str] = backup) -> Optional[FetchResult]:
                await self._wait_for_host(url)
                try:
                    return await self.fetcher.fetch_with_fallback(
                        url,
                        backup,
                        params=params or None,
                        expect=EXPECTED_FORMAT[source.kind],
                        rate_limit_key=source.limiter_key,
                        authenticated=api_key is not None,
                        on_retry=lambda exc, attempt, wait: retries.append((exc, attempt, wait)),
                    )
                except UpstreamHTTPError as e:
                    # "no matches" is a healthy answer and must not count against the breaker
                    if e.status_code == 404 and source.empty_on_404:
                        return None
                    raise

            try:
                try:
                    fetched = await breaker.execute(fetch_once)
                finally:
                    for exc, attempt, wait in retries:
                        await events.log_error(
                            exc,
                            source=source.id,
                            endpoint=url,
                            attempt=attempt,
                            will_retry=True,
                            retry_in_seconds=round(wait, 2),
                        )
                if fetched is None:
                    logger.debug("Endpoint reported no matches", source=source.id, endpoint=url)
                    continue
                if fetched.used_backup:
                    result.endpoints.append(fetched.url)
                items.extend(parser.parse(fetched.text, source, base_url=fetched.url))
            except RateLimitExceeded:
                raise
            except IngestionError as e:
                failures.append(e)

        if failures:
            if len(failures) == len(source.urls):
                fallback = self._fallback_for(source, failures[0]) if allow_fallback else None
                if fallback is None:
                    raise failures[0]
                await events.log_error(failures[0], source=source.id, fallback_source=fallback.id)
                logger.warning(
                    "Primary endpoints failed, using fallback source",
                    source=source.id,
                    fallback_source=fallback.id,
                    error=str(failures[0]),
                )
                return self._filter_items(
                    source,
                    await self._fetch_items(fallback, result, events, allow_fallback=False),
                )
            for failure in failures:
                await events.log_error(failure, source=source.id, partial_failure=True)

        return self._filter_items(source, items)

    def _fallback_for(self, source: Source, error: Exception) -> Optional[Source]:
        """The source's fallback, if it has one and `error` is transient."""
        if not source.fallback_source or not isinstance(error, FALLBACK_ERRORS):
            return None
        if isinstance(error, UpstreamHTTPError) and not error.retryable:
            return None
        fallback = self._sources_by_id.get(source.fallback_source)
        if fallback is None:
            logger.warning("Unknown fallback source", source=source.id, fallback_source=source.fallback_source)
        return fallback

    def _filter_items(self, source: Source, items: list[RawItem]) -> list[RawItem]:
        if source.include_keywords:
            wanted = [k.lower() for k in source.include_keywords]
            items = [
                item for item in items
                if any(k in f"{item.title} {item.description}".lower() for k in wanted)
            ]
        return items[: source.max_items * max(len(source.urls), 1)]

    async def _wait_for_host(self, url: str):
        """Space out requests that different sources make to one host."""
        if self.same_host_delay <= 0:
            return
        host = urlparse(url).netloc.lower()
        async with self._host_locks[host]:
            last = self._host_last_request.get(host)
            if last is not None:
                remaining = self.same_host_delay - (self._monotonic() - last)
                if remaining > 0:
                    await self._sleep(remaining)
            self._host_last_request[host] = self._monotonic()

    # ------------------------------------------------------------------
    # Normalize, classify, dedup, persist
    # ------------------------------------------------------------------

    async def _persist_items(
        self,
        source: Source,
        items: list[RawItem],
        result: SourceResult,
        events: StructuredLogger,
    ):
        for item in items:
            try:
                alert = self.normalizer.normalize(item, source)
                classification = await self.classifier.classify(alert, source, item.urgency_hint)
            except Exception as e:
                result.alerts_failed += 1
                await events.log_error(e, source=source.id, item_title=item.title[:120])
                continue

            alert.urgency = classification.urgency
            alert.score = classification.score
            if classification.summary:
                alert.summary = truncate(classification.summary, self.normalizer.summary_max_chars)

            if await self.deduplicator.is_duplicate(alert):
                result.alerts_duplicate += 1
                continue

            outcome = await self.store.upsert_alert(alert)
            if outcome == UpsertOutcome.INSERTED:
                result.alerts_new += 1
                self.deduplicator.remember(alert)
            elif outcome == UpsertOutcome.UPDATED:
                result.alerts_updated += 1
            elif outcome == UpsertOutcome.SKIPPED:
                result.alerts_duplicate += 1
            else:
                result.alerts_failed += 1

    async def _record_run_state(
        self,
        source: Source,
        previous: Optional[RunState],
        result: SourceResult,
        now: datetime,
    ):
        previous = previous or RunState(source_id=source.id)
        interval = timedelta(minutes=source.polling_interval_minutes)

        state = RunState(
            source_id=source.id,
            last_run_at=now,
            next_eligible_at=now + interval,
            last_status=RunStatus.SUCCESS if result.success else RunStatus.ERROR,
            last_error=None if result.success else f"[{result.error_kind.value}] {result.error}",
            last_success_at=now if result.success else previous.last_success_at,
            last_nonempty_at=now if result.items_fetched else previous.last_nonempty_at,
            last_item_count=result.items_fetched,
        )

        try:
            await self.store.set_run_state(state)
        except StorageError as e:
            logger.error("Failed to record run state", source=source.id, error=str(e))
