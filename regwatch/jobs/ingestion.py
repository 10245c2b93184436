"""
Ingestion batch job.

Builds the pipeline from settings and runs one batch:
1. Open the alert store (SQL, or in-memory for dry runs)
2. Load the source catalog
3. Wire rate limiter, circuit breakers and the retrying fetcher
4. Attach LLM enrichment when enabled and a key is configured
5. Run the orchestrator and return its report
"""
import asyncio
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from regwatch.config import Settings, get_settings
from regwatch.models.database import Database
from regwatch.models.domain import Source
from regwatch.services.enrichment import LLMEnrichmentClient
from regwatch.services.ingestion import (
    RateLimiter,
    ResilienceRegistry,
    RetryingFetcher,
    RunReport,
    SourceOrchestrator,
    StructuredLogger,
    UrgencyClassifier,
)
from regwatch.services.ingestion.catalog import get_sources
from regwatch.services.ingestion.health import health_report
from regwatch.services.ingestion.normalizer import Normalizer
from regwatch.storage import AlertStore, InMemoryAlertStore, SQLAlchemyAlertStore

logger = structlog.get_logger()


class IngestionJob:
    """
    Owns the long-lived pieces of the pipeline.

    Circuit breaker and rate limiter state survive between runs of the
    same job, so a scheduler reusing one IngestionJob keeps breakers
    open across ticks.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[AlertStore] = None,
        sources: Optional[list[Source]] = None,
        dry_run: bool = False,
    ):
        self.settings = settings or get_settings()
        self.dry_run = dry_run
        self.store = store
        self.sources = sources
        self.database: Optional[Database] = None

        self.rate_limiter = RateLimiter()
        self.registry = ResilienceRegistry(self.settings.resilience, self.rate_limiter)
        self.fetcher: Optional[RetryingFetcher] = None
        self.orchestrator: Optional[SourceOrchestrator] = None

    async def initialize(self):
        """Create the store, fetcher and orchestrator."""
        logger.info("Initializing ingestion job", dry_run=self.dry_run)

        if self.store is None:
            if self.dry_run:
                self.store = InMemoryAlertStore()
            else:
                self.database = Database(self.settings.database_url)
                self.store = SQLAlchemyAlertStore(self.database)
                try:
                    await self.database.create_tables()
                except (SQLAlchemyError, OSError) as e:
                    # run() reports the unreachable store as an environment failure
                    logger.error("Database initialization failed", url=self.settings.database_url, error=str(e))
                else:
                    logger.info("Database initialized", url=self.settings.database_url)

        if self.sources is None:
            self.sources = get_sources(self.settings.sources_file)
        logger.info("Sources loaded", count=len(self.sources))

        self.fetcher = RetryingFetcher(self.settings.resilience, rate_limiter=self.rate_limiter)

        events = StructuredLogger(self.store, "run_ingestion")
        enrichment = None
        if self.settings.enrichment_enabled:
            client = LLMEnrichmentClient(self.settings)
            if client.available:
                enrichment = client
                logger.info("LLM enrichment enabled")
            else:
                logger.warning("Enrichment enabled but no LLM API key configured")

        api_keys = {}
        if self.settings.fda_api_key:
            api_keys["openfda"] = self.settings.fda_api_key

        self.orchestrator = SourceOrchestrator(
            store=self.store,
            fetcher=self.fetcher,
            sources=self.sources,
            registry=self.registry,
            normalizer=Normalizer(
                summary_max_chars=self.settings.summary_max_chars,
                title_max_chars=self.settings.title_max_chars,
            ),
            classifier=UrgencyClassifier(
                enrichment=enrichment,
                enrichment_timeout=self.settings.enrichment_timeout_seconds,
                events=events.bind("classify_urgency"),
            ),
            events=events,
            api_keys=api_keys,
            dedup_window_days=self.settings.dedup_window_days,
            max_concurrency=self.settings.max_concurrency,
            same_host_delay=self.settings.same_host_delay_seconds,
            deadline_seconds=self.settings.batch_deadline_seconds,
        )

    async def run(
        self,
        region: Optional[str] = None,
        agency: Optional[str] = None,
        force_refresh: bool = False,
        deadline_seconds: Optional[float] = None,
    ) -> RunReport:
        """Execute one batch."""
        if self.orchestrator is None:
            await self.initialize()

        report = await self.orchestrator.run(
            region=region,
            agency=agency,
            force_refresh=force_refresh,
            deadline_seconds=deadline_seconds,
        )
        logger.info(
            "Ingestion job completed",
            ok=report.ok,
            total_alerts_processed=report.total_alerts_processed,
            environment_error=report.environment_error,
        )
        return report

    async def health(self) -> dict:
        if self.store is None:
            await self.initialize()
        report = await health_report(self.sources, self.store)
        report["resilience"] = self.registry.get_status()
        return report

    async def close(self):
        if self.fetcher is not None:
            await self.fetcher.aclose()
        if self.store is not None:
            await self.store.close()


async def run_ingestion(
    settings: Optional[Settings] = None,
    dry_run: bool = False,
    **run_kwargs,
) -> RunReport:
    """Entry point for running a single batch."""
    job = IngestionJob(settings, dry_run=dry_run)
    try:
        await job.initialize()
        return await job.run(**run_kwargs)
    finally:
        await job.close()


if __name__ == "__main__":
    asyncio.run(run_ingestion())
