"""Batch jobs."""

from regwatch.jobs.ingestion import IngestionJob, run_ingestion

__all__ = ["IngestionJob", "run_ingestion"]
