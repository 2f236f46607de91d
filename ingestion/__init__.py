"""
ETL orchestration and idempotent loading for feedlot files.

This package contains the lifecycle engine that takes an uploaded CSV from
registration to loaded fact rows:

Modules:
    state_machine: State graph, history entries, re-entry rules, stale runs
    locking: Compare-and-swap updates and logical locks over versioned rows
    checksum: Content digests, tenant-scoped duplicate detection, forced reprocessing
    retry: Error classification, backoff, dead-letter queue
    service: Orchestrator for uploads, transitions, failures and maintenance
    runner: Drives one run through parse -> validate -> (approval) -> load
    scheduler: APScheduler jobs for the retry queue, stale locks and retention
    audit: Lifecycle audit events
    notifications: DLQ and alert notifications (log or webhook)
    entities: Initial file and run rows

Subpackages:
    storage: StoragePort with SQLAlchemy and in-memory adapters
    parsers: CSV parsing with header normalization
    loaders: Fact definitions, dimension lookups, upsert engine

Architecture:
    Every write to a file or run goes through a versioned conditional
    update. A failed run is never retried in-process: the retry service
    schedules next_retry_at and the scheduler polls for due runs. Loading
    is keyed by (organization_id, natural_key), so reprocessing a file
    updates or skips rows instead of duplicating them.

Usage:
    from ingestion.runner import build_runner
    from ingestion.storage.sqlalchemy_store import SqlAlchemyStore

Example:
    runner = build_runner(SqlAlchemyStore(session))
    decision, result = await runner.ingest_file("fazenda-01", "desvio.csv")

    print(result.result["records_inserted"])
"""

__all__ = [
    "ETLRunner",
    "ETLStateMachineService",
    "ETLScheduler",
]
