import logging
from typing import Any, Dict

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import settings
from ingestion.loaders.dimensions import DimensionCache
from ingestion.runner import build_runner, session_processor
from ingestion.storage.sqlalchemy_store import SqlAlchemyStore

logger = logging.getLogger(__name__)


class ETLScheduler:
    """
    Background jobs for the ETL engine.

    Retries are poll based: nothing sleeps inside a failed run, the retry
    job picks up runs whose next_retry_at has passed.
    """

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self.engine = create_async_engine(settings.DATABASE_URL, echo=False)
        self.SessionLocal = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        # Shared across jobs; sessions are not
        self.dimension_cache = DimensionCache()

    async def retry_queue_job(self) -> Dict[str, Any]:
        """Job to re-process runs due for retry"""
        async with self.SessionLocal() as session:
            try:
                runner = build_runner(SqlAlchemyStore(session), dimension_cache=self.dimension_cache)
                outcome = await runner.process_retry_queue(
                    processor=session_processor(self.SessionLocal, self.dimension_cache)
                )
                if outcome["processed"]:
                    logger.info(f"Scheduler: retry queue processed {outcome}")
                return outcome
            except Exception as e:
                logger.error(f"Scheduler: retry queue job failed - {e}")
                return {"error": str(e)}

    async def stale_lock_job(self) -> Dict[str, Any]:
        """Job to release stale locks and fail abandoned runs"""
        async with self.SessionLocal() as session:
            try:
                runner = build_runner(SqlAlchemyStore(session))
                return await runner.service.recover_stale_runs()
            except Exception as e:
                logger.error(f"Scheduler: stale lock sweep failed - {e}")
                return {"error": str(e)}

    async def dlq_requeue_job(self) -> Dict[str, Any]:
        """Job to re-arm dead-letter entries an operator marked for retry"""
        async with self.SessionLocal() as session:
            try:
                runner = build_runner(SqlAlchemyStore(session))
                return await runner.service.retry.process_marked_dlq_entries()
            except Exception as e:
                logger.error(f"Scheduler: DLQ re-queue failed - {e}")
                return {"error": str(e)}

    async def maintenance_job(self) -> Dict[str, Any]:
        """Job for retention cleanup and alert checks"""
        async with self.SessionLocal() as session:
            try:
                runner = build_runner(SqlAlchemyStore(session))
                summary = await runner.service.run_maintenance()
                logger.info(f"Scheduler: maintenance finished for {len(summary)} organizations")
                return summary
            except Exception as e:
                logger.error(f"Scheduler: maintenance failed - {e}")
                return {"error": str(e)}

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.retry_queue_job,
            trigger=IntervalTrigger(seconds=settings.RETRY_POLL_INTERVAL_SECONDS),
            id="retry_queue",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self.stale_lock_job,
            trigger=IntervalTrigger(seconds=settings.STALE_LOCK_SWEEP_INTERVAL_SECONDS),
            id="stale_lock_sweep",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self.dlq_requeue_job,
            trigger=IntervalTrigger(seconds=settings.RETRY_POLL_INTERVAL_SECONDS),
            id="dlq_requeue",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self.maintenance_job,
            trigger=IntervalTrigger(hours=settings.MAINTENANCE_INTERVAL_HOURS),
            id="maintenance",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info("ETL Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("ETL Scheduler stopped")
