from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
import pytest_asyncio

from core.config import settings
from core.exceptions import NetworkError
from ingestion.scheduler import ETLScheduler
from ingestion.service import ETLStateMachineService
from ingestion.storage.base import Tables, where
from ingestion.storage.sqlalchemy_store import SqlAlchemyStore
from models import Base


@pytest_asyncio.fixture
async def scheduler(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'etl.db'}")
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))

    etl_scheduler = ETLScheduler()
    async with etl_scheduler.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield etl_scheduler
    await etl_scheduler.engine.dispose()


@pytest.mark.asyncio
async def test_scheduler_registers_jobs(scheduler):
    scheduler.start()
    try:
        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {"retry_queue", "stale_lock_sweep", "dlq_requeue", "maintenance"}
        assert scheduler.scheduler.running
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_retry_queue_job_finishes_due_run(scheduler, make_desvio_csv):
    async with scheduler.SessionLocal() as session:
        service = ETLStateMachineService.from_settings(SqlAlchemyStore(session))
        decision = await service.register_upload("T1", "desvio.csv", make_desvio_csv())
        run_id = decision.run.id

        await service.start_processing(run_id, "worker-1")
        failure = await service.handle_run_failure(run_id, NetworkError("upload storage unreachable"))
        assert failure.should_retry is True

        # Make the scheduled retry due now
        await service.locking.update_with_lock(
            Tables.ETL_RUN, run_id, {"next_retry_at": datetime.utcnow() - timedelta(seconds=1)}
        )

    outcome = await scheduler.retry_queue_job()
    assert outcome == {"processed": 1, "succeeded": 1, "failed": 0}

    async with scheduler.SessionLocal() as session:
        store = SqlAlchemyStore(session)
        run = await store.get(Tables.ETL_RUN, run_id)
        assert run["current_state"] == "loaded"
        assert run["next_retry_at"] is None
        assert await store.count(Tables.FATO_DESVIO, where(organization_id="T1")) == 3

    # Nothing left to retry
    assert (await scheduler.retry_queue_job())["processed"] == 0


@pytest.mark.asyncio
async def test_retry_queue_job_runs_due_runs_concurrently(scheduler, make_due_runs, monkeypatch):
    """Several due runs of one organization, processed side by side on their own sessions"""
    monkeypatch.setattr(settings, "RETRY_QUEUE_CONCURRENCY", 4)
    run_ids = await make_due_runs(scheduler.SessionLocal, 4)

    outcome = await scheduler.retry_queue_job()
    assert outcome == {"processed": 4, "succeeded": 4, "failed": 0}

    async with scheduler.SessionLocal() as session:
        store = SqlAlchemyStore(session)
        states = [(await store.get(Tables.ETL_RUN, run_id))["current_state"] for run_id in run_ids]
        assert states == ["loaded"] * 4
        assert await store.count(Tables.FATO_DESVIO, where(organization_id="T1")) == 12
        assert await store.count(Tables.DEAD_LETTER) == 0


@pytest.mark.asyncio
async def test_housekeeping_jobs_on_empty_database(scheduler):
    stale = await scheduler.stale_lock_job()
    assert stale["stale_runs"] == 0
    assert stale["errors"] == []

    assert await scheduler.dlq_requeue_job() == {"requeued": 0, "errors": []}
    assert await scheduler.maintenance_job() == {}


@pytest.mark.asyncio
async def test_job_failure_is_reported_not_raised(scheduler):
    with patch("ingestion.scheduler.build_runner", side_effect=RuntimeError("boom")):
        assert await scheduler.retry_queue_job() == {"error": "boom"}
        assert await scheduler.stale_lock_job() == {"error": "boom"}
