import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import settings
from ingestion.storage.base import Tables, where
from ingestion.storage.sqlalchemy_store import SqlAlchemyStore
from models import Base
from scripts.run_etl import build_parser, run_command


@pytest_asyncio.fixture
async def session_factory(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))

    engine = create_async_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


class TestRetryQueueCommand:
    """retry-queue over a SQL database"""

    @pytest.mark.asyncio
    async def test_due_runs_each_get_their_own_session(self, session_factory, make_due_runs, monkeypatch):
        monkeypatch.setattr(settings, "RETRY_QUEUE_CONCURRENCY", 3)
        run_ids = await make_due_runs(session_factory, 3)

        outcome = await run_command(build_parser().parse_args(["retry-queue", "--org", "T1"]))

        assert outcome == {"processed": 3, "succeeded": 3, "failed": 0}
        async with session_factory() as session:
            store = SqlAlchemyStore(session)
            for run_id in run_ids:
                run = await store.get(Tables.ETL_RUN, run_id)
                assert run["current_state"] == "loaded"
                assert run["locked_by"] is None
                assert run["processing_by"] is None
            assert await store.count(Tables.FATO_DESVIO, where(organization_id="T1")) == 9

    @pytest.mark.asyncio
    async def test_nothing_due(self, session_factory):
        outcome = await run_command(build_parser().parse_args(["retry-queue"]))

        assert outcome == {"processed": 0, "succeeded": 0, "failed": 0}


class TestIngestCommand:
    """ingest from a file on disk"""

    @pytest.mark.asyncio
    async def test_ingest_then_duplicate(self, session_factory, make_desvio_csv, tmp_path):
        path = tmp_path / "desvio.csv"
        path.write_bytes(make_desvio_csv())
        args = ["ingest", str(path), "--org", "T1", "--user", "ana"]

        first = await run_command(build_parser().parse_args(args))
        assert first["created"] is True
        assert first["success"] is True
        assert first["state"] == "loaded"

        second = await run_command(build_parser().parse_args(args))
        assert second["created"] is False
        assert "file_id" not in second
