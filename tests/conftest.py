"""
Pytest configuration and fixtures
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from core.exceptions import NetworkError
from ingestion.loaders.dimensions import StoreDimensionLookup
from ingestion.loaders.upsert_engine import UpsertEngine
from ingestion.locking import LockingOptions, OptimisticLockingService
from ingestion.notifications import LoggingNotifier
from ingestion.retry import RetryConfig, RetryLogicService
from ingestion.runner import ETLRunner
from ingestion.service import ETLStateMachineService
from ingestion.state_machine import StateMachineConfig
from ingestion.storage.base import Tables
from ingestion.storage.sqlalchemy_store import SqlAlchemyStore
from ingestion.storage.memory import InMemoryStore

ORG = "T1"


def recent_day(days_ago: int = 2) -> str:
    """ISO date inside the accepted data_ref window."""
    return (datetime.utcnow().date() - timedelta(days=days_ago)).isoformat()


def desvio_csv(day: str = None, rows=None) -> bytes:
    """Semicolon separated desvio export with the spreadsheet headers."""
    day = day or recent_day()
    rows = rows or [
        ("MANHA", "BAHMAN", "C001", "Engorda", "1000", "980"),
        ("MANHA", "BAHMAN", "C002", "Engorda", "1500", "1510"),
        ("TARDE", "BAHMAN", "C001", "Engorda", "800", "800"),
    ]
    lines = ["data;turno;vagao;curral;dieta;previsto_kg;realizado_kg"]
    for turno, vagao, curral, dieta, planned, real in rows:
        lines.append(f"{day};{turno};{vagao};{curral};{dieta};{planned};{real}")
    return ("\n".join(lines) + "\n").encode("utf-8")


def trato_csv(day: str = None) -> bytes:
    day = day or recent_day()
    return (
        "data,hora,curral,operador,dieta,kg,cabecas\n"
        f"{day},7:05,C001,Joao,Engorda,1200,80\n"
        f"{day},13:30,C001,Joao,Engorda,1150,80\n"
    ).encode("utf-8")


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def locking_options():
    return LockingOptions(retry_delay_ms=1, max_delay_ms=5, jitter=False)


@pytest.fixture
def retry_config():
    return RetryConfig(max_retries=3, base_delay_ms=0, max_delay_ms=0, jitter_enabled=False)


@pytest.fixture
def make_service(store, tmp_path, locking_options, retry_config):
    """Build a service over the shared store with fast, deterministic timings."""

    def factory(**config_overrides) -> ETLStateMachineService:
        config = StateMachineConfig(**config_overrides)
        locking = OptimisticLockingService(store, locking_options)
        notifier = LoggingNotifier()
        retry = RetryLogicService(
            store,
            locking=locking,
            config=retry_config.copy(update={"max_retries": config.max_retries}),
            notifier=notifier,
        )
        return ETLStateMachineService(
            store,
            config=config,
            locking=locking,
            retry=retry,
            notifier=notifier,
            upload_dir=str(tmp_path / "uploads"),
        )

    return factory


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def lookup(store):
    return StoreDimensionLookup(store)


@pytest.fixture
def engine(store, lookup):
    return UpsertEngine(store, lookup, batch_size=2, use_native_upsert=False)


@pytest.fixture
def make_runner(store, make_service):
    def factory(**config_overrides) -> ETLRunner:
        service = make_service(**config_overrides)
        engine = UpsertEngine(store, StoreDimensionLookup(store), batch_size=2, use_native_upsert=False)
        return ETLRunner(service, engine, worker_id="test-worker")

    return factory


@pytest.fixture
def runner(make_runner):
    return make_runner()


@pytest_asyncio.fixture
async def uploaded(service):
    """A registered desvio upload and its first run."""
    decision = await service.register_upload(ORG, "desvio.csv", desvio_csv(), uploaded_by="ana")
    assert decision.created
    return decision


@pytest.fixture
def make_desvio_csv():
    return desvio_csv


@pytest.fixture
def make_trato_csv():
    return trato_csv


async def schedule_due_runs(session_factory, count: int, organization_id: str = ORG):
    """
    Register `count` distinct desvio uploads over SQL sessions and leave
    each run FAILED with a retry that is already due.
    """
    run_ids = []
    async with session_factory() as session:
        service = ETLStateMachineService.from_settings(SqlAlchemyStore(session))
        for n in range(count):
            decision = await service.register_upload(
                organization_id, f"desvio-{n}.csv", desvio_csv(day=recent_day(n + 1))
            )
            run_id = decision.run.id
            await service.start_processing(run_id, "worker-1")
            failure = await service.handle_run_failure(run_id, NetworkError("upload storage unreachable"))
            assert failure.should_retry is True
            await service.locking.update_with_lock(
                Tables.ETL_RUN, run_id, {"next_retry_at": datetime.utcnow() - timedelta(seconds=1)}
            )
            run_ids.append(run_id)
    return run_ids


@pytest.fixture
def make_due_runs():
    return schedule_due_runs
