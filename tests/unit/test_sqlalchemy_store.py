"""
Unit tests for the SQLAlchemy storage adapter (SQLite in memory)
"""

from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from core.exceptions import IntegrityConflictError, StateTransitionError, StorageError
from ingestion.storage.base import Condition, Tables, where
from ingestion.storage.sqlalchemy_store import SqlAlchemyStore
from models import Base


@pytest_asyncio.fixture
async def sql_store():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield SqlAlchemyStore(session)

    await engine.dispose()


async def _file(store, checksum="abc", org="T1"):
    return await store.insert(Tables.ETL_FILE, {
        "organization_id": org,
        "filename": "desvio.csv",
        "checksum": checksum,
    })


class TestCrud:
    """Test basic reads and writes"""

    @pytest.mark.asyncio
    async def test_insert_applies_column_defaults(self, sql_store):
        row = await _file(sql_store)

        assert row["id"]
        assert row["version"] == 1
        assert row["current_state"] == "uploaded"
        assert row["state_history"] == []
        assert await sql_store.get(Tables.ETL_FILE, row["id"]) == row
        assert await sql_store.get(Tables.ETL_FILE, "missing") is None

    @pytest.mark.asyncio
    async def test_query_count_and_bulk_operations(self, sql_store):
        await _file(sql_store, "a")
        await _file(sql_store, "b")
        await _file(sql_store, "c", org="T2")

        rows = await sql_store.query(Tables.ETL_FILE, where(organization_id="T1"), order_by="checksum", descending=True)
        assert [r["checksum"] for r in rows] == ["b", "a"]
        assert await sql_store.count(Tables.ETL_FILE, [Condition("checksum", "in", ["a", "c"])]) == 2
        assert len(await sql_store.query(Tables.ETL_FILE, limit=1, offset=1, order_by="checksum")) == 1

        updated = await sql_store.update_where(
            Tables.ETL_FILE, where(organization_id="T1"), {"locked_by": "w1"}, bump_version=True
        )
        assert updated == 2
        assert {r["version"] for r in await sql_store.query(Tables.ETL_FILE, where(locked_by="w1"))} == {2}

        assert await sql_store.delete_where(Tables.ETL_FILE, where(organization_id="T2")) == 1
        assert await sql_store.count(Tables.ETL_FILE, [Condition("locked_by", "is_null")]) == 0

    @pytest.mark.asyncio
    async def test_plain_update_refused_on_versioned_tables(self, sql_store):
        row = await _file(sql_store)
        with pytest.raises(StorageError):
            await sql_store.update(Tables.ETL_FILE, row["id"], {"filename": "x.csv"})

    @pytest.mark.asyncio
    async def test_unique_key_violation(self, sql_store):
        await sql_store.insert(Tables.DIM_CURRAL, {"organization_id": "T1", "code": "C001"})
        with pytest.raises(IntegrityConflictError):
            await sql_store.insert(Tables.DIM_CURRAL, {"organization_id": "T1", "code": "C001"})

        # The session is still usable after the rollback
        assert await sql_store.count(Tables.DIM_CURRAL) == 1

    @pytest.mark.asyncio
    async def test_unknown_table(self, sql_store):
        with pytest.raises(StorageError):
            await sql_store.get("no_such_table", "1")


class TestConditionalUpdate:
    """Test compare-and-swap semantics"""

    @pytest.mark.asyncio
    async def test_version_bump_and_stale_version(self, sql_store):
        row = await _file(sql_store)

        moved = await sql_store.conditional_update(Tables.ETL_FILE, row["id"], 1, {"current_state": "parsing"})
        assert moved["version"] == 2
        assert moved["current_state"] == "parsing"

        assert await sql_store.conditional_update(Tables.ETL_FILE, row["id"], 1, {"current_state": "parsed"}) is None
        assert (await sql_store.get(Tables.ETL_FILE, row["id"]))["current_state"] == "parsing"

    @pytest.mark.asyncio
    async def test_invalid_edge_raises(self, sql_store):
        row = await _file(sql_store)

        with pytest.raises(StateTransitionError) as exc_info:
            await sql_store.conditional_update(Tables.ETL_FILE, row["id"], 1, {"current_state": "loaded"})

        assert exc_info.value.context["from_state"] == "uploaded"
        assert exc_info.value.context["to_state"] == "loaded"
        assert (await sql_store.get(Tables.ETL_FILE, row["id"]))["version"] == 1

    @pytest.mark.asyncio
    async def test_non_state_update(self, sql_store):
        row = await _file(sql_store)
        locked = await sql_store.conditional_update(Tables.ETL_FILE, row["id"], 1, {"locked_by": "w1"})
        assert locked["locked_by"] == "w1"
        assert locked["version"] == 2

    @pytest.mark.asyncio
    async def test_unversioned_table_rejected(self, sql_store):
        with pytest.raises(StorageError):
            await sql_store.conditional_update(Tables.DIM_CURRAL, "x", 1, {"code": "C2"})


class TestAtomicUpsert:
    """Test the SQLite ON CONFLICT path"""

    @pytest.mark.asyncio
    async def test_insert_update_skip(self, sql_store):
        def fact(row_id, kg_real):
            return {
                "id": row_id,
                "organization_id": "T1",
                "natural_key": "T1_2024-01-15_NA_NA_C001_NA",
                "data_ref": date(2024, 1, 15),
                "kg_real": kg_real,
            }

        conflict = ("organization_id", "natural_key")
        compare = ("kg_real",)

        first = await sql_store.atomic_upsert(Tables.FATO_DESVIO, fact("id-1", 980.0), conflict, compare)
        assert first.operation == "inserted"

        same = await sql_store.atomic_upsert(Tables.FATO_DESVIO, fact("id-2", 980.0), conflict, compare)
        assert same.operation == "skipped"

        changed = await sql_store.atomic_upsert(Tables.FATO_DESVIO, fact("id-3", 950.0), conflict, compare)
        assert changed.operation == "updated"
        assert changed.row["id"] == "id-1"
        assert changed.row["kg_real"] == 950.0

        assert await sql_store.count(Tables.FATO_DESVIO) == 1
