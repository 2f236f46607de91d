"""
Unit tests for the idempotent upsert engine
"""

import pytest

from core.exceptions import StorageError, UpsertError
from ingestion.loaders.upsert_engine import UpsertEngine
from ingestion.storage.base import Tables
from models.base import DimensionType, FactType

DESVIO = FactType.DESVIO_CARREGAMENTO


def _record(**overrides):
    record = {
        "data_ref": "2024-01-15",
        "equipamento": "BAHMAN",
        "curral_codigo": "C001",
        "kg_planejado": 1000,
        "kg_real": 980,
    }
    record.update(overrides)
    return record


async def _register_known(lookup):
    await lookup.register_dimension(DimensionType.EQUIPAMENTO, "BAHMAN", "T1")
    await lookup.register_dimension(DimensionType.CURRAL, "C001", "T1")


class TestUpsertRecord:
    """Test insert / update / skip decisions"""

    @pytest.mark.asyncio
    async def test_insert_update_skip(self, store, lookup, engine):
        await _register_known(lookup)

        inserted = await engine.upsert_record(_record(), DESVIO, "T1", "file-1")
        assert inserted.action == "inserted"
        assert inserted.natural_key == "T1_2024-01-15_NA_BAHMAN_C001_NA"

        updated = await engine.upsert_record(_record(kg_real=950), DESVIO, "T1", "file-2")
        assert updated.action == "updated"
        assert updated.record_id == inserted.record_id
        assert "kg_real" in updated.changed_fields
        assert "desvio_kg" in updated.changed_fields

        skipped = await engine.upsert_record(_record(kg_real=950), DESVIO, "T1", "file-3")
        assert skipped.action == "skipped"
        assert skipped.reason == "No changes detected"

        rows = store.rows(Tables.FATO_DESVIO)
        assert len(rows) == 1
        assert rows[0]["kg_real"] == 950
        assert rows[0]["desvio_kg"] == -50
        assert rows[0]["source_file_id"] == "file-2"

    @pytest.mark.asyncio
    async def test_natural_key_ignores_case_and_spacing(self, store, lookup, engine):
        await _register_known(lookup)

        first = await engine.upsert_record(_record(equipamento=" bahman ", curral_codigo="c001"), DESVIO, "T1")
        second = await engine.upsert_record(_record(equipamento="BAHMAN", curral_codigo=" C001 "), DESVIO, "T1")

        assert first.natural_key == second.natural_key
        assert second.action == "skipped"
        assert len(store.rows(Tables.FATO_DESVIO)) == 1

    @pytest.mark.asyncio
    async def test_same_key_in_other_tenant_is_separate(self, store, lookup, engine):
        await _register_known(lookup)

        await engine.upsert_record(_record(), DESVIO, "T1")
        other = await engine.upsert_record(_record(), DESVIO, "T2")

        assert other.operation == "inserted"
        assert other.natural_key.startswith("T2_")
        assert len(store.rows(Tables.FATO_DESVIO)) == 2

    @pytest.mark.asyncio
    async def test_unknown_dimension_creates_one_pending_entry(self, store, lookup, engine):
        await lookup.register_dimension(DimensionType.EQUIPAMENTO, "BAHMAN", "T1")

        first = await engine.upsert_record(_record(curral_codigo="CUR-999"), DESVIO, "T1", "file-1")
        second = await engine.upsert_record(
            _record(curral_codigo="cur-999", data_ref="2024-01-16"), DESVIO, "T1", "file-1"
        )

        assert first.action == "pending"
        assert first.operation == "inserted"
        assert [(p.type, p.code) for p in first.pending_entries] == [("curral", "CUR-999")]
        assert second.pending_entries[0].pending_id == first.pending_entries[0].pending_id

        pending = store.rows(Tables.PENDING_DIMENSION)
        assert len(pending) == 1
        assert pending[0]["status"] == "pending"

        facts = store.rows(Tables.FATO_DESVIO)
        assert {row["curral_id"] for row in facts} == {pending[0]["id"]}

    @pytest.mark.asyncio
    async def test_unchanged_record_with_pending_dimension_is_skipped(self, store, lookup, engine):
        await lookup.register_dimension(DimensionType.EQUIPAMENTO, "BAHMAN", "T1")
        record = _record(curral_codigo="CUR-999")

        first = await engine.upsert_record(record, DESVIO, "T1", "file-1")
        again = await engine.upsert_record(record, DESVIO, "T1", "file-1")

        assert first.action == "pending"
        assert again.action == "skipped"
        assert again.operation == "skipped"
        assert again.reason == "No changes detected"
        assert again.pending_entries[0].pending_id == first.pending_entries[0].pending_id

        batch = await engine.upsert_batch([record], DESVIO, "T1", "file-1")
        assert batch.skipped == 1
        assert batch.pending == 0

    @pytest.mark.asyncio
    async def test_row_deleted_before_update(self, store, lookup, engine):
        await _register_known(lookup)
        await engine.upsert_record(_record(), DESVIO, "T1")

        async def row_deleted(table, record_id, updates):
            return None

        store.update = row_deleted
        with pytest.raises(UpsertError) as exc_info:
            await engine.upsert_record(_record(kg_real=900), DESVIO, "T1")
        assert exc_info.value.context["natural_key"] == "T1_2024-01-15_NA_BAHMAN_C001_NA"

        batch = await engine.upsert_batch([_record(kg_real=900)], DESVIO, "T1")
        assert batch.updated == 0
        assert batch.total_processed == 0
        assert len(batch.errors) == 1
        assert "disappeared" in batch.errors[0].message

    @pytest.mark.asyncio
    async def test_store_rejection_becomes_upsert_error(self, store, lookup, engine):
        await _register_known(lookup)

        async def broken_insert(table, row):
            raise StorageError("disk full")

        store.insert = broken_insert
        with pytest.raises(UpsertError) as exc_info:
            await engine.upsert_record(_record(), DESVIO, "T1")

        assert exc_info.value.context["natural_key"] == "T1_2024-01-15_NA_BAHMAN_C001_NA"


class TestNativeUpsert:
    """Test the single-statement upsert path"""

    @pytest.mark.asyncio
    async def test_native_path_reports_the_same_actions(self, store, lookup):
        await _register_known(lookup)
        engine = UpsertEngine(store, lookup, use_native_upsert=True)

        assert (await engine.upsert_record(_record(), DESVIO, "T1")).action == "inserted"
        skipped = await engine.upsert_record(_record(), DESVIO, "T1")
        assert skipped.action == "skipped"
        assert skipped.reason == "No changes detected"
        assert (await engine.upsert_record(_record(kg_real=900), DESVIO, "T1")).action == "updated"

        rows = store.rows(Tables.FATO_DESVIO)
        assert len(rows) == 1
        assert rows[0]["kg_real"] == 900


class TestBatches:
    """Test batch accounting and integrity"""

    @pytest.mark.asyncio
    async def test_batch_counts_and_error_isolation(self, store, lookup, engine):
        await _register_known(lookup)
        records = [
            _record(),
            _record(turno="TARDE"),
            _record(curral_codigo=None),
            _record(turno="NOITE", kg_real=-5),
            _record(curral_codigo="C777"),
        ]

        result = await engine.upsert_batch(records, DESVIO, "T1", "file-1")

        assert result.batches == 3
        assert result.total_processed == 3
        assert result.inserted == 3
        assert result.pending == 1
        assert len(result.errors) == 2
        assert [e.row_index for e in result.errors] == [2, 3]
        assert result.errors[1].natural_key == "T1_2024-01-15_NOITE_BAHMAN_C001_NA"

        again = await engine.upsert_batch(records, DESVIO, "T1", "file-1")
        assert again.inserted == 0
        assert again.skipped == 3
        assert len(store.rows(Tables.FATO_DESVIO)) == 3

    @pytest.mark.asyncio
    async def test_verify_batch_integrity(self, store, lookup, engine):
        await _register_known(lookup)
        loaded = await engine.upsert_record(_record(), DESVIO, "T1")

        report = await engine.verify_batch_integrity(
            "T1", [loaded.natural_key, loaded.natural_key, "T1_2024-01-15_NA_NA_C404_NA"], DESVIO
        )

        assert report.total_expected == 2
        assert report.total_found == 1
        assert report.missing_keys == ["T1_2024-01-15_NA_NA_C404_NA"]
        assert not report.is_complete

    @pytest.mark.asyncio
    async def test_records_by_file(self, store, lookup, engine):
        await _register_known(lookup)
        await engine.upsert_batch([_record(), _record(turno="TARDE")], DESVIO, "T1", "file-1")

        assert len(await engine.get_records_by_file_id("file-1", DESVIO)) == 2
        assert await engine.get_record_count("T1", DESVIO) == 2
        assert await engine.get_record_count("T2", DESVIO) == 0
