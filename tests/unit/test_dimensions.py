"""
Unit tests for dimension lookups and pending placeholders
"""

import asyncio

import pytest

from core.exceptions import EntityNotFoundError, StateTransitionError
from ingestion.loaders.dimensions import DimensionCache, StoreDimensionLookup, normalize_code
from ingestion.storage.base import Tables
from ingestion.storage.memory import InMemoryStore
from models.base import DimensionType


class TestLookup:
    """Test code to id resolution"""

    def test_normalize_code(self):
        assert normalize_code("  cur   01 ") == "CUR 01"
        assert normalize_code("") is None
        assert normalize_code(None) is None

    @pytest.mark.asyncio
    async def test_lookup_registered_code(self, store, lookup):
        row = await lookup.register_dimension(DimensionType.CURRAL, "c001", "T1", name="Curral 1")

        assert row["code"] == "C001"
        assert await lookup.lookup_id(DimensionType.CURRAL, " c001 ", "T1") == row["id"]
        assert await lookup.lookup_curral_id("C001", "T1") == row["id"]
        assert await lookup.lookup_id(DimensionType.CURRAL, "C001", "T2") is None
        assert await lookup.lookup_dieta_id("C001", "T1") is None
        assert await lookup.lookup_id(DimensionType.CURRAL, None, "T1") is None

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, store, lookup):
        first = await lookup.register_dimension(DimensionType.DIETA, "Engorda", "T1")
        second = await lookup.register_dimension(DimensionType.DIETA, "ENGORDA", "T1")

        assert first["id"] == second["id"]
        assert len(store.rows(Tables.DIM_DIETA)) == 1

    @pytest.mark.asyncio
    async def test_cache_is_only_advisory(self, store):
        cache = DimensionCache()
        row = await StoreDimensionLookup(store, cache).register_dimension(DimensionType.TRATEIRO, "Joao", "T1")
        cache.clear()

        fresh = StoreDimensionLookup(store, cache)
        assert await fresh.lookup_trateiro_id("JOAO", "T1") == row["id"]
        assert len(cache) == 1


class TestPendingEntries:
    """Test placeholder lifecycle"""

    @pytest.mark.asyncio
    async def test_concurrent_creates_share_one_entry(self):
        store = InMemoryStore()
        first = StoreDimensionLookup(store)
        second = StoreDimensionLookup(store)

        ids = await asyncio.gather(
            first.create_pending(DimensionType.CURRAL, "cur-999", "T1", "file-1"),
            second.create_pending(DimensionType.CURRAL, "CUR-999", "T1", "file-2"),
        )

        assert ids[0] == ids[1]
        rows = store.rows(Tables.PENDING_DIMENSION)
        assert len(rows) == 1
        assert rows[0]["code"] == "CUR-999"

    @pytest.mark.asyncio
    async def test_blank_code_rejected(self, lookup):
        with pytest.raises(ValueError):
            await lookup.create_pending(DimensionType.CURRAL, "  ", "T1")

    @pytest.mark.asyncio
    async def test_resolve_registers_new_dimension(self, store, lookup):
        pending_id = await lookup.create_pending_curral("CUR-999", "T1")

        resolved = await lookup.resolve_pending_entry(DimensionType.CURRAL, pending_id, resolved_by="ops")

        assert resolved["status"] == "resolved"
        assert resolved["resolved_by"] == "ops"
        dim_id = resolved["resolved_value"]
        assert (await store.get(Tables.DIM_CURRAL, dim_id))["code"] == "CUR-999"
        assert await lookup.lookup_curral_id("CUR-999", "T1") == dim_id
        assert await lookup.get_pending_entries("T1") == []

    @pytest.mark.asyncio
    async def test_resolve_to_existing_dimension(self, lookup):
        target = await lookup.register_dimension(DimensionType.CURRAL, "C999", "T1")
        pending_id = await lookup.create_pending_curral("CUR-999", "T1")

        resolved = await lookup.resolve_pending_entry(DimensionType.CURRAL, pending_id, target["id"], "ops")

        assert resolved["resolved_value"] == target["id"]
        assert await lookup.lookup_curral_id("CUR-999", "T1") == target["id"]

    @pytest.mark.asyncio
    async def test_resolve_errors(self, lookup):
        pending_id = await lookup.create_pending_curral("CUR-999", "T1")

        with pytest.raises(EntityNotFoundError):
            await lookup.resolve_pending_entry(DimensionType.CURRAL, "missing")
        with pytest.raises(EntityNotFoundError):
            await lookup.resolve_pending_entry(DimensionType.CURRAL, pending_id, "no-such-dimension")
        with pytest.raises(ValueError):
            await lookup.resolve_pending_entry(DimensionType.DIETA, pending_id)

    @pytest.mark.asyncio
    async def test_reject_closes_entry(self, lookup):
        pending_id = await lookup.create_pending_dieta("Nova", "T1")

        rejected = await lookup.reject_pending_entry(pending_id, "ops", "typo in export")

        assert rejected["status"] == "rejected"
        assert rejected["notes"] == "typo in export"
        with pytest.raises(StateTransitionError):
            await lookup.reject_pending_entry(pending_id, "ops")

        # A new occurrence of the code opens a fresh placeholder
        reopened = await lookup.create_pending_dieta("NOVA", "T1")
        assert reopened != pending_id

    @pytest.mark.asyncio
    async def test_list_filters_by_dimension(self, lookup):
        await lookup.create_pending_curral("CUR-1", "T1")
        await lookup.create_pending_trateiro("Pedro", "T1")
        await lookup.create_pending_curral("CUR-2", "T2")

        assert len(await lookup.get_pending_entries("T1")) == 2
        trateiros = await lookup.get_pending_entries("T1", DimensionType.TRATEIRO)
        assert [e["code"] for e in trateiros] == ["PEDRO"]
