"""
Unit tests for checksums, duplicate detection and forced reprocessing
"""

from datetime import datetime, timedelta

import pytest

from ingestion.audit import AuditLogger
from ingestion.checksum import ChecksumService, calculate_checksum
from ingestion.entities import create_file
from ingestion.storage.base import Tables
from schemas.etl import ReprocessingOptions

ABC_SHA256 = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestChecksum:
    """Test digest calculation"""

    def test_sha256_of_known_content(self):
        assert calculate_checksum(b"abc") == ABC_SHA256

    def test_md5_supported(self):
        assert calculate_checksum(b"abc", "MD5") == "900150983cd24fb0d6963f7d28e17f72"

    def test_unsupported_algorithm(self):
        with pytest.raises(ValueError):
            calculate_checksum(b"abc", "crc32")

    @pytest.mark.asyncio
    async def test_file_checksum_matches_content_checksum(self, store, tmp_path):
        path = tmp_path / "upload.csv"
        path.write_bytes(b"abc")
        service = ChecksumService(store)

        assert await service.calculate_file_checksum(str(path)) == ABC_SHA256


class TestDuplicateDetection:
    """Test tenant-scoped duplicate lookups"""

    @pytest.mark.asyncio
    async def test_no_duplicate(self, store):
        result = await ChecksumService(store).check_for_duplicate(ABC_SHA256, "T1")

        assert not result.is_duplicate
        assert result.allow_reprocessing
        assert result.reason == "No duplicate files found"

    @pytest.mark.asyncio
    async def test_duplicate_is_scoped_to_organization(self, store):
        original = await create_file(store, organization_id="T1", filename="a.csv", checksum=ABC_SHA256)
        service = ChecksumService(store)

        same_org = await service.check_for_duplicate(ABC_SHA256, "T1")
        other_org = await service.check_for_duplicate(ABC_SHA256, "T2")

        assert same_org.is_duplicate
        assert same_org.original_file.id == original["id"]
        assert same_org.original_file.current_state == "uploaded"
        assert not other_org.is_duplicate

    @pytest.mark.asyncio
    async def test_exclude_file_id(self, store):
        original = await create_file(store, organization_id="T1", filename="a.csv", checksum=ABC_SHA256)
        result = await ChecksumService(store).check_for_duplicate(ABC_SHA256, "T1", exclude_file_id=original["id"])

        assert not result.is_duplicate

    def test_reprocessing_rules_by_state(self, store):
        service = ChecksumService(store)
        now = datetime.utcnow()

        assert service.should_allow_reprocessing({"current_state": "failed", "uploaded_at": now})
        assert service.should_allow_reprocessing({"current_state": "cancelled", "uploaded_at": now})
        assert service.should_allow_reprocessing({"current_state": "parsing", "uploaded_at": now})
        assert not service.should_allow_reprocessing({"current_state": "loaded", "uploaded_at": now})
        assert not service.should_allow_reprocessing({"current_state": "approved", "uploaded_at": now})

    def test_old_loaded_upload_may_be_reprocessed(self, store):
        service = ChecksumService(store)
        long_ago = datetime.utcnow() - timedelta(days=service.reprocess_after_days + 1)

        assert service.should_allow_reprocessing({"current_state": "loaded", "uploaded_at": long_ago})


class TestForcedReprocessing:
    """Test operator-forced reprocessing of duplicates"""

    @pytest.mark.asyncio
    async def test_creates_file_run_and_log(self, store):
        audit = AuditLogger(store)
        service = ChecksumService(store, audit)
        original = await create_file(
            store, organization_id="T1", filename="a.csv", checksum=ABC_SHA256,
            filepath="/tmp/a.csv", fact_type="desvio_carregamento",
        )

        decision = await service.handle_forced_reprocessing(
            ABC_SHA256, "T1", ReprocessingOptions(forced_reprocessing=True, user_id="ana", skip_validation=True)
        )

        assert decision.allowed
        assert decision.original_file_id == original["id"]
        new_file = await store.get(Tables.ETL_FILE, decision.new_file_id)
        new_run = await store.get(Tables.ETL_RUN, decision.new_run_id)
        assert new_file["filepath"] == "/tmp/a.csv"
        assert new_file["fact_type"] == "desvio_carregamento"
        assert new_file["metadata"]["reprocessing_of"] == original["id"]
        assert new_run["skip_validation"] is True
        assert new_run["run_number"] == 1

        log = await service.get_reprocessing_log("T1", ABC_SHA256)
        assert len(log) == 1
        assert log[0]["id"] == decision.reprocessing_log_id
        assert log[0]["reason"] == "Manual forced reprocessing"
        assert log[0]["forced_by"] == "ana"

        trail = await audit.get_audit_trail("T1", action="forced_reprocessing")
        assert len(trail) == 1

        history = await service.get_checksum_history(ABC_SHA256, "T1")
        assert {row["id"] for row in history} == {original["id"], new_file["id"]}

    @pytest.mark.asyncio
    async def test_not_requested(self, store):
        decision = await ChecksumService(store).handle_forced_reprocessing(
            ABC_SHA256, "T1", ReprocessingOptions()
        )

        assert not decision.allowed
        assert store.rows(Tables.REPROCESSING_LOG) == []

    @pytest.mark.asyncio
    async def test_without_duplicate_processes_normally(self, store):
        decision = await ChecksumService(store).handle_forced_reprocessing(
            ABC_SHA256, "T1", ReprocessingOptions(forced_reprocessing=True)
        )

        assert decision.allowed
        assert decision.new_file_id is None
        assert store.rows(Tables.ETL_FILE) == []
