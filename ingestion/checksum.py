# ============================================================================
# File: ingestion/checksum.py
# Description: Content digests, duplicate detection and forced reprocessing
# ============================================================================
"""
Checksum service.

Byte-identical uploads are detected per organization by content digest.
A duplicate is a decision point, not an error: the caller may block the
upload, proceed with a warning, or force reprocessing, which creates a
fresh file/run pair and records the operator's reason.
"""

import asyncio
import hashlib
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.config import settings
from core.exceptions import EntityNotFoundError
from ingestion.audit import AuditLogger
from ingestion.entities import create_file, create_run
from ingestion.storage.base import Condition, StoragePort, Tables, where
from models.base import ETLState, LogLevel, generate_id
from schemas.etl import (
    DuplicateDetectionResult,
    OriginalFileInfo,
    ReprocessingDecision,
    ReprocessingOptions,
)

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("sha256", "md5")
CHUNK_SIZE = 1024 * 1024

# States whose data is considered final for duplicate purposes
REPROCESS_BLOCKED_STATES = {ETLState.LOADED.value, ETLState.APPROVED.value}
REPROCESS_ALLOWED_STATES = {ETLState.FAILED.value, ETLState.CANCELLED.value}


def calculate_checksum(content: bytes, algorithm: str = "sha256") -> str:
    """Hex digest of `content` (sha256 by default, md5 for legacy data)."""
    algorithm = algorithm.lower()
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
    return hashlib.new(algorithm, content).hexdigest()


def _hash_file(path: Path, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ChecksumService:
    """
    Duplicate detection and forced reprocessing.

    Responsibilities:
    - Digest uploaded content (bytes or files on disk)
    - Find earlier uploads of the same digest within an organization
    - Decide whether reprocessing a duplicate is reasonable
    - Create the new file/run pair for a forced reprocess and log it
    """

    def __init__(
        self,
        store: StoragePort,
        audit: Optional[AuditLogger] = None,
        algorithm: Optional[str] = None,
        reprocess_after_days: Optional[int] = None
    ):
        self.store = store
        self.audit = audit or AuditLogger(store)
        self.algorithm = (algorithm or settings.CHECKSUM_ALGORITHM).lower()
        self.reprocess_after_days = (
            reprocess_after_days if reprocess_after_days is not None else settings.REPROCESS_ALLOW_AFTER_DAYS
        )

    def calculate_checksum(self, content: bytes, algorithm: Optional[str] = None) -> str:
        return calculate_checksum(content, algorithm or self.algorithm)

    async def calculate_file_checksum(self, path: str, algorithm: Optional[str] = None) -> str:
        """Stream a file from disk without loading it whole."""
        algorithm = (algorithm or self.algorithm).lower()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported checksum algorithm: {algorithm}")
        return await asyncio.to_thread(_hash_file, Path(path), algorithm)

    # --------------------------------------------------
    # Duplicate detection
    # --------------------------------------------------

    def should_allow_reprocessing(self, file_row: Dict[str, Any]) -> bool:
        state = file_row["current_state"]
        if state in REPROCESS_ALLOWED_STATES:
            return True
        uploaded_at = file_row.get("uploaded_at")
        if uploaded_at and uploaded_at < datetime.utcnow() - timedelta(days=self.reprocess_after_days):
            return True
        if state in REPROCESS_BLOCKED_STATES:
            return False
        # In-flight originals may still fail; let the operator decide
        return True

    async def check_for_duplicate(
        self,
        checksum: str,
        organization_id: str,
        exclude_file_id: Optional[str] = None
    ) -> DuplicateDetectionResult:
        """
        Look for an earlier upload of `checksum` by the same organization.

        Dedup is tenant scoped: the same bytes uploaded by another
        organization are never reported.
        """
        conditions = where(checksum=checksum, organization_id=organization_id)
        if exclude_file_id:
            conditions.append(Condition("id", "ne", exclude_file_id))

        matches = await self.store.query(
            Tables.ETL_FILE, conditions, order_by="uploaded_at", descending=True, limit=1
        )
        if not matches:
            return DuplicateDetectionResult(
                is_duplicate=False,
                allow_reprocessing=True,
                reason="No duplicate files found",
            )

        original = matches[0]
        allow = self.should_allow_reprocessing(original)
        logger.info(
            f"Duplicate checksum {checksum[:12]}... for {organization_id}: "
            f"original file {original['id']} in state {original['current_state']}"
        )
        return DuplicateDetectionResult(
            is_duplicate=True,
            original_file=OriginalFileInfo(
                id=original["id"],
                filename=original["filename"],
                uploaded_at=original["uploaded_at"],
                uploaded_by=original.get("uploaded_by"),
                current_state=original["current_state"],
            ),
            allow_reprocessing=allow,
            reason=(
                "Duplicate found but reprocessing allowed"
                if allow else "Duplicate found - reprocessing blocked"
            ),
        )

    # --------------------------------------------------
    # Forced reprocessing
    # --------------------------------------------------

    async def handle_forced_reprocessing(
        self,
        checksum: str,
        organization_id: str,
        options: ReprocessingOptions
    ) -> ReprocessingDecision:
        """
        Reprocess a duplicate upload on explicit operator request.

        Creates a new ETLFile (copy of the original's upload metadata) and a
        first ETLRun for it, flags the run to skip business-rule validation
        when asked, and appends a reprocessing log entry.
        """
        if not options.forced_reprocessing:
            return ReprocessingDecision(allowed=False, reason="Forced reprocessing not requested")

        duplicate = await self.check_for_duplicate(checksum, organization_id)
        if not duplicate.is_duplicate:
            return ReprocessingDecision(allowed=True, reason="No duplicate found - processing normally")

        original = await self.store.get(Tables.ETL_FILE, duplicate.original_file.id)
        if original is None:
            raise EntityNotFoundError("etl_file", duplicate.original_file.id)

        reason = options.reason or "Manual forced reprocessing"
        new_file = await create_file(
            self.store,
            organization_id=organization_id,
            filename=original["filename"],
            checksum=checksum,
            uploaded_by=options.user_id,
            filepath=original.get("filepath"),
            file_size=original.get("file_size"),
            mime_type=original.get("mime_type"),
            fact_type=original.get("fact_type"),
            checksum_algorithm=original.get("checksum_algorithm") or self.algorithm,
            metadata={"reprocessing_of": original["id"], "reprocessing_reason": reason},
        )
        new_run = await create_run(
            self.store,
            new_file,
            started_by=options.user_id,
            skip_validation=options.skip_validation,
            metadata={"forced_reprocessing": True, "original_file_id": original["id"]},
        )

        log_entry = await self.store.insert(Tables.REPROCESSING_LOG, {
            "id": generate_id(),
            "organization_id": organization_id,
            "checksum": checksum,
            "original_file_id": original["id"],
            "new_file_id": new_file["id"],
            "new_run_id": new_run["id"],
            "forced_by": options.user_id,
            "reason": reason,
            "skip_validation": options.skip_validation,
            "outcome": "new_file_created",
            "created_at": datetime.utcnow(),
        })

        await self.audit.log_event(
            LogLevel.WARNING,
            "forced_reprocessing",
            f"Forced reprocessing of {original['filename']} approved: {reason}",
            organization_id,
            details={
                "checksum": checksum,
                "original_file_id": original["id"],
                "skip_validation": options.skip_validation,
                "original_state": original["current_state"],
            },
            file_id=new_file["id"],
            run_id=new_run["id"],
            user_id=options.user_id,
        )

        return ReprocessingDecision(
            allowed=True,
            reason="Forced reprocessing approved",
            original_file_id=original["id"],
            new_file_id=new_file["id"],
            new_run_id=new_run["id"],
            reprocessing_log_id=log_entry["id"],
        )

    # --------------------------------------------------
    # History / maintenance
    # --------------------------------------------------

    async def get_checksum_history(self, checksum: str, organization_id: str) -> List[Dict[str, Any]]:
        """Every upload of this digest by the organization, newest first."""
        return await self.store.query(
            Tables.ETL_FILE,
            where(checksum=checksum, organization_id=organization_id),
            order_by="uploaded_at",
            descending=True,
        )

    async def get_reprocessing_log(self, organization_id: str, checksum: Optional[str] = None) -> List[Dict[str, Any]]:
        conditions = where(organization_id=organization_id)
        if checksum:
            conditions.append(Condition("checksum", "eq", checksum))
        return await self.store.query(
            Tables.REPROCESSING_LOG, conditions, order_by="created_at", descending=True
        )

    async def cleanup_old_reprocessing_records(self, organization_id: str, days_to_keep: int = 90) -> int:
        cutoff = datetime.utcnow() - timedelta(days=days_to_keep)
        deleted = await self.store.delete_where(
            Tables.REPROCESSING_LOG,
            where(organization_id=organization_id) + [Condition("created_at", "lt", cutoff)],
        )
        await self.audit.log_event(
            LogLevel.INFO,
            "reprocessing_log_cleanup",
            f"Removed {deleted} reprocessing log entries older than {days_to_keep} days",
            organization_id,
            details={"deleted_count": deleted, "days_to_keep": days_to_keep},
        )
        return deleted
