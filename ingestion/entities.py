"""
Row builders for files and runs.

Shared by the orchestrator and by forced reprocessing so that every file
and run starts with the same initial state, history and counters.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from core.exceptions import IntegrityConflictError
from ingestion.state_machine import ETLStateMachine
from ingestion.storage.base import StoragePort, Tables, where
from models.base import ETLState, generate_id

logger = logging.getLogger(__name__)

RUN_NUMBER_ATTEMPTS = 5


def _lifecycle_columns(now: datetime) -> Dict[str, Any]:
    return {
        "current_state": ETLState.UPLOADED.value,
        "version": 1,
        "locked_by": None,
        "locked_at": None,
        "lock_expires_at": None,
        "processing_by": None,
        "processing_started_at": None,
        "retry_count": 0,
        "next_retry_at": None,
        "max_retries_exceeded": False,
        "last_error_category": None,
        "error_message": None,
        "error_details": None,
        "created_at": now,
        "updated_at": now,
    }


def new_file_row(
    organization_id: str,
    filename: str,
    checksum: str,
    uploaded_by: Optional[str] = None,
    filepath: Optional[str] = None,
    file_size: Optional[int] = None,
    mime_type: Optional[str] = None,
    fact_type: Optional[str] = None,
    checksum_algorithm: str = "sha256",
    metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    now = datetime.utcnow()
    return {
        "id": generate_id(),
        "organization_id": organization_id,
        "filename": filename,
        "filepath": filepath,
        "file_size": file_size,
        "mime_type": mime_type,
        "fact_type": fact_type,
        "checksum": checksum,
        "checksum_algorithm": checksum_algorithm,
        "uploaded_by": uploaded_by,
        "uploaded_at": now,
        "state_history": [
            ETLStateMachine.build_history_entry(
                ETLState.UPLOADED, actor=uploaded_by, message="File uploaded", timestamp=now
            )
        ],
        "metadata": metadata or {},
        **_lifecycle_columns(now),
    }


def new_run_row(
    file_row: Dict[str, Any],
    run_number: int,
    started_by: Optional[str] = None,
    skip_validation: bool = False,
    metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    now = datetime.utcnow()
    return {
        "id": generate_id(),
        "file_id": file_row["id"],
        "organization_id": file_row["organization_id"],
        "run_number": run_number,
        "state_history": [
            ETLStateMachine.build_history_entry(
                ETLState.UPLOADED, actor=started_by, message=f"Run {run_number} started", timestamp=now
            )
        ],
        "records_total": 0,
        "records_processed": 0,
        "records_failed": 0,
        "records_inserted": 0,
        "records_updated": 0,
        "records_skipped": 0,
        "records_pending": 0,
        "skip_validation": skip_validation,
        "started_by": started_by,
        "started_at": now,
        "completed_at": None,
        "approved_by": None,
        "approved_at": None,
        "metadata": metadata or {},
        **_lifecycle_columns(now),
    }


async def create_file(store: StoragePort, **kwargs: Any) -> Dict[str, Any]:
    row = await store.insert(Tables.ETL_FILE, new_file_row(**kwargs))
    logger.info(f"Created ETL file {row['id']} ({row['filename']}) for {row['organization_id']}")
    return row


async def create_run(
    store: StoragePort,
    file_row: Dict[str, Any],
    started_by: Optional[str] = None,
    skip_validation: bool = False,
    metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Insert the next run for a file.

    Two creators racing for the same run_number collide on the
    (file_id, run_number) unique key; the loser recomputes and retries.
    """
    for _ in range(RUN_NUMBER_ATTEMPTS):
        latest = await store.query(
            Tables.ETL_RUN, where(file_id=file_row["id"]), order_by="run_number", descending=True, limit=1
        )
        run_number = latest[0]["run_number"] + 1 if latest else 1
        try:
            row = await store.insert(
                Tables.ETL_RUN,
                new_run_row(file_row, run_number, started_by, skip_validation, metadata)
            )
        except IntegrityConflictError:
            logger.info(f"Run number {run_number} taken for file {file_row['id']}, retrying")
            continue
        logger.info(f"Created run {run_number} ({row['id']}) for file {file_row['id']}")
        return row

    raise IntegrityConflictError(
        f"Could not allocate a run number after {RUN_NUMBER_ATTEMPTS} attempts",
        context={"table_name": Tables.ETL_RUN, "file_id": file_row["id"]}
    )
