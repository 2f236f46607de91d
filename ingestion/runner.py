# ============================================================================
# File: ingestion/runner.py
# Description: Drives one ETL run from parsing through loading
# ============================================================================
"""
ETL Runner - executes a run end to end.

This module provides:
- Lock-guarded processing (one worker per run)
- Parse -> validate -> (approval) -> load with a transition per stage
- Per-record failure isolation during validation and load
- Failure hand-off to the retry subsystem
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import (
    BusinessRuleError,
    LockLostError,
    ParseError,
    SchemaValidationError,
    UpsertError,
)
from ingestion.loaders.dimensions import DimensionCache, StoreDimensionLookup
from ingestion.loaders.facts import FactDefinition, get_fact_definition
from ingestion.loaders.upsert_engine import UpsertEngine, describe_validation_error
from ingestion.locking import generate_lock_id
from ingestion.parsers.csv_parser import CSVRecordParser, RecordParser, infer_fact_type
from ingestion.service import ETLStateMachineService
from ingestion.storage.base import Tables
from ingestion.storage.sqlalchemy_store import SqlAlchemyStore
from models.base import DuplicatePolicy, EntityType, ETLState
from schemas.etl import RetryResult, UploadDecision

logger = logging.getLogger(__name__)

MAX_ERROR_SAMPLES = 50

RunProcessor = Callable[[str], Awaitable[RetryResult]]


class ETLRunner:
    """
    Run executor.

    Responsibilities:
    - Take the run lock and stamp the worker
    - Parse and validate the file, recording counters per stage
    - Stop at AWAITING_APPROVAL when approval is required
    - Load through the upsert engine and verify every key landed
    - Route failures through the retry service
    """

    def __init__(
        self,
        service: ETLStateMachineService,
        engine: UpsertEngine,
        parser: Optional[RecordParser] = None,
        worker_id: Optional[str] = None
    ):
        self.service = service
        self.engine = engine
        self.parser = parser or CSVRecordParser()
        self.worker_id = worker_id or f"worker-{generate_lock_id()}"

    # --------------------------------------------------
    # Entry points
    # --------------------------------------------------

    async def process_run(self, run_id: str) -> RetryResult:
        """
        Process a run under its lock and the retry policy.

        Raises:
            StateTransitionError: The run cannot start processing from its
                current state (nothing is recorded against it)
        """
        run = await self.service.get_run(run_id)
        self.service.entry_state(run)

        lock_id = generate_lock_id()
        acquired = await self.service.locking.acquire_lock(
            Tables.ETL_RUN,
            run_id,
            lock_timeout_ms=self.service.config.stale_processing_timeout_ms,
            owner=lock_id,
        )
        if not acquired.success:
            logger.info(f"Run {run_id} is locked elsewhere: {acquired.error}")
            return RetryResult(
                success=False,
                error=acquired.error,
                attempt_number=run.get("retry_count", 0),
                reason="Run is being processed by another worker",
            )

        try:
            return await self.service.retry.execute_with_retry(
                lambda: self._execute(run_id, lock_id),
                EntityType.ETL_RUN,
                run_id,
                run["organization_id"],
                self.service.retry_config,
            )
        finally:
            await self.service.locking.release_lock(Tables.ETL_RUN, run_id, lock_id)

    async def ingest_file(
        self,
        organization_id: str,
        path: str,
        fact_type: Optional[str] = None,
        uploaded_by: Optional[str] = None,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.BLOCK,
        reason: Optional[str] = None,
        skip_validation: bool = False
    ) -> Tuple[UploadDecision, Optional[RetryResult]]:
        """Register a file from disk and process its first run."""
        file_path = Path(path)
        content = await asyncio.to_thread(file_path.read_bytes)
        decision = await self.service.register_upload(
            organization_id,
            file_path.name,
            content,
            uploaded_by=uploaded_by,
            fact_type=fact_type,
            mime_type="text/csv",
            duplicate_policy=duplicate_policy,
            reason=reason,
            skip_validation=skip_validation,
        )
        if not decision.created:
            return decision, None
        return decision, await self.process_run(decision.run.id)

    async def process_retry_queue(
        self,
        organization_id: Optional[str] = None,
        processor: Optional[RunProcessor] = None
    ) -> Dict[str, int]:
        """
        Process every run due for retry.

        Due runs are processed concurrently. Over a SQL store each run needs
        its own session, so pass `session_processor(...)`; by default this
        runner's own store is shared, which only suits the in-memory store.
        """
        return await self.service.process_retry_queue(processor or self.process_run, organization_id)

    # --------------------------------------------------
    # Execution
    # --------------------------------------------------

    async def _execute(self, run_id: str, lock_id: str) -> Dict[str, Any]:
        run = await self.service.start_processing(run_id, self.worker_id)
        try:
            result = await self._drive(run)
        except Exception as e:
            current = await self.service.get_run(run_id)
            if current.get("locked_by") != lock_id:
                # The sweep (or a later worker) owns the failure bookkeeping now
                raise LockLostError(run_id, lock_id, current.get("locked_by"), original_exception=e)
            logger.error(f"Run {run_id} failed in {type(e).__name__}: {e}")
            await self.service.mark_run_failed(run_id, e, actor=self.worker_id)
            await self.service.finish_processing(run_id)
            raise
        await self.service.finish_processing(run_id)
        return result

    async def _resolve_definition(self, file_row: Dict[str, Any], records: List[Dict[str, Any]]) -> FactDefinition:
        if file_row.get("fact_type"):
            return get_fact_definition(file_row["fact_type"])

        fact_type = infer_fact_type(list(records[0].keys()))
        if fact_type is None:
            raise SchemaValidationError(
                f"Cannot tell which fact type {file_row['filename']} holds",
                context={"file_id": file_row["id"], "columns": list(records[0].keys())}
            )
        await self.service.locking.update_with_lock(Tables.ETL_FILE, file_row["id"], {"fact_type": fact_type.value})
        logger.info(f"File {file_row['id']} inferred as {fact_type.value}")
        return get_fact_definition(fact_type)

    def validate_records(
        self,
        definition: FactDefinition,
        records: List[Dict[str, Any]],
        skip_business_rules: bool = False
    ) -> Tuple[List[BaseModel], List[Dict[str, Any]]]:
        """Split parsed rows into valid record models and error entries."""
        valid: List[BaseModel] = []
        errors: List[Dict[str, Any]] = []
        for index, raw in enumerate(records):
            try:
                record = definition.record_model(**raw)
                if not skip_business_rules:
                    definition.validate_business_rules(record)
            except PydanticValidationError as e:
                errors.append({"row_index": index, "message": describe_validation_error(e)})
                continue
            except BusinessRuleError as e:
                errors.append({"row_index": index, "message": e.message})
                continue
            valid.append(record)
        return valid, errors

    async def _drive(self, run: Dict[str, Any]) -> Dict[str, Any]:
        run_id = run["id"]
        organization_id = run["organization_id"]
        entered = ETLState(run["current_state"])
        file_row = await self.service.get_file(run["file_id"])

        # --------------------------------------------------
        # PHASE 1: PARSE
        # --------------------------------------------------
        if not file_row.get("filepath"):
            raise ParseError("Uploaded content is not available", context={"file_id": file_row["id"]})

        records = await self.parser.parse_file(file_row["filepath"])
        if not records:
            raise ParseError(f"{file_row['filename']} has no data rows", context={"file_id": file_row["id"]})
        definition = await self._resolve_definition(file_row, records)

        if entered == ETLState.PARSING:
            await self.service.transition_run_state(
                run_id, ETLState.PARSED, actor=self.worker_id,
                message=f"Parsed {len(records)} rows",
                updates={"records_total": len(records)},
            )

        # --------------------------------------------------
        # PHASE 2: VALIDATE
        # --------------------------------------------------
        if entered == ETLState.PARSING:
            await self.service.transition_run_state(run_id, ETLState.VALIDATING, actor=self.worker_id)

        valid, invalid = self.validate_records(definition, records, run.get("skip_validation", False))
        if not valid:
            raise SchemaValidationError(
                f"None of the {len(records)} rows is valid",
                context={"file_id": file_row["id"], "errors": invalid[:MAX_ERROR_SAMPLES]}
            )

        if entered == ETLState.PARSING:
            await self.service.transition_run_state(
                run_id, ETLState.VALIDATED, actor=self.worker_id,
                message=f"{len(valid)} valid, {len(invalid)} invalid rows",
                metadata={"invalid_rows": len(invalid)},
                updates={
                    "records_failed": len(invalid),
                    "metadata": {**(run.get("metadata") or {}), "validation_errors": invalid[:MAX_ERROR_SAMPLES]},
                },
            )

            next_state = self.service.state_machine.state_after_validation()
            if next_state == ETLState.AWAITING_APPROVAL:
                await self.service.transition_run_state(
                    run_id, ETLState.AWAITING_APPROVAL, actor=self.worker_id, message="Waiting for approval"
                )
                return {"status": ETLState.AWAITING_APPROVAL.value, "records_total": len(records),
                        "records_valid": len(valid), "records_failed": len(invalid)}

            await self.service.transition_run_state(run_id, ETLState.LOADING, actor=self.worker_id)

        # --------------------------------------------------
        # PHASE 3: LOAD
        # --------------------------------------------------
        batch = await self.engine.upsert_batch(valid, definition.fact_type, organization_id, file_row["id"])
        if batch.total_processed == 0:
            raise UpsertError(
                f"All {len(valid)} records failed to load",
                context={"run_id": run_id, "errors": [e.dict() for e in batch.errors[:MAX_ERROR_SAMPLES]]}
            )

        failed_keys = {e.natural_key for e in batch.errors if e.natural_key}
        expected = [k for k in (definition.natural_key(r, organization_id) for r in valid) if k not in failed_keys]
        integrity = await self.engine.verify_batch_integrity(organization_id, expected, definition.fact_type)
        if not integrity.is_complete:
            raise UpsertError(
                f"Integrity check failed: {len(integrity.missing_keys)} natural keys missing after load",
                context={"run_id": run_id, "missing_keys": integrity.missing_keys[:MAX_ERROR_SAMPLES]}
            )

        counters = {
            "records_total": len(records),
            "records_processed": batch.total_processed,
            "records_inserted": batch.inserted,
            "records_updated": batch.updated,
            "records_skipped": batch.skipped,
            "records_pending": batch.pending,
            "records_failed": len(invalid) + len(batch.errors),
        }
        await self.service.complete_run(
            run_id, counters, actor=self.worker_id, metadata={"batches": batch.batches}
        )
        logger.info(f"Run {run_id} loaded: {counters}")
        return {"status": ETLState.LOADED.value, **counters}


def build_runner(store, worker_id: Optional[str] = None, dimension_cache: Optional[DimensionCache] = None) -> ETLRunner:
    """Wire a runner and its services from settings over one store."""
    service = ETLStateMachineService.from_settings(store)
    engine = UpsertEngine(store, StoreDimensionLookup(store, dimension_cache))
    return ETLRunner(service, engine, worker_id=worker_id)


def session_processor(
    session_factory: async_sessionmaker,
    dimension_cache: Optional[DimensionCache] = None
) -> RunProcessor:
    """
    Build a run processor that opens a fresh session per run.

    An AsyncSession must not be shared between concurrent tasks; the retry
    queue fans out, so every retried run gets its own session and runner.
    The dimension cache is shared so lookups are not repeated per run.
    """
    cache = dimension_cache or DimensionCache()

    async def process(run_id: str) -> RetryResult:
        async with session_factory() as session:
            runner = build_runner(SqlAlchemyStore(session), dimension_cache=cache)
            return await runner.process_run(run_id)

    return process
