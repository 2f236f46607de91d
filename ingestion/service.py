# ============================================================================
# File: ingestion/service.py
# Description: Lifecycle orchestration for uploaded files and their runs
# ============================================================================
"""
ETL state machine service.

Composes the state machine, optimistic locking, checksum dedup, retry and
audit services into the lifecycle operations used by the runner, the
scheduler, the CLI and the operator API.

Every write of a file or run is a compare-and-swap through
OptimisticLockingService; the transition is validated against the row
read inside the same attempt, so a racing writer can never push an entity
along an edge that does not exist.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.config import settings
from core.exceptions import (
    ConcurrencyConflictError,
    EntityNotFoundError,
    ETLException,
    ProcessingTimeoutError,
    StateTransitionError,
)
from ingestion.audit import AuditLogger
from ingestion.checksum import ChecksumService
from ingestion.entities import create_file, create_run
from ingestion.locking import LockingOptions, OptimisticLockingService
from ingestion.notifications import NotificationEvent, Notifier, build_notifier
from ingestion.retry import RetryConfig, RetryLogicService, classify_error, error_details
from ingestion.state_machine import (
    ETLStateMachine,
    PROCESSING_STATES,
    STALE_LOCK_MESSAGE,
    StateMachineConfig,
    is_valid_transition,
    to_state,
)
from ingestion.storage.base import Condition, StoragePort, Tables, where
from models.base import DuplicatePolicy, EntityType, ETLState, LogLevel, PendingStatus
from schemas.etl import (
    ETLFileRecord,
    ETLRunRecord,
    ReprocessingOptions,
    RetryResult,
    StateTransitionResult,
    UploadDecision,
)

logger = logging.getLogger(__name__)

ENTITY_TABLES = {
    EntityType.ETL_FILE: Tables.ETL_FILE,
    EntityType.ETL_RUN: Tables.ETL_RUN,
}

CLEARED_LOCK = {"locked_by": None, "locked_at": None, "lock_expires_at": None}
CLEARED_PROCESSING = {"processing_by": None, "processing_started_at": None}


class ETLStateMachineService:
    """
    Orchestrates the file/run lifecycle.

    Responsibilities:
    - Register uploads behind the duplicate gate
    - Create runs and move files/runs through validated transitions
    - Start, complete, approve, cancel and fail runs
    - Drain the retry queue and recover runs with stale locks
    - Statistics, alerts and retention maintenance
    """

    def __init__(
        self,
        store: StoragePort,
        config: Optional[StateMachineConfig] = None,
        locking: Optional[OptimisticLockingService] = None,
        checksum: Optional[ChecksumService] = None,
        retry: Optional[RetryLogicService] = None,
        audit: Optional[AuditLogger] = None,
        notifier: Optional[Notifier] = None,
        upload_dir: Optional[str] = None
    ):
        self.store = store
        self.config = config or StateMachineConfig()
        self.state_machine = ETLStateMachine(self.config)
        self.audit = audit or AuditLogger(store)
        self.notifier = notifier or build_notifier()
        self.locking = locking or OptimisticLockingService(store)
        self.checksum = checksum or ChecksumService(store, self.audit)
        self.retry = retry or RetryLogicService(
            store,
            locking=self.locking,
            config=RetryConfig(max_retries=self.config.max_retries),
            notifier=self.notifier,
            audit=self.audit,
        )
        self.upload_dir = Path(upload_dir or settings.UPLOAD_DIR)

    @classmethod
    def from_settings(cls, store: StoragePort) -> "ETLStateMachineService":
        audit = AuditLogger(store)
        notifier = build_notifier()
        locking = OptimisticLockingService(store, LockingOptions.from_settings())
        return cls(
            store,
            config=StateMachineConfig.from_settings(),
            locking=locking,
            checksum=ChecksumService(store, audit),
            retry=RetryLogicService(store, locking, RetryConfig.from_settings(), notifier, audit),
            audit=audit,
            notifier=notifier,
        )

    @property
    def retry_config(self) -> RetryConfig:
        """Retry policy for runs; with auto retry off every failure is dead-lettered."""
        if self.config.auto_retry:
            return self.retry.config
        return self.retry.config.copy(update={"max_retries": 0})

    # ==================================================
    # Reads
    # ==================================================

    async def get_file(self, file_id: str) -> Dict[str, Any]:
        row = await self.store.get(Tables.ETL_FILE, file_id)
        if row is None:
            raise EntityNotFoundError(EntityType.ETL_FILE.value, file_id)
        return row

    async def get_run(self, run_id: str) -> Dict[str, Any]:
        row = await self.store.get(Tables.ETL_RUN, run_id)
        if row is None:
            raise EntityNotFoundError(EntityType.ETL_RUN.value, run_id)
        return row

    async def get_runs_for_file(self, file_id: str) -> List[Dict[str, Any]]:
        return await self.store.query(Tables.ETL_RUN, where(file_id=file_id), order_by="run_number")

    async def get_file_status(self, file_id: str) -> Dict[str, Any]:
        """File, all its runs and the latest run."""
        file_row = await self.get_file(file_id)
        runs = await self.get_runs_for_file(file_id)
        return {"file": file_row, "runs": runs, "latest_run": runs[-1] if runs else None}

    # ==================================================
    # Uploads
    # ==================================================

    async def _save_upload(self, organization_id: str, checksum: str, filename: str, content: bytes) -> str:
        path = self.upload_dir / organization_id / f"{checksum[:16]}_{Path(filename).name}"

        def write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)

        await asyncio.to_thread(write)
        return str(path)

    async def register_upload(
        self,
        organization_id: str,
        filename: str,
        content: bytes,
        uploaded_by: Optional[str] = None,
        fact_type: Optional[str] = None,
        mime_type: Optional[str] = None,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.BLOCK,
        reason: Optional[str] = None,
        skip_validation: bool = False
    ) -> UploadDecision:
        """
        Register an upload and its first run.

        Duplicate policy:
        - block: never create a file for content already uploaded
        - warn: create it when the earlier upload allows reprocessing
        - force: always create it, logging the operator's reason
        """
        policy = DuplicatePolicy(duplicate_policy)
        checksum = self.checksum.calculate_checksum(content)
        duplicate = await self.checksum.check_for_duplicate(checksum, organization_id)

        if duplicate.is_duplicate and policy == DuplicatePolicy.FORCE:
            decision = await self.checksum.handle_forced_reprocessing(
                checksum,
                organization_id,
                ReprocessingOptions(
                    forced_reprocessing=True,
                    user_id=uploaded_by,
                    reason=reason,
                    skip_validation=skip_validation,
                ),
            )
            file_row = await self.get_file(decision.new_file_id)
            run_row = await self.get_run(decision.new_run_id)
            return UploadDecision(
                created=True,
                file=ETLFileRecord(**file_row),
                run=ETLRunRecord(**run_row),
                duplicate=duplicate,
                reprocessing=decision,
                message=decision.reason,
            )

        if duplicate.is_duplicate and (policy == DuplicatePolicy.BLOCK or not duplicate.allow_reprocessing):
            logger.info(f"Upload of {filename} blocked for {organization_id}: {duplicate.reason}")
            return UploadDecision(
                created=False,
                duplicate=duplicate,
                message=f"{duplicate.reason}; upload not registered",
            )

        metadata: Dict[str, Any] = {}
        if duplicate.is_duplicate:
            metadata["duplicate_of"] = duplicate.original_file.id

        filepath = await self._save_upload(organization_id, checksum, filename, content)
        file_row = await create_file(
            self.store,
            organization_id=organization_id,
            filename=filename,
            checksum=checksum,
            uploaded_by=uploaded_by,
            filepath=filepath,
            file_size=len(content),
            mime_type=mime_type,
            fact_type=fact_type,
            checksum_algorithm=self.checksum.algorithm,
            metadata=metadata,
        )
        run_row = await create_run(self.store, file_row, started_by=uploaded_by, skip_validation=skip_validation)

        await self.audit.log_event(
            LogLevel.WARNING if duplicate.is_duplicate else LogLevel.INFO,
            "file_uploaded",
            f"File {filename} uploaded" + (" (duplicate content)" if duplicate.is_duplicate else ""),
            organization_id,
            details={"checksum": checksum, "file_size": len(content), **metadata},
            file_id=file_row["id"],
            run_id=run_row["id"],
            user_id=uploaded_by,
            new_state=ETLState.UPLOADED.value,
        )
        return UploadDecision(
            created=True,
            file=ETLFileRecord(**file_row),
            run=ETLRunRecord(**run_row),
            duplicate=duplicate,
            message="File registered" + (" despite duplicate content" if duplicate.is_duplicate else ""),
        )

    async def create_run(
        self,
        file_id: str,
        started_by: Optional[str] = None,
        skip_validation: bool = False,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Start another run over an existing, non-terminal file."""
        file_row = await self.get_file(file_id)
        if self.state_machine.is_terminal_state(file_row["current_state"]):
            raise StateTransitionError(
                file_row["current_state"],
                ETLState.UPLOADED.value,
                context={"file_id": file_id, "reason": "file is in a terminal state"}
            )
        run = await create_run(self.store, file_row, started_by, skip_validation, metadata)
        await self.audit.log_event(
            LogLevel.INFO,
            "run_created",
            f"Run {run['run_number']} created",
            file_row["organization_id"],
            file_id=file_id,
            run_id=run["id"],
            user_id=started_by,
            new_state=ETLState.UPLOADED.value,
        )
        return run

    # ==================================================
    # Transitions
    # ==================================================

    async def _transition(
        self,
        entity_type: EntityType,
        entity_id: str,
        new_state: ETLState,
        actor: Optional[str] = None,
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        updates: Optional[Dict[str, Any]] = None
    ) -> Tuple[StateTransitionResult, Dict[str, Any]]:
        target = to_state(new_state)
        table = ENTITY_TABLES[entity_type]
        previous: Dict[str, ETLState] = {}

        def apply(row: Dict[str, Any]) -> Dict[str, Any]:
            source = to_state(row["current_state"])
            self.state_machine.validate_transition(source, target)
            previous["state"] = source
            entry = self.state_machine.build_history_entry(target, source, actor, message, metadata)
            values = {
                "current_state": target.value,
                "state_history": self.state_machine.append_history(row.get("state_history"), entry),
            }
            values.update(updates or {})
            return values

        result = await self.locking.update_with_lock(table, entity_id, apply)
        if not result.success:
            if result.conflict:
                raise ConcurrencyConflictError(
                    f"Could not transition {entity_type.value} {entity_id} to {target.value}",
                    context={"record_id": entity_id, "attempts": result.retry_attempt + 1,
                             "current_version": result.current_version}
                )
            raise EntityNotFoundError(entity_type.value, entity_id)

        row = result.data
        from_state = previous["state"]
        is_run = entity_type == EntityType.ETL_RUN
        await self.audit.log_event(
            LogLevel.ERROR if target == ETLState.FAILED else LogLevel.INFO,
            "state_transition",
            message or f"{entity_type.value} {from_state.value} -> {target.value}",
            row["organization_id"],
            details={"version": row["version"], **(metadata or {})},
            file_id=row["file_id"] if is_run else row["id"],
            run_id=row["id"] if is_run else None,
            user_id=actor,
            previous_state=from_state.value,
            new_state=target.value,
        )
        return StateTransitionResult(
            success=True,
            entity_type=entity_type.value,
            entity_id=entity_id,
            previous_state=from_state,
            new_state=target,
            version=row["version"],
            retry_attempt=result.retry_attempt,
        ), row

    async def transition_file_state(
        self,
        file_id: str,
        new_state: ETLState,
        actor: Optional[str] = None,
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        updates: Optional[Dict[str, Any]] = None
    ) -> StateTransitionResult:
        result, _ = await self._transition(EntityType.ETL_FILE, file_id, new_state, actor, message, metadata, updates)
        return result

    async def transition_run_state(
        self,
        run_id: str,
        new_state: ETLState,
        actor: Optional[str] = None,
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        updates: Optional[Dict[str, Any]] = None,
        sync_file: bool = True
    ) -> StateTransitionResult:
        """
        Move a run along one edge of the graph.

        Raises:
            StateTransitionError: The edge does not exist for the current state
            ConcurrencyConflictError: Lost every compare-and-swap attempt
            EntityNotFoundError: No such run
        """
        result, row = await self._transition(EntityType.ETL_RUN, run_id, new_state, actor, message, metadata, updates)
        if sync_file:
            await self._sync_file_state(row["file_id"], result.new_state, actor, message)
        return result

    async def _sync_file_state(
        self,
        file_id: str,
        run_state: ETLState,
        actor: Optional[str],
        message: Optional[str]
    ):
        """Mirror the run state onto its file when that edge exists; best effort."""
        file_row = await self.store.get(Tables.ETL_FILE, file_id)
        if file_row is None or file_row["current_state"] == to_state(run_state).value:
            return
        if not is_valid_transition(file_row["current_state"], run_state):
            logger.debug(f"File {file_id} stays {file_row['current_state']} (run moved to {to_state(run_state).value})")
            return
        try:
            await self._transition(EntityType.ETL_FILE, file_id, run_state, actor, message)
        except ETLException as e:
            logger.warning(f"Could not sync file {file_id} to {to_state(run_state).value}: {e.message}")

    # ==================================================
    # Run lifecycle
    # ==================================================

    def entry_state(self, run: Dict[str, Any]) -> ETLState:
        """State a run enters when processing starts from its current state."""
        state = to_state(run["current_state"])
        if state == ETLState.UPLOADED:
            return ETLState.PARSING
        if state == ETLState.APPROVED:
            return ETLState.LOADING
        if state == ETLState.FAILED:
            return self.state_machine.get_reentry_state(run.get("state_history"))
        raise StateTransitionError(
            state.value,
            ETLState.PARSING.value,
            allowed=[s.value for s in self.state_machine.get_valid_next_states(state)],
            context={"run_id": run["id"], "reason": "run cannot start processing from this state"}
        )

    async def start_processing(self, run_id: str, worker_id: Optional[str] = None) -> Dict[str, Any]:
        """Enter the first processing state and stamp the worker."""
        run = await self.get_run(run_id)
        target = self.entry_state(run)
        message = "Processing started" if run["current_state"] == ETLState.UPLOADED.value \
            else f"Processing resumed from {run['current_state']}"

        await self.transition_run_state(
            run_id,
            target,
            actor=worker_id,
            message=message,
            metadata={"retry_count": run.get("retry_count", 0)},
            updates={"processing_by": worker_id, "processing_started_at": datetime.utcnow()},
        )
        return await self.get_run(run_id)

    async def finish_processing(self, run_id: str) -> bool:
        """Clear the worker stamp once a worker lets go of a run."""
        result = await self.locking.update_with_lock(Tables.ETL_RUN, run_id, dict(CLEARED_PROCESSING))
        return result.success

    async def complete_run(
        self,
        run_id: str,
        counters: Dict[str, int],
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> StateTransitionResult:
        """LOADING -> LOADED with the final record counters."""
        updates = {key: value for key, value in counters.items() if key.startswith("records_")}
        updates.update({
            "completed_at": datetime.utcnow(),
            "next_retry_at": None,
            "error_message": None,
            **CLEARED_PROCESSING,
        })
        return await self.transition_run_state(
            run_id,
            ETLState.LOADED,
            actor=actor,
            message="Load completed",
            metadata={**counters, **(metadata or {})},
            updates=updates,
        )

    async def approve_run(self, run_id: str, approved_by: str, notes: Optional[str] = None) -> StateTransitionResult:
        return await self.transition_run_state(
            run_id,
            ETLState.APPROVED,
            actor=approved_by,
            message=notes or "Run approved",
            updates={"approved_by": approved_by, "approved_at": datetime.utcnow()},
        )

    async def cancel_run(self, run_id: str, cancelled_by: Optional[str] = None, reason: Optional[str] = None) -> StateTransitionResult:
        return await self.transition_run_state(
            run_id,
            ETLState.CANCELLED,
            actor=cancelled_by,
            message=reason or "Run cancelled",
            updates={"next_retry_at": None, "completed_at": datetime.utcnow(), **CLEARED_PROCESSING},
        )

    async def mark_run_failed(
        self,
        run_id: str,
        error: BaseException,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[StateTransitionResult]:
        """
        Record a failure on the run.

        Only runs in a processing state move to FAILED; a run already FAILED
        is left as is. Returns None when no transition happened.
        """
        run = await self.get_run(run_id)
        state = to_state(run["current_state"])
        if state == ETLState.FAILED:
            return None
        if state not in PROCESSING_STATES:
            logger.warning(f"Run {run_id} failed outside a processing state ({state.value}): {error}")
            return None

        message = error.message if isinstance(error, ETLException) else str(error)
        category = classify_error(error)
        return await self.transition_run_state(
            run_id,
            ETLState.FAILED,
            actor=actor,
            message=message,
            metadata={"error_type": type(error).__name__, "error_category": category.value, **(metadata or {})},
            updates={
                "error_message": message,
                "error_details": error_details(error),
                "last_error_category": category.value,
                **CLEARED_PROCESSING,
            },
        )

    async def handle_run_failure(
        self,
        run_id: str,
        error: BaseException,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> RetryResult:
        """Fail the run, then schedule a retry or dead-letter it."""
        await self.mark_run_failed(run_id, error, actor, metadata)
        run = await self.get_run(run_id)
        return await self.retry.record_failure(
            EntityType.ETL_RUN, run_id, error, run["organization_id"], self.retry_config
        )

    # ==================================================
    # Retry queue / stale locks
    # ==================================================

    async def process_retry_queue(
        self,
        processor: Callable[[str], Awaitable[Any]],
        organization_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> Dict[str, int]:
        """
        Hand every run due for retry to `processor`.

        Runs of one organization are processed at most
        RETRY_QUEUE_CONCURRENCY at a time; organizations run in parallel.
        """
        runs = await self.retry.get_retry_ready_runs(organization_id, limit=limit)
        if not runs:
            return {"processed": 0, "succeeded": 0, "failed": 0}

        semaphores: Dict[str, asyncio.Semaphore] = defaultdict(
            lambda: asyncio.Semaphore(max(1, settings.RETRY_QUEUE_CONCURRENCY))
        )
        outcome = {"processed": 0, "succeeded": 0, "failed": 0}

        async def handle(run: Dict[str, Any]):
            async with semaphores[run["organization_id"]]:
                try:
                    result = await processor(run["id"])
                except Exception as e:
                    logger.error(f"Retry of run {run['id']} raised: {e}")
                    outcome["failed"] += 1
                    return
                finally:
                    outcome["processed"] += 1
                if getattr(result, "success", bool(result)):
                    outcome["succeeded"] += 1
                else:
                    outcome["failed"] += 1

        logger.info(f"Retry queue: {len(runs)} runs due")
        await asyncio.gather(*(handle(run) for run in runs))
        return outcome

    async def recover_stale_runs(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Release stale run locks and fail runs that were mid-processing.

        The failure is handed to the retry service as a processing timeout,
        which is transient, so the run is retried unless its budget is spent.
        """
        stale_runs = await self.state_machine.find_stale_runs(self.store, now)
        recovered, released, errors = 0, 0, []

        for run in stale_runs:
            owner = run.get("locked_by") or run.get("processing_by")
            cleared = await self.locking.update_with_lock(Tables.ETL_RUN, run["id"], dict(CLEARED_LOCK))
            if not cleared.success:
                errors.append({"run_id": run["id"], "error": cleared.error})
                continue
            released += 1

            if to_state(cleared.data["current_state"]) not in PROCESSING_STATES:
                continue

            error = ProcessingTimeoutError(
                STALE_LOCK_MESSAGE,
                context={"run_id": run["id"], "locked_by": owner,
                         "processing_started_at": run.get("processing_started_at")}
            )
            try:
                await self.handle_run_failure(
                    run["id"], error, actor="stale_lock_sweep", metadata={"reason": "stale_lock_timeout"}
                )
                recovered += 1
            except ETLException as e:
                logger.error(f"Stale run {run['id']} could not be failed: {e.message}")
                errors.append({"run_id": run["id"], "error": e.message})

        files = await self.locking.release_expired_locks(Tables.ETL_FILE)
        if stale_runs:
            logger.warning(f"Stale lock sweep: {released} run locks released, {recovered} runs failed")
        return {
            "stale_runs": len(stale_runs),
            "released": released,
            "recovered": recovered,
            "file_locks_released": files["released_count"],
            "errors": errors + [{"error": e} for e in files["errors"]],
        }

    # ==================================================
    # Monitoring / maintenance
    # ==================================================

    async def get_processing_stats(self, organization_id: str) -> Dict[str, Any]:
        org = where(organization_id=organization_id)
        runs_by_state = {
            state.value: await self.store.count(Tables.ETL_RUN, org + where(current_state=state.value))
            for state in ETLState
        }
        files_by_state = {
            state.value: await self.store.count(Tables.ETL_FILE, org + where(current_state=state.value))
            for state in ETLState
        }
        pending_dimensions = await self.store.count(
            Tables.PENDING_DIMENSION, org + where(status=PendingStatus.PENDING.value)
        )
        return {
            "organization_id": organization_id,
            "files_total": sum(files_by_state.values()),
            "runs_total": sum(runs_by_state.values()),
            "files_by_state": {k: v for k, v in files_by_state.items() if v},
            "runs_by_state": {k: v for k, v in runs_by_state.items() if v},
            "pending_dimensions": pending_dimensions,
            "retry": await self.retry.get_retry_statistics(organization_id),
            "locks": await self.locking.get_locking_stats(Tables.ETL_RUN),
        }

    async def check_alerts(self, organization_id: str) -> bool:
        """Notify when the open dead-letter queue reaches the alert threshold."""
        dlq_size = await self.store.count(
            Tables.DEAD_LETTER, where(organization_id=organization_id) + [Condition("resolved", "eq", False)]
        )
        if dlq_size < settings.DLQ_ALERT_THRESHOLD:
            return False

        await self.notifier.notify(NotificationEvent(
            event_type="alert_threshold_breached",
            severity="critical",
            organization_id=organization_id,
            message=f"{dlq_size} unresolved dead-letter entries (threshold {settings.DLQ_ALERT_THRESHOLD})",
            details={"dlq_size": dlq_size, "threshold": settings.DLQ_ALERT_THRESHOLD},
        ))
        return True

    async def _organizations(self) -> List[str]:
        files = await self.store.query(Tables.ETL_FILE)
        return sorted({row["organization_id"] for row in files})

    async def run_maintenance(self, organization_id: Optional[str] = None) -> Dict[str, Any]:
        """Retention cleanup and alert checks, per organization."""
        organizations = [organization_id] if organization_id else await self._organizations()
        summary: Dict[str, Any] = {}
        for org in organizations:
            summary[org] = {
                "dlq_deleted": await self.retry.cleanup_old_dlq_entries(settings.DLQ_RETENTION_DAYS, org),
                "audit_deleted": await self.audit.cleanup_old_audit_records(org, settings.AUDIT_RETENTION_DAYS),
                "reprocessing_deleted": await self.checksum.cleanup_old_reprocessing_records(
                    org, settings.REPROCESSING_LOG_RETENTION_DAYS
                ),
                "alert_sent": await self.check_alerts(org),
            }
        return summary
