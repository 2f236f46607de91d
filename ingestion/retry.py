# ============================================================================
# File: ingestion/retry.py
# Description: Error classification, backoff scheduling and dead-letter queue
# ============================================================================
"""
Retry logic service.

A failed attempt is classified first. Transient and unknown failures get a
retry scheduled with exponential backoff (nothing blocks: the scheduler
polls for due entities). Validation and permanent failures, and entities
whose retry budget is spent, go to the dead-letter queue where only an
operator can re-arm or close them.

Retry bookkeeping on files and runs is written through the optimistic
locking service like every other mutation of a versioned entity.
"""

import asyncio
import logging
import random
import re
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from core.config import settings
from core.exceptions import (
    ConcurrencyConflictError,
    DatabaseConnectionError,
    DeadlockError,
    EntityNotFoundError,
    ETLException,
    LockAcquisitionError,
    LockLostError,
    NetworkError,
    NonRetryableError,
    ProcessingTimeoutError,
    RetryableError,
    ValidationError,
)
from ingestion.audit import AuditLogger
from ingestion.locking import OptimisticLockingService
from ingestion.notifications import LoggingNotifier, NotificationEvent, Notifier
from ingestion.storage.base import Condition, StoragePort, Tables, where
from models.base import EntityType, ErrorCategory, ETLState, LogLevel, generate_id
from schemas.etl import RetryResult

logger = logging.getLogger(__name__)

RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.TRANSIENT_NETWORK,
    ErrorCategory.TRANSIENT_DB,
    ErrorCategory.UNKNOWN,
})

ENTITY_TABLES = {
    EntityType.ETL_FILE: Tables.ETL_FILE,
    EntityType.ETL_RUN: Tables.ETL_RUN,
}

# Checked in order; the first match wins
MESSAGE_PATTERNS: List[Tuple[ErrorCategory, re.Pattern]] = [
    (ErrorCategory.TRANSIENT_DB, re.compile(
        r"deadlock|lock timeout|could not serialize|serialization failure|pool exhausted|"
        r"too many connections|database is locked|connection refused.*(postgres|database)",
        re.IGNORECASE,
    )),
    (ErrorCategory.TRANSIENT_NETWORK, re.compile(
        r"network|timeout|timed out|connection|econnreset|enotfound|temporar|unavailable|"
        r"rate limit|too many requests|\b429\b|\b502\b|\b503\b|\b504\b",
        re.IGNORECASE,
    )),
    (ErrorCategory.VALIDATION, re.compile(
        r"validation|invalid|malformed|schema|parse|required field|out of range",
        re.IGNORECASE,
    )),
    (ErrorCategory.PERMANENT, re.compile(
        r"constraint|foreign key|permission denied|not found|unauthori[sz]ed|forbidden|"
        r"not supported|disk space|out of memory",
        re.IGNORECASE,
    )),
]


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Bucket an error for retry decisions.

    Exception types from this project and its libraries are checked first,
    then the message text.
    """
    if isinstance(error, (DatabaseConnectionError, DeadlockError, ConcurrencyConflictError, LockAcquisitionError)):
        return ErrorCategory.TRANSIENT_DB
    if isinstance(error, (NetworkError, ProcessingTimeoutError)):
        return ErrorCategory.TRANSIENT_NETWORK
    if isinstance(error, (ValidationError, PydanticValidationError)):
        return ErrorCategory.VALIDATION
    if isinstance(error, NonRetryableError):
        return ErrorCategory.PERMANENT
    if isinstance(error, httpx.TransportError):
        return ErrorCategory.TRANSIENT_NETWORK
    if isinstance(error, IntegrityError):
        return ErrorCategory.PERMANENT
    if isinstance(error, OperationalError) or (isinstance(error, DBAPIError) and error.connection_invalidated):
        return ErrorCategory.TRANSIENT_DB
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT_NETWORK

    message = str(error.message if isinstance(error, ETLException) else error)
    for category, pattern in MESSAGE_PATTERNS:
        if pattern.search(message):
            return category

    if isinstance(error, RetryableError):
        return ErrorCategory.TRANSIENT_NETWORK
    return ErrorCategory.UNKNOWN


def is_retryable(category: ErrorCategory) -> bool:
    return ErrorCategory(category) in RETRYABLE_CATEGORIES


def error_details(error: BaseException) -> Dict[str, Any]:
    if isinstance(error, ETLException):
        return error.to_dict()
    return {"error_type": type(error).__name__, "message": str(error)}


class RetryConfig(BaseModel):
    """Backoff policy for failed runs and files"""
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 300000
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    jitter_max_percentage: int = 25

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_retries=settings.MAX_RETRIES,
            base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
            jitter_enabled=settings.RETRY_JITTER_ENABLED,
            jitter_max_percentage=settings.RETRY_JITTER_MAX_PERCENTAGE,
        )


class RetryLogicService:
    """
    Retry scheduling and dead-letter queue management.

    Responsibilities:
    - Classify failures and decide retry vs. dead-letter
    - Track retry_count / next_retry_at on files and runs
    - Answer polling queries for entities due for retry
    - Operator actions on dead-letter entries
    """

    def __init__(
        self,
        store: StoragePort,
        locking: Optional[OptimisticLockingService] = None,
        config: Optional[RetryConfig] = None,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditLogger] = None
    ):
        self.store = store
        self.locking = locking or OptimisticLockingService(store)
        self.config = config or RetryConfig()
        self.notifier = notifier or LoggingNotifier()
        self.audit = audit or AuditLogger(store)

    # --------------------------------------------------
    # Backoff
    # --------------------------------------------------

    def calculate_backoff_delay(self, retry_count: int, config: Optional[RetryConfig] = None) -> int:
        """min(base * multiplier^retry_count, max_delay), +/- jitter, in ms."""
        config = config or self.config
        delay = min(config.base_delay_ms * (config.backoff_multiplier ** retry_count), config.max_delay_ms)
        if config.jitter_enabled and config.jitter_max_percentage:
            spread = delay * config.jitter_max_percentage / 100
            delay += random.uniform(-spread, spread)
        return max(0, int(delay))

    # --------------------------------------------------
    # Execution
    # --------------------------------------------------

    async def _get_entity(self, entity_type: EntityType, entity_id: str) -> Dict[str, Any]:
        row = await self.store.get(ENTITY_TABLES[EntityType(entity_type)], entity_id)
        if row is None:
            raise EntityNotFoundError(EntityType(entity_type).value, entity_id)
        return row

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        entity_type: EntityType,
        entity_id: str,
        organization_id: str,
        config: Optional[RetryConfig] = None
    ) -> RetryResult:
        """
        Run one attempt of `operation` under retry management.

        Does not wait for retries: a retryable failure schedules
        next_retry_at and returns; the retry queue picks it up later.
        """
        entity_type = EntityType(entity_type)
        entity = await self._get_entity(entity_type, entity_id)
        if entity.get("max_retries_exceeded"):
            logger.info(f"{entity_type.value} {entity_id} exhausted its retries; not executing")
            return RetryResult(
                success=False,
                should_retry=False,
                attempt_number=entity.get("retry_count", 0),
                reason="Max retries already exceeded",
            )

        try:
            result = await operation()
        except LockLostError as error:
            logger.warning(f"{entity_type.value} {entity_id} attempt superseded: {error.message}")
            return RetryResult(
                success=False,
                error=error.message,
                attempt_number=entity.get("retry_count", 0),
                reason="Attempt superseded by another owner",
            )
        except Exception as error:
            logger.warning(f"{entity_type.value} {entity_id} attempt failed: {error}")
            return await self.record_failure(entity_type, entity_id, error, organization_id, config)

        if entity.get("next_retry_at") is not None:
            await self.clear_retry_schedule(entity_type, entity_id)
        return RetryResult(success=True, result=result, attempt_number=entity.get("retry_count", 0))

    async def record_failure(
        self,
        entity_type: EntityType,
        entity_id: str,
        error: BaseException,
        organization_id: str,
        config: Optional[RetryConfig] = None
    ) -> RetryResult:
        """Schedule a retry or dead-letter the entity, depending on the error and budget."""
        config = config or self.config
        entity_type = EntityType(entity_type)
        table = ENTITY_TABLES[entity_type]
        category = classify_error(error)
        message = str(error.message if isinstance(error, ETLException) else error)
        details = {**error_details(error), "error_category": category.value}

        entity = await self._get_entity(entity_type, entity_id)
        retry_count = entity.get("retry_count", 0)
        retryable = is_retryable(category)

        if entity.get("max_retries_exceeded"):
            return RetryResult(
                success=False,
                error=message,
                error_category=category,
                attempt_number=retry_count,
                reason="Max retries already exceeded",
            )

        if retryable and retry_count < config.max_retries:
            delay_ms = self.calculate_backoff_delay(retry_count, config)
            next_retry_at = datetime.utcnow() + timedelta(milliseconds=delay_ms)

            def schedule(row: Dict[str, Any]) -> Dict[str, Any]:
                return {
                    "retry_count": row.get("retry_count", 0) + 1,
                    "next_retry_at": next_retry_at,
                    "last_error_category": category.value,
                    "error_message": message,
                    "error_details": details,
                }

            result = await self.locking.update_with_lock(table, entity_id, schedule)
            if not result.success:
                raise ConcurrencyConflictError(
                    f"Could not schedule retry for {entity_type.value} {entity_id}",
                    context={"record_id": entity_id, "attempts": result.retry_attempt}
                )

            attempt = result.data["retry_count"]
            reason = f"Retry {attempt}/{config.max_retries} scheduled"
            logger.info(f"{entity_type.value} {entity_id}: {reason} in {delay_ms}ms ({category.value})")
            await self.audit.log_event(
                LogLevel.WARNING,
                "retry_scheduled",
                f"{reason}: {message}",
                organization_id,
                details={"delay_ms": delay_ms, "error_category": category.value},
                **self._entity_refs(entity_type, entity),
            )
            return RetryResult(
                success=False,
                error=message,
                error_category=category,
                should_retry=True,
                next_retry_at=next_retry_at,
                delay_ms=delay_ms,
                attempt_number=attempt,
                reason=reason,
            )

        exhausted = retryable
        reason = (
            f"Max retries ({config.max_retries}) exceeded"
            if exhausted else f"Non-retryable {category.value} error"
        )
        dlq_entry = await self.move_to_dead_letter_queue(
            entity_type, entity, message, details, category, max_retries_exceeded=exhausted
        )
        return RetryResult(
            success=False,
            error=message,
            error_category=category,
            should_retry=False,
            attempt_number=retry_count,
            moved_to_dlq=True,
            dlq_entry_id=dlq_entry["id"],
            reason=reason,
        )

    @staticmethod
    def _entity_refs(entity_type: EntityType, entity: Dict[str, Any]) -> Dict[str, Optional[str]]:
        if entity_type == EntityType.ETL_RUN:
            return {"file_id": entity.get("file_id"), "run_id": entity["id"]}
        return {"file_id": entity["id"], "run_id": None}

    # --------------------------------------------------
    # Dead-letter queue
    # --------------------------------------------------

    async def move_to_dead_letter_queue(
        self,
        entity_type: EntityType,
        entity: Dict[str, Any],
        message: str,
        details: Dict[str, Any],
        category: ErrorCategory,
        max_retries_exceeded: bool
    ) -> Dict[str, Any]:
        """
        Flag the entity exhausted and record one open DLQ entry for it.

        An already-open entry for the same entity is updated instead of
        duplicated.
        """
        entity_type = EntityType(entity_type)
        table = ENTITY_TABLES[entity_type]
        refs = self._entity_refs(entity_type, entity)
        now = datetime.utcnow()

        flagged = await self.locking.update_with_lock(table, entity["id"], {
            "max_retries_exceeded": True,
            "next_retry_at": None,
            "last_error_category": category.value,
            "error_message": message,
            "error_details": details,
        })
        if not flagged.success:
            raise ConcurrencyConflictError(
                f"Could not flag {entity_type.value} {entity['id']} for dead-letter",
                context={"record_id": entity["id"], "attempts": flagged.retry_attempt}
            )

        open_entries = await self.store.query(
            Tables.DEAD_LETTER,
            [
                Condition("entity_type", "eq", entity_type.value),
                Condition("run_id" if entity_type == EntityType.ETL_RUN else "file_id", "eq", entity["id"]),
                Condition("resolved", "eq", False),
            ],
            limit=1,
        )
        values = {
            "error_message": message,
            "error_details": details,
            "error_category": category.value,
            "retry_count": entity.get("retry_count", 0),
            "max_retries_exceeded": max_retries_exceeded,
            "marked_for_retry": False,
            "retry_after": None,
            "updated_at": now,
        }
        if open_entries:
            entry = await self.store.update(Tables.DEAD_LETTER, open_entries[0]["id"], values)
            logger.info(f"Updated open DLQ entry {entry['id']} for {entity_type.value} {entity['id']}")
            return entry

        entry = await self.store.insert(Tables.DEAD_LETTER, {
            "id": generate_id(),
            "organization_id": entity["organization_id"],
            "entity_type": entity_type.value,
            **refs,
            **values,
            "resolved": False,
            "resolved_by": None,
            "resolved_at": None,
            "resolution_notes": None,
            "created_at": now,
        })

        logger.error(f"{entity_type.value} {entity['id']} moved to dead-letter queue: {message}")
        await self.audit.log_event(
            LogLevel.ERROR,
            "moved_to_dlq",
            f"Moved to dead-letter queue: {message}",
            entity["organization_id"],
            details={"dlq_id": entry["id"], "error_category": category.value,
                     "max_retries_exceeded": max_retries_exceeded},
            **refs,
        )
        await self.notifier.notify(NotificationEvent(
            event_type="dlq_entry_created",
            severity="error",
            organization_id=entity["organization_id"],
            message=f"{entity_type.value} {entity['id']} moved to dead-letter queue: {message}",
            details={"dlq_id": entry["id"], "error_category": category.value, **refs},
        ))
        return entry

    async def get_dead_letter_queue_entries(
        self,
        organization_id: str,
        include_resolved: bool = False,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        conditions = where(organization_id=organization_id)
        if not include_resolved:
            conditions.append(Condition("resolved", "eq", False))
        return await self.store.query(
            Tables.DEAD_LETTER, conditions, order_by="created_at", descending=True, limit=limit, offset=offset
        )

    async def _get_dlq_entry(self, dlq_id: str) -> Dict[str, Any]:
        entry = await self.store.get(Tables.DEAD_LETTER, dlq_id)
        if entry is None:
            raise EntityNotFoundError("dead_letter_entry", dlq_id)
        return entry

    async def mark_for_retry(self, dlq_id: str, retry_after: Optional[datetime] = None) -> Dict[str, Any]:
        """Operator re-arm: the entry is re-queued once retry_after passes."""
        entry = await self._get_dlq_entry(dlq_id)
        updated = await self.store.update(Tables.DEAD_LETTER, dlq_id, {
            "marked_for_retry": True,
            "retry_after": retry_after or datetime.utcnow(),
            "updated_at": datetime.utcnow(),
        })
        await self.audit.log_event(
            LogLevel.INFO,
            "dlq_marked_for_retry",
            f"DLQ entry {dlq_id} marked for retry",
            entry["organization_id"],
            details={"retry_after": updated["retry_after"].isoformat()},
            file_id=entry.get("file_id"),
            run_id=entry.get("run_id"),
        )
        return updated

    async def process_marked_dlq_entries(self, organization_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Re-arm entities whose DLQ entry was marked and is due.

        The entity gets max_retries_exceeded cleared and next_retry_at set to
        now, so the retry queue picks it up. retry_count is kept; a failure
        of that attempt goes straight back to the DLQ.
        """
        now = datetime.utcnow()
        conditions = [
            Condition("marked_for_retry", "eq", True),
            Condition("resolved", "eq", False),
            Condition("retry_after", "lte", now),
        ]
        if organization_id:
            conditions.append(Condition("organization_id", "eq", organization_id))

        entries = await self.store.query(Tables.DEAD_LETTER, conditions, order_by="retry_after")
        requeued, errors = 0, []
        for entry in entries:
            entity_type = EntityType(entry["entity_type"])
            entity_id = entry["run_id"] if entity_type == EntityType.ETL_RUN else entry["file_id"]
            result = await self.locking.update_with_lock(ENTITY_TABLES[entity_type], entity_id, {
                "max_retries_exceeded": False,
                "next_retry_at": now,
            })
            if not result.success:
                errors.append({"dlq_id": entry["id"], "error": result.error})
                logger.warning(f"Could not re-arm {entity_type.value} {entity_id}: {result.error}")
                continue

            await self.resolve_dead_letter_queue_entry(entry["id"], "retry_queue", "Re-queued for retry")
            requeued += 1

        if requeued:
            logger.info(f"Re-queued {requeued} dead-letter entries")
        return {"requeued": requeued, "errors": errors}

    async def resolve_dead_letter_queue_entry(
        self,
        dlq_id: str,
        resolved_by: str,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Close an entry without (further) retrying it."""
        entry = await self._get_dlq_entry(dlq_id)
        now = datetime.utcnow()
        updated = await self.store.update(Tables.DEAD_LETTER, dlq_id, {
            "resolved": True,
            "resolved_by": resolved_by,
            "resolved_at": now,
            "resolution_notes": notes,
            "marked_for_retry": False,
            "updated_at": now,
        })
        await self.audit.log_event(
            LogLevel.INFO,
            "dlq_resolved",
            f"DLQ entry {dlq_id} resolved by {resolved_by}",
            entry["organization_id"],
            details={"notes": notes},
            file_id=entry.get("file_id"),
            run_id=entry.get("run_id"),
            user_id=resolved_by,
        )
        return updated

    async def remove_from_dead_letter_queue(self, dlq_id: str) -> bool:
        entry = await self._get_dlq_entry(dlq_id)
        deleted = await self.store.delete_where(Tables.DEAD_LETTER, where(id=dlq_id))
        await self.audit.log_event(
            LogLevel.INFO,
            "dlq_removed",
            f"DLQ entry {dlq_id} removed",
            entry["organization_id"],
            file_id=entry.get("file_id"),
            run_id=entry.get("run_id"),
        )
        return deleted > 0

    async def cleanup_old_dlq_entries(self, retention_days: int = 30, organization_id: Optional[str] = None) -> int:
        """Delete resolved entries older than the retention window."""
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        conditions = [Condition("resolved", "eq", True), Condition("created_at", "lt", cutoff)]
        if organization_id:
            conditions.append(Condition("organization_id", "eq", organization_id))

        deleted = await self.store.delete_where(Tables.DEAD_LETTER, conditions)
        if deleted:
            logger.info(f"Removed {deleted} resolved DLQ entries older than {retention_days} days")
        if organization_id:
            await self.audit.log_event(
                LogLevel.INFO,
                "dlq_cleanup",
                f"Removed {deleted} resolved DLQ entries older than {retention_days} days",
                organization_id,
                details={"deleted_count": deleted, "retention_days": retention_days},
            )
        return deleted

    # --------------------------------------------------
    # Polling queries
    # --------------------------------------------------

    def _due_conditions(self, organization_id: Optional[str], now: datetime) -> List[Condition]:
        conditions = [
            Condition("next_retry_at", "not_null"),
            Condition("next_retry_at", "lte", now),
            Condition("max_retries_exceeded", "eq", False),
        ]
        if organization_id:
            conditions.append(Condition("organization_id", "eq", organization_id))
        return conditions

    async def get_entities_ready_for_retry(self, organization_id: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Files and runs whose next_retry_at has passed and that still have budget."""
        now = datetime.utcnow()
        conditions = self._due_conditions(organization_id, now)
        files = await self.store.query(Tables.ETL_FILE, conditions, order_by="next_retry_at")
        runs = await self.store.query(Tables.ETL_RUN, conditions, order_by="next_retry_at")
        return {"files": files, "runs": runs}

    async def get_retry_ready_runs(self, organization_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """FAILED runs due for retry, oldest schedule first."""
        conditions = self._due_conditions(organization_id, datetime.utcnow())
        conditions.append(Condition("current_state", "eq", ETLState.FAILED.value))
        return await self.store.query(Tables.ETL_RUN, conditions, order_by="next_retry_at", limit=limit)

    async def clear_retry_schedule(self, entity_type: EntityType, entity_id: str) -> bool:
        result = await self.locking.update_with_lock(
            ENTITY_TABLES[EntityType(entity_type)], entity_id, {"next_retry_at": None}
        )
        return result.success

    async def get_retry_statistics(self, organization_id: str) -> Dict[str, Any]:
        now = datetime.utcnow()
        org = where(organization_id=organization_id)
        pending = await self.store.count(Tables.ETL_RUN, self._due_conditions(organization_id, now))
        scheduled = await self.store.count(
            Tables.ETL_RUN, org + [Condition("next_retry_at", "gt", now), Condition("max_retries_exceeded", "eq", False)]
        )
        exhausted = await self.store.count(Tables.ETL_RUN, org + [Condition("max_retries_exceeded", "eq", True)])
        dlq_size = await self.store.count(Tables.DEAD_LETTER, org + [Condition("resolved", "eq", False)])
        marked = await self.store.count(
            Tables.DEAD_LETTER, org + [Condition("resolved", "eq", False), Condition("marked_for_retry", "eq", True)]
        )
        retried = await self.store.query(Tables.ETL_RUN, org + [Condition("retry_count", "gt", 0)])
        average = sum(r["retry_count"] for r in retried) / len(retried) if retried else 0.0

        return {
            "pending_retries": pending,
            "scheduled_retries": scheduled,
            "exhausted_runs": exhausted,
            "dlq_size": dlq_size,
            "dlq_marked_for_retry": marked,
            "average_retry_count": round(average, 2),
        }
