# ============================================================================
# File: ingestion/locking.py
# Description: Optimistic concurrency control and TTL-bounded logical locks
# ============================================================================
"""
Optimistic locking service.

Every mutating write of a file or run goes through update_with_lock: read
the row, apply the change conditionally on the version that was read, and
re-read and retry when another worker got there first. Logical locks are
ordinary versioned writes of the lock columns, so two acquirers can never
both win.
"""

import asyncio
import logging
import random
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel

from core.config import settings
from core.exceptions import LockAcquisitionError
from ingestion.storage.base import Condition, StoragePort
from schemas.etl import LockingResult

logger = logging.getLogger(__name__)

Updates = Union[Dict[str, Any], Callable[[Dict[str, Any]], Dict[str, Any]]]


class LockingOptions(BaseModel):
    """Retry policy for version conflicts"""
    max_retries: int = 3
    retry_delay_ms: int = 100
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 2000
    jitter: bool = True

    @classmethod
    def from_settings(cls) -> "LockingOptions":
        return cls(
            max_retries=settings.LOCK_MAX_RETRIES,
            retry_delay_ms=settings.LOCK_RETRY_DELAY_MS,
            max_delay_ms=settings.LOCK_MAX_DELAY_MS,
        )


def generate_lock_id() -> str:
    return f"lock-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class OptimisticLockingService:
    """
    Compare-and-swap updates and exclusive logical locks.

    Responsibilities:
    - Versioned updates with bounded conflict retries
    - Acquire / release TTL locks (lock columns on the row)
    - Bulk release of expired locks and lock statistics
    """

    def __init__(self, store: StoragePort, options: Optional[LockingOptions] = None):
        self.store = store
        self.options = options or LockingOptions()

    def _backoff_seconds(self, attempt: int, options: LockingOptions) -> float:
        delay = min(options.retry_delay_ms * (options.backoff_multiplier ** attempt), options.max_delay_ms)
        if options.jitter:
            delay *= random.uniform(0.75, 1.25)
        return max(delay, 0) / 1000

    # --------------------------------------------------
    # Optimistic updates
    # --------------------------------------------------

    async def update_with_lock(
        self,
        table: str,
        record_id: str,
        updates: Updates,
        options: Optional[LockingOptions] = None,
        expected_version: Optional[int] = None
    ) -> LockingResult:
        """
        Apply `updates` conditionally on the version read just before.

        Args:
            table: Versioned table name
            record_id: Row id
            updates: Column values, or a callable building them from the
                freshly read row (called again on every retry)
            options: Conflict retry policy
            expected_version: Version the caller last saw; a mismatch on the
                first read counts as a conflict and is retried on the fresh row

        Returns:
            LockingResult; a lost race after all retries is reported as
            conflict=True, never raised.
        """
        options = options or self.options
        current_version: Optional[int] = None

        for attempt in range(options.max_retries + 1):
            row = await self.store.get(table, record_id)
            if row is None:
                return LockingResult(success=False, error="Record not found", retry_attempt=attempt)

            current_version = row["version"]
            if expected_version is not None and attempt == 0 and current_version != expected_version:
                logger.debug(
                    f"{table}/{record_id}: expected version {expected_version}, found {current_version}"
                )
            else:
                values = updates(row) if callable(updates) else dict(updates)
                values.setdefault("updated_at", datetime.utcnow())

                updated = await self.store.conditional_update(table, record_id, current_version, values)
                if updated is not None:
                    if attempt:
                        logger.info(f"{table}/{record_id}: update succeeded after {attempt} conflict retries")
                    return LockingResult(
                        success=True,
                        data=updated,
                        current_version=updated["version"],
                        retry_attempt=attempt,
                    )

            if attempt < options.max_retries:
                delay = self._backoff_seconds(attempt, options)
                logger.debug(f"{table}/{record_id}: version conflict, retrying in {delay * 1000:.0f}ms")
                await asyncio.sleep(delay)

        logger.warning(
            f"{table}/{record_id}: version conflict after {options.max_retries + 1} attempts"
        )
        return LockingResult(
            success=False,
            conflict=True,
            current_version=current_version,
            retry_attempt=options.max_retries,
            error=f"Concurrent modification detected after {options.max_retries + 1} attempts",
        )

    # --------------------------------------------------
    # Logical locks
    # --------------------------------------------------

    async def acquire_lock(
        self,
        table: str,
        record_id: str,
        lock_timeout_ms: Optional[int] = None,
        owner: Optional[str] = None
    ) -> LockingResult:
        """
        Take the lock unless someone else holds it.

        An expired lock still blocks: it is cleared by release_expired_locks
        or the stale-lock sweep, not by a competing acquirer.
        """
        lock_id = owner or generate_lock_id()
        timeout_ms = lock_timeout_ms or settings.LOCK_TIMEOUT_MS

        def claim(row: Dict[str, Any]) -> Dict[str, Any]:
            if row.get("locked_by") and row["locked_by"] != lock_id:
                raise LockAcquisitionError(
                    f"Record is already locked by {row['locked_by']}",
                    context={
                        "table_name": table,
                        "record_id": record_id,
                        "lock_expires_at": row.get("lock_expires_at"),
                    }
                )
            now = datetime.utcnow()
            return {
                "locked_by": lock_id,
                "locked_at": now,
                "lock_expires_at": now + timedelta(milliseconds=timeout_ms),
            }

        try:
            result = await self.update_with_lock(table, record_id, claim)
        except LockAcquisitionError as e:
            logger.info(f"{table}/{record_id}: {e.message}")
            return LockingResult(success=False, error=e.message)

        if result.success:
            result.data = {**result.data, "lock_id": lock_id}
            logger.debug(f"{table}/{record_id}: lock {lock_id} acquired")
        return result

    async def release_lock(self, table: str, record_id: str, lock_id: str) -> LockingResult:
        """Clear the lock columns if `lock_id` still owns them."""

        def release(row: Dict[str, Any]) -> Dict[str, Any]:
            if row.get("locked_by") != lock_id:
                raise LockAcquisitionError(
                    "Lock no longer owned",
                    context={"table_name": table, "record_id": record_id, "locked_by": row.get("locked_by")}
                )
            return {"locked_by": None, "locked_at": None, "lock_expires_at": None}

        try:
            return await self.update_with_lock(table, record_id, release)
        except LockAcquisitionError:
            logger.warning(f"{table}/{record_id}: lock {lock_id} was reclaimed before release")
            return LockingResult(success=False, error="Lock not owned by caller")

    @asynccontextmanager
    async def lock(
        self,
        table: str,
        record_id: str,
        lock_timeout_ms: Optional[int] = None,
        owner: Optional[str] = None
    ):
        """
        Hold the logical lock for the duration of the block.

        Raises:
            LockAcquisitionError: The lock could not be taken
        """
        acquired = await self.acquire_lock(table, record_id, lock_timeout_ms, owner)
        if not acquired.success:
            raise LockAcquisitionError(
                acquired.error or "Failed to acquire lock",
                context={"table_name": table, "record_id": record_id, "conflict": acquired.conflict}
            )
        lock_id = acquired.data["lock_id"]
        try:
            yield lock_id
        finally:
            await self.release_lock(table, record_id, lock_id)

    async def with_lock(
        self,
        table: str,
        record_id: str,
        operation: Callable[[str], Awaitable[Any]],
        lock_timeout_ms: Optional[int] = None,
        owner: Optional[str] = None
    ) -> LockingResult:
        """
        Run `operation(lock_id)` while holding the lock.

        The lock is released on every exit path; an exception raised by the
        operation propagates after release.
        """
        acquired = await self.acquire_lock(table, record_id, lock_timeout_ms, owner)
        if not acquired.success:
            return acquired

        lock_id = acquired.data["lock_id"]
        try:
            result = await operation(lock_id)
        finally:
            await self.release_lock(table, record_id, lock_id)
        return LockingResult(success=True, data=result, retry_attempt=acquired.retry_attempt)

    # --------------------------------------------------
    # Maintenance
    # --------------------------------------------------

    async def release_expired_locks(self, table: str) -> Dict[str, Any]:
        """Clear every lock whose TTL has passed."""
        now = datetime.utcnow()
        try:
            released = await self.store.update_where(
                table,
                [Condition("locked_by", "not_null"), Condition("lock_expires_at", "lt", now)],
                {"locked_by": None, "locked_at": None, "lock_expires_at": None, "updated_at": now},
                bump_version=True,
            )
        except Exception as e:
            logger.error(f"Failed to release expired locks on {table}: {e}")
            return {"released_count": 0, "errors": [str(e)]}

        if released:
            logger.info(f"Released {released} expired locks on {table}")
        return {"released_count": released, "errors": []}

    async def get_locking_stats(self, table: str) -> Dict[str, int]:
        now = datetime.utcnow()
        total = await self.store.count(table)
        locked = await self.store.count(table, [Condition("locked_by", "not_null")])
        expired = await self.store.count(
            table, [Condition("locked_by", "not_null"), Condition("lock_expires_at", "lt", now)]
        )
        return {
            "total_records": total,
            "locked_records": locked,
            "expired_locks": expired,
            "active_locks": locked - expired,
        }
