"""
Audit log for lifecycle events.

Each event is written to the etl_run_log table and echoed to the Python
logger at the matching level. A failed audit write is logged and does not
abort the lifecycle operation that produced it.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ingestion.storage.base import Condition, StoragePort, Tables, where
from models.base import LogLevel, generate_id

logger = logging.getLogger(__name__)

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}


class AuditLogger:
    """Audit log port backed by the storage port."""

    def __init__(self, store: StoragePort):
        self.store = store

    async def log_event(
        self,
        level: LogLevel,
        action: str,
        message: str,
        organization_id: str,
        details: Optional[Dict[str, Any]] = None,
        file_id: Optional[str] = None,
        run_id: Optional[str] = None,
        user_id: Optional[str] = None,
        previous_state: Optional[str] = None,
        new_state: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        level = LogLevel(level)
        logger.log(
            _PY_LEVELS[level],
            f"[{action}] {message} (org={organization_id}, file={file_id}, run={run_id})"
        )

        row = {
            "id": generate_id(),
            "organization_id": organization_id,
            "file_id": file_id,
            "run_id": run_id,
            "level": level.value,
            "action": action,
            "message": message,
            "details": details or {},
            "user_id": user_id,
            "previous_state": previous_state,
            "new_state": new_state,
            "created_at": datetime.utcnow(),
        }
        try:
            return await self.store.insert(Tables.AUDIT_LOG, row)
        except Exception as e:
            logger.error(f"Failed to write audit event {action}: {e}")
            return None

    async def get_audit_trail(
        self,
        organization_id: str,
        file_id: Optional[str] = None,
        run_id: Optional[str] = None,
        action: Optional[str] = None,
        level: Optional[LogLevel] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Audit events, newest first."""
        conditions = where(organization_id=organization_id)
        if file_id:
            conditions.append(Condition("file_id", "eq", file_id))
        if run_id:
            conditions.append(Condition("run_id", "eq", run_id))
        if action:
            conditions.append(Condition("action", "eq", action))
        if level:
            conditions.append(Condition("level", "eq", LogLevel(level).value))
        return await self.store.query(
            Tables.AUDIT_LOG, conditions, order_by="created_at", descending=True, limit=limit, offset=offset
        )

    async def cleanup_old_audit_records(
        self,
        organization_id: str,
        retain_days: int = 90,
        dry_run: bool = False
    ) -> int:
        """Delete (or count, on dry run) audit rows older than the retention window."""
        cutoff = datetime.utcnow() - timedelta(days=retain_days)
        conditions = where(organization_id=organization_id) + [Condition("created_at", "lt", cutoff)]

        if dry_run:
            count = await self.store.count(Tables.AUDIT_LOG, conditions)
            logger.info(f"Dry run: {count} audit records older than {retain_days} days for {organization_id}")
            return count

        deleted = await self.store.delete_where(Tables.AUDIT_LOG, conditions)
        await self.log_event(
            LogLevel.INFO,
            "audit_cleanup",
            f"Removed {deleted} audit records older than {retain_days} days",
            organization_id,
            details={"deleted_count": deleted, "retain_days": retain_days},
        )
        return deleted
