"""
In-memory implementation of the storage port.

Used by the test suite and by dry runs. Every call yields to the event
loop once before touching data, so concurrent coroutines interleave at
the same points they would against a real database, while each call
itself stays atomic.
"""

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.exceptions import IntegrityConflictError, StorageError
from ingestion.state_machine import validate_transition
from ingestion.storage.base import (
    Condition,
    OPERATORS,
    StoragePort,
    Tables,
    UpsertOutcome,
    VERSIONED_TABLES,
)

logger = logging.getLogger(__name__)


# (columns, optional (column, value) scope) -- mirrors the relational unique keys
UNIQUE_KEYS: Dict[str, List[Tuple[Tuple[str, ...], Optional[Tuple[str, Any]]]]] = {
    Tables.ETL_RUN: [(("file_id", "run_number"), None)],
    Tables.FATO_DESVIO: [(("organization_id", "natural_key"), None)],
    Tables.FATO_TRATO: [(("organization_id", "natural_key"), None)],
    Tables.DIM_CURRAL: [(("organization_id", "code"), None)],
    Tables.DIM_DIETA: [(("organization_id", "code"), None)],
    Tables.DIM_EQUIPAMENTO: [(("organization_id", "code"), None)],
    Tables.DIM_TRATEIRO: [(("organization_id", "code"), None)],
    Tables.PENDING_DIMENSION: [(("organization_id", "type", "code"), ("status", "pending"))],
}


def matches(row: Dict[str, Any], condition: Condition) -> bool:
    value = row.get(condition.column)
    op = condition.op
    if op == "eq":
        return value == condition.value
    if op == "ne":
        return value != condition.value
    if op == "is_null":
        return value is None
    if op == "not_null":
        return value is not None
    if op == "in":
        return value in condition.value
    if value is None or condition.value is None:
        return False
    if op == "lt":
        return value < condition.value
    if op == "lte":
        return value <= condition.value
    if op == "gt":
        return value > condition.value
    if op == "gte":
        return value >= condition.value
    raise StorageError(f"Unsupported operator: {op}", context={"column": condition.column})


class InMemoryStore(StoragePort):
    """Dictionary-backed StoragePort test double."""

    def __init__(self, latency: float = 0):
        self.latency = latency
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)

    async def _yield(self):
        await asyncio.sleep(self.latency)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        """Synchronous snapshot of a table, for assertions."""
        return [copy.deepcopy(r) for r in self._tables[table].values()]

    # ------------------------------------------------------------------
    # Constraint helpers
    # ------------------------------------------------------------------

    def _check_unique(self, table: str, row: Dict[str, Any], ignore_id: Optional[str] = None):
        for columns, scope in UNIQUE_KEYS.get(table, []):
            if scope and row.get(scope[0]) != scope[1]:
                continue
            key = tuple(row.get(c) for c in columns)
            for existing in self._tables[table].values():
                if existing["id"] == ignore_id:
                    continue
                if scope and existing.get(scope[0]) != scope[1]:
                    continue
                if tuple(existing.get(c) for c in columns) == key:
                    raise IntegrityConflictError(
                        f"Duplicate key on {table}",
                        context={"table_name": table, "columns": list(columns), "key": list(key)}
                    )

    @staticmethod
    def _check_conditions(conditions: Sequence[Condition]):
        for condition in conditions:
            if condition.op not in OPERATORS:
                raise StorageError(f"Unsupported operator: {condition.op}")

    def _filter(self, table: str, conditions: Sequence[Condition]) -> List[Dict[str, Any]]:
        self._check_conditions(conditions)
        return [r for r in self._tables[table].values() if all(matches(r, c) for c in conditions)]

    # ------------------------------------------------------------------
    # StoragePort
    # ------------------------------------------------------------------

    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        await self._yield()
        row = self._tables[table].get(record_id)
        return copy.deepcopy(row) if row is not None else None

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        await self._yield()
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        if table in VERSIONED_TABLES:
            stored.setdefault("version", 1)
        if stored["id"] in self._tables[table]:
            raise IntegrityConflictError(f"Duplicate id on {table}", context={"table_name": table})
        self._check_unique(table, stored)
        self._tables[table][stored["id"]] = stored
        return copy.deepcopy(stored)

    async def conditional_update(
        self,
        table: str,
        record_id: str,
        expected_version: int,
        updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        await self._yield()
        if table not in VERSIONED_TABLES:
            raise StorageError(f"{table} is not versioned", context={"table_name": table})

        row = self._tables[table].get(record_id)
        if row is None or row.get("version") != expected_version:
            return None

        new_state = updates.get("current_state")
        if new_state is not None and new_state != row.get("current_state"):
            validate_transition(row["current_state"], new_state)

        candidate = {**row, **copy.deepcopy(updates), "version": expected_version + 1}
        self._check_unique(table, candidate, ignore_id=record_id)
        self._tables[table][record_id] = candidate
        return copy.deepcopy(candidate)

    async def update(self, table: str, record_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        await self._yield()
        if table in VERSIONED_TABLES:
            raise StorageError(f"{table} requires conditional_update", context={"table_name": table})
        row = self._tables[table].get(record_id)
        if row is None:
            return None
        candidate = {**row, **copy.deepcopy(updates)}
        self._check_unique(table, candidate, ignore_id=record_id)
        self._tables[table][record_id] = candidate
        return copy.deepcopy(candidate)

    async def query(
        self,
        table: str,
        conditions: Sequence[Condition] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        await self._yield()
        rows = self._filter(table, conditions)
        if order_by:
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            present.sort(key=lambda r: r[order_by], reverse=descending)
            rows = present + missing
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    async def count(self, table: str, conditions: Sequence[Condition] = ()) -> int:
        await self._yield()
        return len(self._filter(table, conditions))

    async def update_where(
        self,
        table: str,
        conditions: Sequence[Condition],
        updates: Dict[str, Any],
        bump_version: bool = False
    ) -> int:
        await self._yield()
        targets = self._filter(table, conditions)
        for row in targets:
            row.update(copy.deepcopy(updates))
            if bump_version:
                row["version"] = row.get("version", 0) + 1
        return len(targets)

    async def delete_where(self, table: str, conditions: Sequence[Condition]) -> int:
        await self._yield()
        targets = self._filter(table, conditions)
        for row in targets:
            del self._tables[table][row["id"]]
        return len(targets)

    async def atomic_upsert(
        self,
        table: str,
        row: Dict[str, Any],
        conflict_columns: Tuple[str, ...],
        compare_columns: Tuple[str, ...]
    ) -> UpsertOutcome:
        await self._yield()
        key = tuple(row.get(c) for c in conflict_columns)
        existing = next(
            (r for r in self._tables[table].values() if tuple(r.get(c) for c in conflict_columns) == key),
            None
        )

        if existing is None:
            stored = copy.deepcopy(row)
            stored.setdefault("id", str(uuid.uuid4()))
            self._tables[table][stored["id"]] = stored
            return UpsertOutcome("inserted", copy.deepcopy(stored))

        if not any(existing.get(c) != row.get(c) for c in compare_columns):
            return UpsertOutcome("skipped", None)

        protected = {"id", "created_at", *conflict_columns}
        existing.update({k: copy.deepcopy(v) for k, v in row.items() if k not in protected})
        return UpsertOutcome("updated", copy.deepcopy(existing))
