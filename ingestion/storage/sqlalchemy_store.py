"""
SQLAlchemy async implementation of the storage port.

Works on SQLAlchemy Core tables registered by the models package, so rows
come back as plain dictionaries keyed by column name. Writes are committed
immediately: other workers must see a version bump as soon as the
compare-and-swap succeeds.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from sqlalchemy import Table, and_, delete, func, insert, or_, select, true, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import models  # noqa: F401  registers every table on Base.metadata
from core.exceptions import (
    DatabaseConnectionError,
    DatabaseError,
    DeadlockError,
    IntegrityConflictError,
    StateTransitionError,
    StorageError,
)
from ingestion.state_machine import allowed_predecessors, STATE_TRANSITIONS, to_state
from ingestion.storage.base import Condition, StoragePort, UpsertOutcome, VERSIONED_TABLES
from models.base import Base

logger = logging.getLogger(__name__)


class SqlAlchemyStore(StoragePort):
    """
    StoragePort over an AsyncSession.

    Supports PostgreSQL (production, asyncpg) and SQLite (tests, aiosqlite);
    the dialect only matters for atomic_upsert.
    """

    def __init__(self, session: AsyncSession, autocommit: bool = True):
        self.session = session
        self.autocommit = autocommit

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _table(name: str) -> Table:
        try:
            return Base.metadata.tables[name]
        except KeyError:
            raise StorageError(f"Unknown table: {name}", context={"table_name": name})

    @staticmethod
    def _clause(table: Table, condition: Condition):
        column = table.c[condition.column]
        op = condition.op
        if op == "eq":
            return column.is_(None) if condition.value is None else column == condition.value
        if op == "ne":
            return column.is_not(None) if condition.value is None else column != condition.value
        if op == "lt":
            return column < condition.value
        if op == "lte":
            return column <= condition.value
        if op == "gt":
            return column > condition.value
        if op == "gte":
            return column >= condition.value
        if op == "in":
            return column.in_(list(condition.value))
        if op == "is_null":
            return column.is_(None)
        if op == "not_null":
            return column.is_not(None)
        raise StorageError(f"Unsupported operator: {op}", context={"column": condition.column})

    def _where(self, table: Table, conditions: Sequence[Condition]):
        return and_(true(), *[self._clause(table, c) for c in conditions])

    async def _execute(self, stmt, table_name: str, operation: str, write: bool = False):
        try:
            result = await self.session.execute(stmt)
            if write and self.autocommit:
                await self.session.commit()
            return result
        except IntegrityError as e:
            await self.session.rollback()
            raise IntegrityConflictError(
                f"Unique constraint violated on {table_name}",
                context={"table_name": table_name, "operation": operation},
                original_exception=e
            )
        except (OperationalError, InterfaceError) as e:
            await self.session.rollback()
            error_cls = DeadlockError if "deadlock" in str(e).lower() else DatabaseConnectionError
            raise error_cls(
                f"Database unavailable during {operation} on {table_name}",
                context={"table_name": table_name, "operation": operation},
                original_exception=e
            )
        except DBAPIError as e:
            await self.session.rollback()
            if e.connection_invalidated:
                raise DatabaseConnectionError(
                    f"Connection lost during {operation} on {table_name}",
                    context={"table_name": table_name, "operation": operation},
                    original_exception=e
                )
            raise DatabaseError(
                f"{operation} failed on {table_name}",
                context={"table_name": table_name, "operation": operation},
                original_exception=e
            )
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise DatabaseError(
                f"{operation} failed on {table_name}",
                context={"table_name": table_name, "operation": operation},
                original_exception=e
            )

    # ------------------------------------------------------------------
    # StoragePort
    # ------------------------------------------------------------------

    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        t = self._table(table)
        result = await self._execute(select(t).where(t.c.id == record_id), table, "SELECT")
        row = result.mappings().first()
        return dict(row) if row is not None else None

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        t = self._table(table)
        stmt = insert(t).values(**row).returning(*t.c)
        result = await self._execute(stmt, table, "INSERT", write=True)
        return dict(result.mappings().one())

    async def conditional_update(
        self,
        table: str,
        record_id: str,
        expected_version: int,
        updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        if table not in VERSIONED_TABLES:
            raise StorageError(f"{table} is not versioned", context={"table_name": table})

        t = self._table(table)
        criteria = [t.c.id == record_id, t.c.version == expected_version]

        new_state = updates.get("current_state")
        if new_state is not None:
            new_state = to_state(new_state).value
            # Same-state writes are allowed; anything else must be a declared edge
            criteria.append(t.c.current_state.in_(allowed_predecessors(new_state) + [new_state]))

        stmt = (
            update(t)
            .where(and_(*criteria))
            .values(**updates, version=expected_version + 1)
            .returning(*t.c)
        )
        result = await self._execute(stmt, table, "CAS UPDATE", write=True)
        row = result.mappings().first()
        if row is not None:
            return dict(row)

        if new_state is not None:
            current = await self.get(table, record_id)
            if (
                current is not None
                and current["version"] == expected_version
                and current["current_state"] != new_state
            ):
                allowed = STATE_TRANSITIONS[to_state(current["current_state"])]
                raise StateTransitionError(
                    current["current_state"],
                    new_state,
                    allowed=[s.value for s in allowed],
                    context={"table_name": table, "record_id": record_id}
                )
        return None

    async def update(self, table: str, record_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if table in VERSIONED_TABLES:
            raise StorageError(f"{table} requires conditional_update", context={"table_name": table})
        t = self._table(table)
        stmt = update(t).where(t.c.id == record_id).values(**updates).returning(*t.c)
        result = await self._execute(stmt, table, "UPDATE", write=True)
        row = result.mappings().first()
        return dict(row) if row is not None else None

    async def query(
        self,
        table: str,
        conditions: Sequence[Condition] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        t = self._table(table)
        stmt = select(t).where(self._where(t, conditions))
        if order_by:
            column = t.c[order_by]
            stmt = stmt.order_by(column.desc().nulls_last() if descending else column.asc().nulls_last())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._execute(stmt, table, "SELECT")
        return [dict(r) for r in result.mappings().all()]

    async def count(self, table: str, conditions: Sequence[Condition] = ()) -> int:
        t = self._table(table)
        stmt = select(func.count()).select_from(t).where(self._where(t, conditions))
        result = await self._execute(stmt, table, "COUNT")
        return int(result.scalar() or 0)

    async def update_where(
        self,
        table: str,
        conditions: Sequence[Condition],
        updates: Dict[str, Any],
        bump_version: bool = False
    ) -> int:
        t = self._table(table)
        values = dict(updates)
        if bump_version:
            values["version"] = t.c.version + 1
        stmt = update(t).where(self._where(t, conditions)).values(**values)
        result = await self._execute(stmt, table, "BULK UPDATE", write=True)
        return result.rowcount or 0

    async def delete_where(self, table: str, conditions: Sequence[Condition]) -> int:
        t = self._table(table)
        stmt = delete(t).where(self._where(t, conditions))
        result = await self._execute(stmt, table, "DELETE", write=True)
        return result.rowcount or 0

    async def atomic_upsert(
        self,
        table: str,
        row: Dict[str, Any],
        conflict_columns: Tuple[str, ...],
        compare_columns: Tuple[str, ...]
    ) -> UpsertOutcome:
        t = self._table(table)
        dialect = self.session.bind.dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(t).values(**row)
        elif dialect == "sqlite":
            stmt = sqlite_insert(t).values(**row)
        else:
            raise StorageError(f"Native upsert not supported on {dialect}", context={"table_name": table})

        protected = {"id", "created_at", *conflict_columns}
        set_ = {c: stmt.excluded[c] for c in row if c not in protected}
        changed = or_(*[t.c[c].is_distinct_from(stmt.excluded[c]) for c in compare_columns])

        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_=set_,
            where=changed
        ).returning(*t.c)

        result = await self._execute(stmt, table, "UPSERT", write=True)
        stored = result.mappings().first()
        if stored is None:
            return UpsertOutcome("skipped", None)

        stored = dict(stored)
        # A fresh insert keeps the id we generated; an update keeps the old row's id
        operation = "inserted" if stored["id"] == row.get("id") else "updated"
        return UpsertOutcome(operation, stored)
