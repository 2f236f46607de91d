"""
Storage port for the ETL engine.

Every component talks to persistence through StoragePort. Rows cross the
port as plain dictionaries keyed by column name; predicates are typed
Condition tuples so no adapter ever builds SQL from caller text.

Two adapters implement the port:
- SqlAlchemyStore: AsyncSession against PostgreSQL (SQLite in tests)
- InMemoryStore: dictionaries, used by tests and dry runs
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple


class Tables:
    """Table names understood by every adapter"""
    ETL_FILE = "etl_file"
    ETL_RUN = "etl_run"
    DEAD_LETTER = "etl_dead_letter_queue"
    REPROCESSING_LOG = "etl_reprocessing_log"
    PENDING_DIMENSION = "etl_pending_dimension"
    AUDIT_LOG = "etl_run_log"

    DIM_CURRAL = "dim_curral"
    DIM_DIETA = "dim_dieta"
    DIM_EQUIPAMENTO = "dim_equipamento"
    DIM_TRATEIRO = "dim_trateiro"

    FATO_DESVIO = "fato_desvio_carregamento"
    FATO_TRATO = "fato_trato_curral"


# Tables carrying version / current_state / lock columns
VERSIONED_TABLES = frozenset({Tables.ETL_FILE, Tables.ETL_RUN})


class Condition(NamedTuple):
    """
    A single column predicate.

    op is one of: eq, ne, lt, lte, gt, gte, in, is_null, not_null
    """
    column: str
    op: str = "eq"
    value: Any = None


OPERATORS = frozenset({"eq", "ne", "lt", "lte", "gt", "gte", "in", "is_null", "not_null"})


def where(**equals: Any) -> List[Condition]:
    """Shorthand for a list of equality conditions."""
    return [Condition(column, "eq", value) for column, value in equals.items()]


class UpsertOutcome(NamedTuple):
    """Result of an atomic insert-or-update"""
    operation: str  # inserted | updated | skipped
    row: Optional[Dict[str, Any]]


class StoragePort(ABC):
    """
    Persistence contract consumed by the ETL services.

    Implementations must:
    - return copies of rows (callers may mutate what they get back)
    - increment `version` on every conditional_update and reject a stale
      expected version by returning None
    - refuse a conditional_update that moves `current_state` along an edge
      missing from the state graph (StateTransitionError)
    - raise IntegrityConflictError when a unique key is violated on insert
    """

    @abstractmethod
    async def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one row by primary key."""

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it as stored."""

    @abstractmethod
    async def conditional_update(
        self,
        table: str,
        record_id: str,
        expected_version: int,
        updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Compare-and-swap update of a versioned row.

        Applies `updates` and sets version = expected_version + 1 only when
        the stored version equals expected_version.

        Returns:
            The updated row, or None when no row matched.
        """

    @abstractmethod
    async def update(self, table: str, record_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Unconditional update for tables without a version column."""

    @abstractmethod
    async def query(
        self,
        table: str,
        conditions: Sequence[Condition] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Return rows matching every condition."""

    @abstractmethod
    async def count(self, table: str, conditions: Sequence[Condition] = ()) -> int:
        """Count rows matching every condition."""

    @abstractmethod
    async def update_where(
        self,
        table: str,
        conditions: Sequence[Condition],
        updates: Dict[str, Any],
        bump_version: bool = False
    ) -> int:
        """Bulk update; returns the number of rows changed."""

    @abstractmethod
    async def delete_where(self, table: str, conditions: Sequence[Condition]) -> int:
        """Bulk delete; returns the number of rows removed."""

    @abstractmethod
    async def atomic_upsert(
        self,
        table: str,
        row: Dict[str, Any],
        conflict_columns: Tuple[str, ...],
        compare_columns: Tuple[str, ...]
    ) -> UpsertOutcome:
        """
        Insert, or update the conflicting row only if a compared column differs.

        `row` must carry `created_at` and `updated_at`; the update branch
        rewrites every non-identity column of `row` except `created_at`.
        """
