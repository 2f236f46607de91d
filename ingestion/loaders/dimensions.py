"""
Dimension lookups and pending placeholders.

Fact rows reference dimensions (pens, diets, wagons, operators) by id.
A code that is not registered yet gets a pending placeholder so the fact
can still be loaded; an operator later resolves the placeholder to a real
dimension row or rejects it.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from core.exceptions import EntityNotFoundError, IntegrityConflictError, StateTransitionError
from ingestion.storage.base import StoragePort, Tables, where
from models.base import DimensionType, PendingStatus, generate_id

logger = logging.getLogger(__name__)

DIMENSION_TABLES = {
    DimensionType.CURRAL: Tables.DIM_CURRAL,
    DimensionType.DIETA: Tables.DIM_DIETA,
    DimensionType.EQUIPAMENTO: Tables.DIM_EQUIPAMENTO,
    DimensionType.TRATEIRO: Tables.DIM_TRATEIRO,
}

CacheKey = Tuple[str, str, str]


def normalize_code(code: Any) -> Optional[str]:
    """Uppercase, trimmed, single-spaced; blank codes become None."""
    if code is None:
        return None
    text = re.sub(r"\s+", " ", str(code)).strip().upper()
    return text or None


class DimensionCache:
    """
    Per-service cache of resolved ids and open placeholders.

    Advisory only: a miss always falls back to the store.
    """

    def __init__(self):
        self._ids: Dict[CacheKey, str] = {}
        self._pending: Dict[CacheKey, str] = {}
        self.lock = asyncio.Lock()

    def get_id(self, key: CacheKey) -> Optional[str]:
        return self._ids.get(key)

    def set_id(self, key: CacheKey, value: str):
        self._ids[key] = value

    def get_pending(self, key: CacheKey) -> Optional[str]:
        return self._pending.get(key)

    def set_pending(self, key: CacheKey, value: str):
        self._pending[key] = value

    def drop_pending(self, key: CacheKey):
        self._pending.pop(key, None)

    def clear(self):
        self._ids.clear()
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._ids) + len(self._pending)


class DimensionLookupService(ABC):
    """Port used by the upsert engine to resolve dimension codes."""

    @abstractmethod
    async def lookup_id(self, dimension: DimensionType, code: Optional[str], organization_id: str) -> Optional[str]:
        """Id of the registered dimension row, or None."""

    @abstractmethod
    async def create_pending(
        self,
        dimension: DimensionType,
        code: str,
        organization_id: str,
        source_file_id: Optional[str] = None
    ) -> str:
        """Id of the open placeholder for this code, created on first use."""

    @abstractmethod
    async def resolve_pending_entry(
        self,
        dimension: DimensionType,
        pending_id: str,
        resolved_id: Optional[str] = None,
        resolved_by: Optional[str] = None
    ) -> Dict[str, Any]:
        """Close a placeholder by pointing it at a real dimension row."""

    @abstractmethod
    async def reject_pending_entry(
        self,
        pending_id: str,
        rejected_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """Close a placeholder without resolving it."""

    @abstractmethod
    async def get_pending_entries(
        self,
        organization_id: str,
        dimension: Optional[DimensionType] = None
    ) -> List[Dict[str, Any]]:
        """Open placeholders of an organization."""

    async def lookup_curral_id(self, code: Optional[str], organization_id: str) -> Optional[str]:
        return await self.lookup_id(DimensionType.CURRAL, code, organization_id)

    async def lookup_dieta_id(self, code: Optional[str], organization_id: str) -> Optional[str]:
        return await self.lookup_id(DimensionType.DIETA, code, organization_id)

    async def lookup_equipamento_id(self, code: Optional[str], organization_id: str) -> Optional[str]:
        return await self.lookup_id(DimensionType.EQUIPAMENTO, code, organization_id)

    async def lookup_trateiro_id(self, code: Optional[str], organization_id: str) -> Optional[str]:
        return await self.lookup_id(DimensionType.TRATEIRO, code, organization_id)

    async def create_pending_curral(self, code: str, organization_id: str, source_file_id: Optional[str] = None) -> str:
        return await self.create_pending(DimensionType.CURRAL, code, organization_id, source_file_id)

    async def create_pending_dieta(self, code: str, organization_id: str, source_file_id: Optional[str] = None) -> str:
        return await self.create_pending(DimensionType.DIETA, code, organization_id, source_file_id)

    async def create_pending_equipamento(self, code: str, organization_id: str, source_file_id: Optional[str] = None) -> str:
        return await self.create_pending(DimensionType.EQUIPAMENTO, code, organization_id, source_file_id)

    async def create_pending_trateiro(self, code: str, organization_id: str, source_file_id: Optional[str] = None) -> str:
        return await self.create_pending(DimensionType.TRATEIRO, code, organization_id, source_file_id)


class StoreDimensionLookup(DimensionLookupService):
    """
    Dimension lookups against the dim_* and pending tables.

    Responsibilities:
    - Resolve codes to ids (cache first, then store)
    - Create at most one open placeholder per (organization, type, code)
    - Resolve / reject placeholders and keep the cache in step
    - Register new dimension rows
    """

    def __init__(self, store: StoragePort, cache: Optional[DimensionCache] = None):
        self.store = store
        self.cache = cache if cache is not None else DimensionCache()

    @staticmethod
    def _key(dimension: DimensionType, code: str, organization_id: str) -> CacheKey:
        return (organization_id, DimensionType(dimension).value, code)

    async def lookup_id(self, dimension: DimensionType, code: Optional[str], organization_id: str) -> Optional[str]:
        code = normalize_code(code)
        if code is None:
            return None

        key = self._key(dimension, code, organization_id)
        async with self.cache.lock:
            cached = self.cache.get_id(key)
        if cached:
            return cached

        rows = await self.store.query(
            DIMENSION_TABLES[DimensionType(dimension)],
            where(organization_id=organization_id, code=code, active=True),
            limit=1
        )
        if not rows:
            return None

        async with self.cache.lock:
            self.cache.set_id(key, rows[0]["id"])
        return rows[0]["id"]

    async def _find_open_pending(self, dimension: DimensionType, code: str, organization_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.store.query(
            Tables.PENDING_DIMENSION,
            where(
                organization_id=organization_id,
                type=DimensionType(dimension).value,
                code=code,
                status=PendingStatus.PENDING.value,
            ),
            limit=1
        )
        return rows[0] if rows else None

    async def create_pending(
        self,
        dimension: DimensionType,
        code: str,
        organization_id: str,
        source_file_id: Optional[str] = None
    ) -> str:
        """
        Return the open placeholder for this code, creating it if needed.

        Two workers racing on the same code both end up with the one row
        that won the insert.
        """
        normalized = normalize_code(code)
        if normalized is None:
            raise ValueError("Cannot create a pending dimension for a blank code")

        key = self._key(dimension, normalized, organization_id)
        async with self.cache.lock:
            cached = self.cache.get_pending(key)
        if cached:
            return cached

        existing = await self._find_open_pending(dimension, normalized, organization_id)
        if existing is None:
            try:
                existing = await self.store.insert(Tables.PENDING_DIMENSION, {
                    "id": generate_id(),
                    "organization_id": organization_id,
                    "type": DimensionType(dimension).value,
                    "code": normalized,
                    "status": PendingStatus.PENDING.value,
                    "source_file_id": source_file_id,
                    "resolved_at": None,
                    "resolved_by": None,
                    "resolved_value": None,
                    "notes": None,
                    "created_at": datetime.utcnow(),
                })
                logger.info(
                    f"Created pending {DimensionType(dimension).value} '{normalized}' for {organization_id}"
                )
            except IntegrityConflictError:
                existing = await self._find_open_pending(dimension, normalized, organization_id)
                if existing is None:
                    raise

        async with self.cache.lock:
            self.cache.set_pending(key, existing["id"])
        return existing["id"]

    async def _get_pending(self, pending_id: str) -> Dict[str, Any]:
        entry = await self.store.get(Tables.PENDING_DIMENSION, pending_id)
        if entry is None:
            raise EntityNotFoundError("pending_dimension", pending_id)
        if entry["status"] != PendingStatus.PENDING.value:
            raise StateTransitionError(
                entry["status"],
                PendingStatus.RESOLVED.value,
                context={"pending_id": pending_id, "reason": "entry already closed"}
            )
        return entry

    async def resolve_pending_entry(
        self,
        dimension: DimensionType,
        pending_id: str,
        resolved_id: Optional[str] = None,
        resolved_by: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Point a placeholder at a real dimension row.

        Without `resolved_id` the pending code is registered as a new
        dimension row. Fact rows loaded earlier keep the placeholder id;
        only lookups made after resolution see the real id.
        """
        entry = await self._get_pending(pending_id)
        dimension = DimensionType(dimension)
        if entry["type"] != dimension.value:
            raise ValueError(f"Pending entry {pending_id} is a {entry['type']}, not a {dimension.value}")

        if resolved_id is None:
            row = await self.register_dimension(dimension, entry["code"], entry["organization_id"])
            resolved_id = row["id"]
        elif await self.store.get(DIMENSION_TABLES[dimension], resolved_id) is None:
            raise EntityNotFoundError(dimension.value, resolved_id)

        updated = await self.store.update(Tables.PENDING_DIMENSION, pending_id, {
            "status": PendingStatus.RESOLVED.value,
            "resolved_value": resolved_id,
            "resolved_by": resolved_by,
            "resolved_at": datetime.utcnow(),
        })

        key = self._key(dimension, entry["code"], entry["organization_id"])
        async with self.cache.lock:
            self.cache.drop_pending(key)
            self.cache.set_id(key, resolved_id)

        logger.info(f"Pending {dimension.value} '{entry['code']}' resolved to {resolved_id}")
        return updated

    async def reject_pending_entry(
        self,
        pending_id: str,
        rejected_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        entry = await self._get_pending(pending_id)
        updated = await self.store.update(Tables.PENDING_DIMENSION, pending_id, {
            "status": PendingStatus.REJECTED.value,
            "resolved_by": rejected_by,
            "resolved_at": datetime.utcnow(),
            "notes": notes,
        })
        async with self.cache.lock:
            self.cache.drop_pending(self._key(entry["type"], entry["code"], entry["organization_id"]))

        logger.info(f"Pending {entry['type']} '{entry['code']}' rejected")
        return updated

    async def get_pending_entries(
        self,
        organization_id: str,
        dimension: Optional[DimensionType] = None
    ) -> List[Dict[str, Any]]:
        conditions = where(organization_id=organization_id, status=PendingStatus.PENDING.value)
        if dimension:
            conditions += where(type=DimensionType(dimension).value)
        return await self.store.query(Tables.PENDING_DIMENSION, conditions, order_by="created_at")

    async def register_dimension(
        self,
        dimension: DimensionType,
        code: str,
        organization_id: str,
        name: Optional[str] = None
    ) -> Dict[str, Any]:
        """Insert a dimension row, or return the existing one for this code."""
        dimension = DimensionType(dimension)
        normalized = normalize_code(code)
        if normalized is None:
            raise ValueError("Dimension code cannot be blank")

        table = DIMENSION_TABLES[dimension]
        try:
            row = await self.store.insert(table, {
                "id": generate_id(),
                "organization_id": organization_id,
                "code": normalized,
                "name": name or normalized,
                "active": True,
                "created_at": datetime.utcnow(),
            })
        except IntegrityConflictError:
            rows = await self.store.query(table, where(organization_id=organization_id, code=normalized), limit=1)
            if not rows:
                raise
            row = rows[0]

        async with self.cache.lock:
            self.cache.set_id(self._key(dimension, normalized, organization_id), row["id"])
        return row
