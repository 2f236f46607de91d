# ============================================================================
# File: ingestion/loaders/upsert_engine.py
# Description: Idempotent fact loader keyed by tenant-scoped natural keys
# ============================================================================
"""
Upsert engine for dimensional fact tables.

Every record is identified by its natural key. Loading the same record
twice is a no-op, a changed measure becomes an update of that row, and a
dimension code that is not registered yet is replaced by a pending
placeholder instead of failing the record.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from core.exceptions import (
    ETLException,
    IntegrityConflictError,
    RetryableError,
    StorageError,
    UpsertError,
)
from ingestion.loaders.dimensions import DimensionLookupService, normalize_code
from ingestion.loaders.facts import FactDefinition, build_natural_key, get_fact_definition, parse_date
from ingestion.storage.base import Condition, StoragePort, where
from models.base import generate_id
from schemas.etl import (
    BatchUpsertResult,
    IntegrityReport,
    PendingReference,
    UpsertErrorEntry,
    UpsertResult,
)

logger = logging.getLogger(__name__)

NUMERIC_TOLERANCE = 1e-6
CONFLICT_COLUMNS = ("organization_id", "natural_key")

RecordInput = Union[Dict[str, Any], BaseModel]


def values_differ(old: Any, new: Any) -> bool:
    """Change test used for re-loads; numbers compare within 1e-6."""
    if old is None or new is None:
        return (old is None) != (new is None)
    if isinstance(old, (int, float)) and isinstance(new, (int, float)) \
            and not isinstance(old, bool) and not isinstance(new, bool):
        return abs(float(old) - float(new)) > NUMERIC_TOLERANCE
    return old != new


def describe_validation_error(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'record'}: {err['msg']}"
        for err in error.errors()
    )


class UpsertEngine:
    """
    Loads validated fact records idempotently.

    Responsibilities:
    - Compute natural keys and resolve dimension ids
    - Create pending placeholders for unknown dimension codes
    - Decide insert / update / skip per record
    - Batch loads with per-record error isolation
    - Post-load integrity checks
    """

    def __init__(
        self,
        store: StoragePort,
        dimensions: DimensionLookupService,
        batch_size: Optional[int] = None,
        use_native_upsert: Optional[bool] = None
    ):
        self.store = store
        self.dimensions = dimensions
        self.batch_size = batch_size or settings.ETL_BATCH_SIZE
        self.use_native_upsert = (
            settings.USE_NATIVE_UPSERT if use_native_upsert is None else use_native_upsert
        )

    # --------------------------------------------------
    # Record preparation
    # --------------------------------------------------

    @staticmethod
    def coerce_record(definition: FactDefinition, record: RecordInput) -> BaseModel:
        if isinstance(record, definition.record_model):
            return record
        if isinstance(record, BaseModel):
            record = record.dict()
        return definition.record_model(**record)

    async def resolve_dimensions(
        self,
        definition: FactDefinition,
        record: BaseModel,
        organization_id: str,
        source_file_id: Optional[str] = None
    ) -> Tuple[Dict[str, Optional[str]], List[PendingReference]]:
        """Map each dimension reference to an id, falling back to a placeholder."""
        ids: Dict[str, Optional[str]] = {}
        pending: List[PendingReference] = []

        for ref in definition.dimensions:
            code = normalize_code(getattr(record, ref.record_field))
            if code is None:
                ids[ref.id_column] = None
                continue

            dimension_id = await self.dimensions.lookup_id(ref.dimension, code, organization_id)
            if dimension_id is None:
                dimension_id = await self.dimensions.create_pending(
                    ref.dimension, code, organization_id, source_file_id
                )
                pending.append(PendingReference(type=ref.dimension.value, code=code, pending_id=dimension_id))
            ids[ref.id_column] = dimension_id

        return ids, pending

    @staticmethod
    def build_row(
        definition: FactDefinition,
        record: BaseModel,
        organization_id: str,
        natural_key: str,
        dimension_ids: Dict[str, Optional[str]],
        source_file_id: Optional[str]
    ) -> Dict[str, Any]:
        now = datetime.utcnow()
        row = {
            "id": generate_id(),
            "organization_id": organization_id,
            "natural_key": natural_key,
            "data_ref": record.data_ref,
            "source_file_id": source_file_id,
            "created_at": now,
            "updated_at": now,
        }
        for column in definition.measure_columns + definition.attribute_columns:
            row[column] = getattr(record, column)
        row.update(dimension_ids)
        return row

    @staticmethod
    def changed_fields(definition: FactDefinition, existing: Dict[str, Any], row: Dict[str, Any]) -> List[str]:
        return [c for c in definition.compare_columns if values_differ(existing.get(c), row.get(c))]

    # --------------------------------------------------
    # Single record
    # --------------------------------------------------

    async def find_existing_record(
        self,
        definition: FactDefinition,
        organization_id: str,
        natural_key: str
    ) -> Optional[Dict[str, Any]]:
        rows = await self.store.query(
            definition.table, where(organization_id=organization_id, natural_key=natural_key), limit=1
        )
        return rows[0] if rows else None

    async def upsert_record(
        self,
        record: RecordInput,
        fact_type: Any,
        organization_id: str,
        source_file_id: Optional[str] = None
    ) -> UpsertResult:
        """
        Insert, update or skip one record.

        Raises:
            pydantic.ValidationError: Raw input does not fit the record model
            UpsertError: The store rejected the write
        """
        definition = get_fact_definition(fact_type)
        record = self.coerce_record(definition, record)
        natural_key = definition.natural_key(record, organization_id)

        dimension_ids, pending = await self.resolve_dimensions(
            definition, record, organization_id, source_file_id
        )
        row = self.build_row(definition, record, organization_id, natural_key, dimension_ids, source_file_id)

        try:
            if self.use_native_upsert:
                result = await self._native_upsert(definition, row)
            else:
                result = await self._compare_and_write(definition, row)
        except StorageError as e:
            raise UpsertError(
                f"Upsert failed for {natural_key}: {e.message}",
                context={"natural_key": natural_key, "table_name": definition.table},
                original_exception=e
            )

        if pending:
            result.pending_entries = pending
            # An unchanged record stays "skipped" so reprocessing reads as a no-op
            if result.operation != "skipped":
                result.action = "pending"
                result.reason = f"Pending resolution for {len(pending)} dimension(s)"
        return result

    async def _compare_and_write(self, definition: FactDefinition, row: Dict[str, Any]) -> UpsertResult:
        natural_key = row["natural_key"]
        existing = await self.find_existing_record(definition, row["organization_id"], natural_key)

        if existing is None:
            try:
                inserted = await self.store.insert(definition.table, row)
                return UpsertResult(
                    action="inserted", operation="inserted", natural_key=natural_key, record_id=inserted["id"]
                )
            except IntegrityConflictError:
                # Lost an insert race on the same key; compare against the winner
                existing = await self.find_existing_record(definition, row["organization_id"], natural_key)
                if existing is None:
                    raise
                logger.debug(f"Concurrent insert of {natural_key}, falling back to update")

        changed = self.changed_fields(definition, existing, row)
        if not changed:
            return UpsertResult(
                action="skipped",
                operation="skipped",
                natural_key=natural_key,
                record_id=existing["id"],
                reason="No changes detected",
            )

        updates = {column: row[column] for column in changed}
        updates["updated_at"] = row["updated_at"]
        updates["source_file_id"] = row["source_file_id"]
        if await self.store.update(definition.table, existing["id"], updates) is None:
            raise UpsertError(
                f"Record {natural_key} disappeared before it could be updated",
                context={"natural_key": natural_key, "table_name": definition.table, "record_id": existing["id"]}
            )
        return UpsertResult(
            action="updated",
            operation="updated",
            natural_key=natural_key,
            record_id=existing["id"],
            changed_fields=changed,
        )

    async def _native_upsert(self, definition: FactDefinition, row: Dict[str, Any]) -> UpsertResult:
        outcome = await self.store.atomic_upsert(
            definition.table, row, CONFLICT_COLUMNS, definition.compare_columns
        )
        return UpsertResult(
            action=outcome.operation,
            operation=outcome.operation,
            natural_key=row["natural_key"],
            record_id=outcome.row["id"] if outcome.row else None,
            reason="No changes detected" if outcome.operation == "skipped" else None,
        )

    # --------------------------------------------------
    # Batches
    # --------------------------------------------------

    @staticmethod
    def _natural_key_from_raw(definition: FactDefinition, record: RecordInput, organization_id: str) -> Optional[str]:
        """Best-effort key for error reporting on records that failed validation."""
        data = record.dict() if isinstance(record, BaseModel) else record
        try:
            data_ref = parse_date(data.get("data_ref"))
        except (ValueError, TypeError):
            return None
        if data_ref is None:
            return None
        return build_natural_key(organization_id, data_ref, [data.get(f) for f in definition.key_fields])

    async def _process_batch(
        self,
        definition: FactDefinition,
        records: Sequence[RecordInput],
        first_index: int,
        organization_id: str,
        source_file_id: Optional[str]
    ) -> BatchUpsertResult:
        result = BatchUpsertResult(batches=1)

        for offset, raw in enumerate(records):
            row_index = first_index + offset
            try:
                outcome = await self.upsert_record(raw, definition.fact_type, organization_id, source_file_id)
            except PydanticValidationError as e:
                result.errors.append(UpsertErrorEntry(
                    natural_key=self._natural_key_from_raw(definition, raw, organization_id),
                    row_index=row_index,
                    message=describe_validation_error(e),
                    data=raw if isinstance(raw, dict) else None,
                ))
                continue
            except RetryableError:
                raise
            except ETLException as e:
                result.errors.append(UpsertErrorEntry(
                    natural_key=e.context.get("natural_key") or self._natural_key_from_raw(definition, raw, organization_id),
                    row_index=row_index,
                    message=e.message,
                ))
                continue

            result.total_processed += 1
            if outcome.operation == "inserted":
                result.inserted += 1
            elif outcome.operation == "updated":
                result.updated += 1
            else:
                result.skipped += 1
            if outcome.action == "pending":
                result.pending += 1

        return result

    async def upsert_batch(
        self,
        records: Iterable[RecordInput],
        fact_type: Any,
        organization_id: str,
        source_file_id: Optional[str] = None
    ) -> BatchUpsertResult:
        """
        Load records in sequential sub-batches.

        Invalid records and store rejections become error entries; transient
        infrastructure errors abort the batch so the run can be retried.
        """
        definition = get_fact_definition(fact_type)
        records = list(records)
        total = BatchUpsertResult()

        for start in range(0, len(records), self.batch_size):
            chunk = records[start:start + self.batch_size]
            total = total.merge(
                await self._process_batch(definition, chunk, start, organization_id, source_file_id)
            )

        logger.info(
            f"Upserted {len(records)} {definition.fact_type.value} records for {organization_id}: "
            f"{total.inserted} inserted, {total.updated} updated, {total.skipped} skipped, "
            f"{total.pending} pending, {len(total.errors)} errors"
        )
        return total

    # --------------------------------------------------
    # Verification
    # --------------------------------------------------

    async def verify_batch_integrity(
        self,
        organization_id: str,
        natural_keys: Sequence[str],
        fact_type: Any
    ) -> IntegrityReport:
        definition = get_fact_definition(fact_type)
        expected = list(dict.fromkeys(natural_keys))
        found = await self.store.query(
            definition.table,
            where(organization_id=organization_id) + [Condition("natural_key", "in", expected)],
        )
        found_keys = {row["natural_key"] for row in found}
        missing = [key for key in expected if key not in found_keys]
        if missing:
            logger.warning(f"{len(missing)} of {len(expected)} natural keys missing after load")
        return IntegrityReport(
            total_expected=len(expected),
            total_found=len(found_keys),
            missing_keys=missing,
            is_complete=not missing,
        )

    async def get_records_by_file_id(
        self,
        source_file_id: str,
        fact_type: Any,
        organization_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        definition = get_fact_definition(fact_type)
        conditions = where(source_file_id=source_file_id)
        if organization_id:
            conditions += where(organization_id=organization_id)
        return await self.store.query(definition.table, conditions, order_by="natural_key")

    async def get_record_count(self, organization_id: str, fact_type: Any) -> int:
        definition = get_fact_definition(fact_type)
        return await self.store.count(definition.table, where(organization_id=organization_id))
