"""
Custom exceptions for the feedlot ETL engine with structured error context.

Every exception carries a context dictionary so failures can be stored on
runs, dead-letter entries and audit records without losing detail. The
RetryableError / NonRetryableError mixins drive error classification in
the retry subsystem.

Exception Hierarchy:
    ETLException (base)
    ├── ParseError
    ├── TransformationError
    │   ├── ValidationError
    │   │   ├── SchemaValidationError
    │   │   └── BusinessRuleError
    │   └── DataFormatError
    ├── LoadError
    │   ├── DatabaseError
    │   │   ├── DatabaseConnectionError
    │   │   └── DeadlockError
    │   ├── StorageError
    │   │   └── IntegrityConflictError
    │   └── UpsertError
    ├── StateTransitionError
    ├── EntityNotFoundError
    ├── ConcurrencyConflictError
    ├── LockAcquisitionError
    ├── TransientInfraError
    │   ├── NetworkError
    │   │   └── RateLimitError
    │   └── ProcessingTimeoutError
    ├── PermanentError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any, Iterable
from datetime import datetime


class ETLException(Exception):
    """
    Base exception for all ETL-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (entity ids, states, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": {k: _jsonable(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return str(value)


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Temporary database connection issues
    - Optimistic-locking conflicts that exhausted their local retries
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Invalid data format
    - Schema or business-rule validation errors
    - Invalid state transitions
    - Missing entities
    """
    pass


# ============================================================================
# Parsing / Transformation Errors
# ============================================================================

class ParseError(NonRetryableError):
    """
    Raised when an uploaded file cannot be parsed into rows.

    Context should include:
        - filename: Name of the uploaded file
        - file_id: ETL file id (if known)
    """
    pass


class TransformationError(ETLException):
    """Base exception for data transformation failures."""
    pass


class ValidationError(NonRetryableError, TransformationError):
    """
    Exception raised when record validation fails.

    Context should include:
        - field_name: Name of the field that failed validation
        - field_value: Value that failed validation
        - validation_rule: The validation rule that was violated
    """
    pass


class SchemaValidationError(ValidationError):
    """Record does not match the expected structure of its fact type."""
    pass


class BusinessRuleError(ValidationError):
    """Record is structurally valid but breaks a domain rule."""
    pass


class DataFormatError(NonRetryableError, TransformationError):
    """Data format errors that should not be retried."""
    pass


# ============================================================================
# Load / Storage Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, UPDATE, UPSERT)
        - table_name: Name of the table
    """
    pass


class StorageError(LoadError):
    """Raised by storage adapters for failures that are not transient."""
    pass


class IntegrityConflictError(NonRetryableError, StorageError):
    """
    A unique constraint rejected an insert.

    Context should include:
        - table_name: Table that rejected the row
        - columns: The unique columns involved
    """
    pass


class UpsertError(LoadError):
    """
    Exception raised when a fact upsert fails.

    Context should include:
        - natural_key: Natural key of the record being upserted
        - table_name: Target fact table
    """
    pass


# ============================================================================
# Lifecycle Errors
# ============================================================================

class StateTransitionError(NonRetryableError):
    """
    Raised when a transition is not an edge of the state graph.

    Context should include:
        - from_state / to_state
        - allowed: Valid successors of from_state
    """

    def __init__(
        self,
        from_state: str,
        to_state: str,
        allowed: Iterable[str] = (),
        context: Optional[Dict[str, Any]] = None
    ):
        allowed = sorted(allowed)
        message = (
            f"Invalid state transition from {from_state} to {to_state}. "
            f"Valid transitions: {', '.join(allowed) or 'none'}"
        )
        ctx = dict(context or {})
        ctx.update({"from_state": from_state, "to_state": to_state, "allowed": allowed})
        super().__init__(message, ctx)
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed


class EntityNotFoundError(NonRetryableError):
    """Raised when a file, run or queue entry does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type} {entity_id} not found",
            context={"entity_type": entity_type, "entity_id": entity_id}
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConcurrencyConflictError(RetryableError):
    """
    A compare-and-swap update kept losing to concurrent writers.

    Context should include:
        - table_name / record_id
        - attempts: Number of attempts made
        - current_version: Last version observed
    """
    pass


class LockAcquisitionError(RetryableError):
    """The logical lock on a record is held by another live session."""
    pass


class LockLostError(ETLException):
    """
    The worker no longer owns the run it was processing.

    Raised when an attempt fails after the stale-lock sweep (or another
    worker) took the run over. The failure belongs to the new owner's
    bookkeeping, so it is neither retried nor dead-lettered.
    """

    def __init__(self, run_id: str, lock_id: str, locked_by: Optional[str] = None,
                 original_exception: Optional[Exception] = None):
        super().__init__(
            f"Run {run_id} was taken over while lock {lock_id} was processing it",
            context={"run_id": run_id, "lock_id": lock_id, "locked_by": locked_by},
            original_exception=original_exception
        )
        self.run_id = run_id
        self.lock_id = lock_id


# ============================================================================
# Infrastructure Errors
# ============================================================================

class TransientInfraError(RetryableError):
    """Base for network/database blips that are retried with backoff."""
    pass


class NetworkError(TransientInfraError):
    """Network-related errors that should be retried."""
    pass


class RateLimitError(NetworkError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class DatabaseConnectionError(TransientInfraError, DatabaseError):
    """Database connection errors that should be retried."""
    pass


class DeadlockError(TransientInfraError, DatabaseError):
    """Database deadlock errors that should be retried."""
    pass


class ProcessingTimeoutError(TransientInfraError):
    """A run held its processing lock past the stale timeout."""
    pass


class PermanentError(NonRetryableError):
    """Failure that will repeat identically on every attempt."""
    pass
