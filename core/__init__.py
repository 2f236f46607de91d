"""
Core utilities and configuration for the feedlot ETL engine.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Database engine and async session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import StateTransitionError, ConcurrencyConflictError
    from core.logging import setup_logging

Example:
    setup_logging()

    async with async_session_maker() as session:
        store = SqlAlchemyStore(session)
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "ETLException",
    "RetryableError",
    "NonRetryableError",
    "ParseError",
    "TransformationError",
    "ValidationError",
    "SchemaValidationError",
    "BusinessRuleError",
    "DataFormatError",
    "LoadError",
    "DatabaseError",
    "StorageError",
    "IntegrityConflictError",
    "UpsertError",
    "StateTransitionError",
    "EntityNotFoundError",
    "ConcurrencyConflictError",
    "LockAcquisitionError",
    "TransientInfraError",
    "NetworkError",
    "RateLimitError",
    "DatabaseConnectionError",
    "DeadlockError",
    "ProcessingTimeoutError",
    "PermanentError",
]
