"""
Pydantic schemas for lifecycle records and the operator API.

Schemas:
    etl: File, run, DLQ, pending dimension and reprocessing records;
         duplicate detection, retry and upsert results
    api: Request/response models for the FastAPI routes

Usage:
    from schemas.etl import ETLRunRecord, RetryResult
    from schemas.api import FileUploadResponse, StatsResponse
"""

__all__ = [
    "ETLFileRecord",
    "ETLRunRecord",
    "RetryResult",
    "UploadDecision",
    "FileUploadResponse",
    "StatsResponse",
]
