"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, files, runs, dlq, dimensions, stats
from core.config import settings
from core.exceptions import (
    ConcurrencyConflictError,
    EntityNotFoundError,
    ETLException,
    LockAcquisitionError,
    StateTransitionError,
    ValidationError,
)
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.scheduler import ETLScheduler

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Feedlot ETL API",
    description="Operator API for feedlot file ingestion, run lifecycle and dead-letter handling",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)
app.state.scheduler = None


# Include routers
app.include_router(health.router)
app.include_router(files.router)
app.include_router(runs.router)
app.include_router(dlq.router)
app.include_router(dimensions.router)
app.include_router(stats.router)


# ============================================================================
# Error mapping
# ============================================================================

def _status_for(exc: ETLException) -> int:
    if isinstance(exc, EntityNotFoundError):
        return 404
    if isinstance(exc, (StateTransitionError, ConcurrencyConflictError, LockAcquisitionError)):
        return 409
    if isinstance(exc, ValidationError):
        return 422
    return 500


@app.exception_handler(ETLException)
async def etl_exception_handler(request: Request, exc: ETLException):
    status_code = _status_for(exc)
    request_id = getattr(request.state, "request_id", None)
    if status_code >= 500:
        logger.error(f"[{request_id}] {request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"[{request_id}] {request.method} {request.url.path} -> {status_code}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": exc.to_dict(), "request_id": request_id},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "request_id": getattr(request.state, "request_id", None)},
    )


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Feedlot ETL API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        app.state.scheduler = ETLScheduler()
        app.state.scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Feedlot ETL API")
    if app.state.scheduler is not None:
        app.state.scheduler.stop()
        app.state.scheduler = None


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Feedlot ETL API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "files": "/files",
            "runs": "/runs/{run_id}",
            "dlq": "/dlq",
            "pending_dimensions": "/dimensions/pending",
            "stats": "/stats"
        }
    }
