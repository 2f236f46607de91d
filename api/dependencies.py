"""
FastAPI dependencies: session -> store -> runner
"""

from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_session
from ingestion.loaders.dimensions import DimensionLookupService
from ingestion.runner import ETLRunner, build_runner
from ingestion.service import ETLStateMachineService
from ingestion.storage.base import StoragePort
from ingestion.storage.sqlalchemy_store import SqlAlchemyStore


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_session():
        yield session


async def get_store(db: AsyncSession = Depends(get_db)) -> StoragePort:
    return SqlAlchemyStore(db)


async def get_runner(store: StoragePort = Depends(get_store)) -> ETLRunner:
    # A fresh lookup cache per request; the scheduler keeps its own
    return build_runner(store, worker_id="api")


async def get_service(runner: ETLRunner = Depends(get_runner)) -> ETLStateMachineService:
    return runner.service


async def get_dimension_lookup(runner: ETLRunner = Depends(get_runner)) -> DimensionLookupService:
    return runner.engine.dimensions
