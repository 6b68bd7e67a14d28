# school_library/db/database.py
import logging
from typing import Optional

import motor.motor_asyncio
from beanie import init_beanie

from school_library.core.config import DATABASE_NAME, MONGODB_URL, STORAGE_BACKEND
from school_library.db.documents import (
    BookDocument, BorrowRecordDocument, MemberDocument, SequenceCounter
)
from school_library.repositories.base import UnitOfWork
from school_library.repositories.memory import InMemoryUnitOfWork
from school_library.repositories.mongo import MongoUnitOfWork

logger = logging.getLogger(__name__)

_unit_of_work: Optional[UnitOfWork] = None


async def init_db(backend: str = STORAGE_BACKEND) -> UnitOfWork:
    """Connect the configured storage backend and register it for request handlers."""
    global _unit_of_work

    if backend == "memory":
        logger.warning("Using in-memory storage. Data will not survive a restart.")
        _unit_of_work = InMemoryUnitOfWork()
        return _unit_of_work

    logger.info("Connecting to MongoDB...")
    client = motor.motor_asyncio.AsyncIOMotorClient(MONGODB_URL, tz_aware=True)
    database = client[DATABASE_NAME]
    logger.info(f"Using database: {DATABASE_NAME}")

    await init_beanie(
        database=database,
        document_models=[
            BookDocument,
            MemberDocument,
            BorrowRecordDocument,
            SequenceCounter,
        ]
    )
    logger.info("Beanie initialization complete for all models.")
    _unit_of_work = MongoUnitOfWork(client)
    return _unit_of_work


def get_unit_of_work() -> UnitOfWork:
    if _unit_of_work is None:
        raise RuntimeError("Database not initialised. Call init_db() during application startup.")
    return _unit_of_work


async def close_db() -> None:
    global _unit_of_work
    if _unit_of_work is not None:
        await _unit_of_work.close()
        _unit_of_work = None
        logger.info("Database connection closed.")
