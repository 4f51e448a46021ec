from contextlib import asynccontextmanager
from typing import AsyncGenerator
from litestar import Litestar

from realitypatch.config import settings
from realitypatch.accountability.service import SessionPolicy
from realitypatch.assistant.agent import create_assistant
from realitypatch.database.manager import RecordStore, create_db_pool


@asynccontextmanager
async def lifespan(app: Litestar) -> AsyncGenerator[None, None]:
    logger = app.logger
    if logger is None:
        raise RuntimeError("App logger is None")

    db_pool = await create_db_pool(settings.records_db, logger)
    record_store = RecordStore(
        db_pool,
        logger,
        retention_days=settings["store"].retention_days,
        max_retries=settings["store"].max_retries,
        backoff_base=settings["store"].backoff_base_seconds,
        backoff_max=settings["store"].backoff_max_seconds,
    )
    await record_store.purge_expired()

    app.state.db_pool = db_pool
    app.state.record_store = record_store
    app.state.assistant = create_assistant()
    app.state.policy = SessionPolicy.from_settings(settings)
    logger.info("RealityPatch started (ring=%s, model=%s)", settings.ring, settings.llm.model)

    try:
        yield
    finally:
        await db_pool.close()
