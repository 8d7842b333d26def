"""
FastAPI Production Application

Main entry point for the Forum Analytics API.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Optional

import structlog
from fastapi import FastAPI

from src.aggregation import SessionExpirySweeper
from src.config import get_settings
from src.config.logging import configure_logging
from src.database.connection import close_database, init_database
from src.ingestion.pipeline import close_pipeline, init_pipeline
from src.serving.api.main import create_api_app
from src.serving.cache import close_redis, init_redis

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    logger.info("Starting Forum Analytics API", environment=settings.app_env, version=settings.version)

    await init_database()

    redis = None
    try:
        redis = await init_redis()
    except Exception as e:
        logger.warning("Redis unavailable, caching disabled", error=str(e))

    pipeline = await init_pipeline(redis)

    sweep_task: Optional[asyncio.Task] = None
    if settings.sessions.sweep_in_process:
        sweeper = SessionExpirySweeper(aggregator=pipeline.aggregator)
        sweep_task = asyncio.create_task(sweeper.run_forever())
        logger.info("In-process session sweep started", interval_seconds=settings.sessions.sweep_interval_seconds)

    yield

    logger.info("Shutting down...")
    if sweep_task is not None:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
    await close_pipeline()
    await close_redis()
    await close_database()


app = create_api_app(lifespan=lifespan)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
