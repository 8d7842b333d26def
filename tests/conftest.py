"""
Test Suite Configuration
"""
from typing import AsyncGenerator

import httpx
import pytest
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession

from src.aggregation import RollupAggregator
from src.database import connection
from src.database.connection import close_database, init_database
from src.database.models import Base, FunnelDefinition, TrackedKeyword
from src.ingestion import pipeline as pipeline_module
from src.ingestion.outbox import IngestionOutbox
from src.ingestion.pipeline import IngestionPipeline, close_pipeline
from src.serving.api.main import create_api_app


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[None, None]:
    """File-backed SQLite database with the full schema, one per test"""
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'analytics.db'}")
    async with connection.get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    await close_pipeline()
    await close_database()


@pytest.fixture
async def test_db(database) -> AsyncGenerator[AsyncSession, None]:
    """Session for arranging rows and asserting on results"""
    async with connection.get_session_factory()() as session:
        yield session
        await session.rollback()


@pytest.fixture
def aggregator(database) -> RollupAggregator:
    """Aggregator with the default, database-backed funnel progress"""
    return RollupAggregator(backoff_ms=5)


@pytest.fixture
def ingestion_pipeline(aggregator) -> IngestionPipeline:
    """Application pipeline aggregating inline, shared by the API under test"""
    pipeline = IngestionPipeline(aggregator=aggregator, outbox=IngestionOutbox(max_size=10), aggregate_inline=True)
    pipeline_module._pipeline = pipeline
    return pipeline


@pytest.fixture
def app(ingestion_pipeline) -> FastAPI:
    return create_api_app()


@pytest.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the ASGI app"""
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http


@pytest.fixture
async def api_client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Client rooted at /api, the base URL the capture client expects"""
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test/api") as http:
        yield http


@pytest.fixture
async def signup_funnel(test_db) -> FunnelDefinition:
    funnel = FunnelDefinition(
        tenant_id=7,
        name="Signup",
        steps=["Visit", "SignUp", "Purchase"],
        conversion_goal="Purchase",
    )
    test_db.add(funnel)
    await test_db.commit()
    return funnel


@pytest.fixture
async def tracked_keyword(test_db) -> TrackedKeyword:
    keyword = TrackedKeyword(tenant_id=7, keyword="forum software")
    test_db.add(keyword)
    await test_db.commit()
    return keyword
