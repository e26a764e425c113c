import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ASSET_NAMESPACE", "portfolio")
os.environ.setdefault("ASSET_STORE", "cloudinary")
os.environ.setdefault("CLOUDINARY_CLOUD_NAME", "demo")
os.environ.setdefault("CLOUDINARY_UPLOAD_PRESET", "unsigned-test")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from portfolio.core.database import Base
from portfolio.models import Collection  # noqa: F401
from portfolio.services.compression import CompressionPolicy
from portfolio.services.ingestion import BatchOrchestrator, IngestionPipeline
from tests.helpers import FakeUploader


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'portfolio.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def policy():
    return CompressionPolicy(byte_budget=10 * 1024 * 1024, max_dimension=4096, quality=85)


@pytest.fixture
def orchestrator(uploader, policy):
    pipeline = IngestionPipeline(uploader, policy=policy, retry_attempts=2, retry_backoff_seconds=0)
    return BatchOrchestrator(pipeline, batch_size=3, max_file_bytes=50 * 1024 * 1024)
