from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from portfolio.core.config import settings


def engine_connect_args(database_url: str) -> dict:
    url = make_url(database_url)
    if not url.drivername.startswith("postgresql"):
        return {}
    requires_ssl = url.host is not None and url.host.endswith("supabase.com")
    return {
        "statement_cache_size": 0,  # required for Supabase pooler compatibility
        "ssl": "require" if requires_ssl else False,
    }


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    connect_args=engine_connect_args(settings.DATABASE_URL),
)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)

class Base(DeclarativeBase):
    pass

async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
