from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
import logging

from config import get_settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    """Pool and connect options per backend"""
    if url.startswith("sqlite"):
        # Writers wait for the file lock instead of failing immediately
        return {"connect_args": {"timeout": 30}}

    options = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
    }
    if "ssl=" not in url:
        options["connect_args"] = {"ssl": "require"}
    return options


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine for the given URL"""
    return create_async_engine(url, echo=False, **_engine_options(url))


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Create a session factory; sessions never expire loaded rows on commit"""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


DATABASE_URL = get_settings().get_database_url()

engine = build_engine(DATABASE_URL)

AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    pass


async def get_db():
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker:
    """Dependency returning the session factory used for atomic units"""
    return AsyncSessionLocal


async def create_tables(bind: AsyncEngine = engine):
    """Create all mapped tables that do not exist yet"""
    # Models must be imported so they register on Base.metadata
    from database import ledger_models, notification_models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    """Initialize database connection and make sure tables exist"""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")

        await create_tables(engine)
        logger.info(f"Tables ready: {sorted(Base.metadata.tables.keys())}")
        return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
