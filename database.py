"""
Database engine and session dependency

Reports, exams and certificates live in PostgreSQL (asyncpg). Tests run the
same models on SQLite through aiosqlite.
"""
import logging
import os
from typing import Any, Dict

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from config import settings

logger = logging.getLogger(__name__)

# Engine echo is noisy with JSON history columns
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def engine_options(database_url: str) -> Dict[str, Any]:
    """Pool settings for the server databases; SQLite keeps its defaults"""
    options: Dict[str, Any] = {
        "echo": False,
        "future": True,
        "pool_pre_ping": True,
    }
    url = database_url.lower()
    if "sqlite" in url:
        return options

    options.update(
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_POOL_MAX_OVERFLOW", "20")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "5")),
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "7200")),
    )
    if "postgresql" in url and os.getenv("DB_SSL", "False").lower() == "true":
        options["connect_args"] = {"ssl": "require"}
    return options


engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db():
    """
    Request-scoped session: committed when the route returns, rolled back
    when it raises.

    Usage in FastAPI routes:
        async def my_route(db: AsyncSession = Depends(get_db)):
    """
    session = AsyncSessionLocal()
    try:
        yield session
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error(f"Database error in session: {str(e)}", exc_info=True)
        raise
    finally:
        await session.close()


# Alias for consistency
get_async_session = get_db
