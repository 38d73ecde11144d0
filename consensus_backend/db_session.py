"""
Async engine and sessions for the consensus store.

SQLite (aiosqlite) is the local default; Postgres URLs are routed to asyncpg.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from consensus_backend.config import DATABASE_URL as _CONFIGURED_URL

_ASYNC_DRIVER_PREFIXES = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def to_async_url(url: str) -> str:
    """Rewrite a plain database URL to its async driver form; other URLs pass through."""
    for prefix, async_prefix in _ASYNC_DRIVER_PREFIXES.items():
        if url.startswith(prefix):
            return async_prefix + url[len(prefix):]
    return url


DATABASE_URL = to_async_url(_CONFIGURED_URL)

async_engine = create_async_engine(DATABASE_URL, echo=False)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_async_session():
    """Request-scoped session: commits when the route returns, rolls back if it raises."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_async_session_context():
    """Session for work outside a request, e.g. ``async with get_async_session_context() as db``."""
    return AsyncSessionLocal()
