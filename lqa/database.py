"""
Async engine and session factory builders for the QA pipeline.

Nothing here is created at import time: the API process and the worker each
call ``build_engine`` / ``build_session_factory`` once at startup and pass the
factory to the components that need it. One session = one connection from
the pool; sessions are closed after each request/job.
"""
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def build_engine(database_url: str, *, pool_size: int = 5, max_overflow: int = 5) -> AsyncEngine:
    """Create the async engine. Connection timeout (seconds) so startup doesn't hang waiting for DB."""
    if not database_url:
        raise ValueError("DATABASE_URL is not set")
    connect_args = {"timeout": 15} if "asyncpg" in database_url else {}
    return create_async_engine(
        database_url,
        echo=False,
        connect_args=connect_args,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=300,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db(request: Request):
    """FastAPI dependency: one session per request from the app's session factory."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session
