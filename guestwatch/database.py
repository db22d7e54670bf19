"""Database connection and session management."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from guestwatch.config import Settings, get_settings

settings = get_settings()


def build_engine(config: Settings) -> AsyncEngine:
    """Create the async engine for the guest database."""
    return create_async_engine(
        config.database_url,
        echo=config.api_debug,
        pool_size=config.database_pool_size,
        max_overflow=config.database_max_overflow,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Guest rows are read after commit (responses, audit merges)
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings)
async_session_factory = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session, committed when the handler returns."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the session factory.

    Background work that outlives a request (the security audit log) opens
    its own sessions from this factory instead of borrowing the request's.
    """
    return async_session_factory
