"""Database session dependency."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from talentgate.core.database import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session that commits on success."""
    async for session in get_session():
        yield session
