"""FastAPI dependency injection for database sessions and the import scheduler."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from election_importer.core.database import get_session_factory
from election_importer.core.scheduler import ImportScheduler, scheduler


async def get_async_session() -> AsyncGenerator[AsyncSession]:
    """Yield an async database session with per-request lifecycle."""
    factory = get_session_factory()
    async with factory() as session:
        yield session


def get_scheduler() -> ImportScheduler:
    """Return the process-wide import scheduler."""
    return scheduler
