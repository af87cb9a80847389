from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.db.session import async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """One ledger session per request.

    Services commit their own unit of work; anything left uncommitted when
    the request ends (e.g. after a rejected transition) is rolled back on close.
    """
    async with async_session_factory() as session:
        yield session
