from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrow_ledger.core.config import settings

# Row locks are held for the length of a unit of work, so the pool must cover
# concurrent API requests plus the release sweep.
engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
)

# Services keep using loaded rows after commit (responses, published events)
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
