from collections.abc import AsyncGenerator
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import escrow_ledger.models  # noqa: F401
from escrow_ledger.core.config import settings
from escrow_ledger.core.deps import get_db
from escrow_ledger.core.rate_limit import limiter
from escrow_ledger.db.base import Base, utcnow
from escrow_ledger.main import app
from escrow_ledger.services import escrow as escrow_svc
from escrow_ledger.services.projections import ensure_summary_rows

from tests.factories import PAYER, RECEIVER, RESOLVER

limiter.enabled = False


@pytest.fixture(autouse=True)
def resolvers(monkeypatch):
    monkeypatch.setattr(settings, "resolver_user_ids", [RESOLVER])
    monkeypatch.setattr(settings, "payment_gateway_url", "")
    monkeypatch.setattr(settings, "payment_sandbox", True)


@pytest.fixture(autouse=True)
def published() -> AsyncMock:
    """Capture ledger events instead of publishing them to Redis."""
    with patch(
        "escrow_ledger.services.events.publish_event",
        new_callable=AsyncMock,
        return_value=True,
    ) as mock:
        yield mock


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """File-backed SQLite ledger so several sessions can see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        await ensure_summary_rows(session)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client wired to the FastAPI app (no real server)."""

    async def _get_test_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_test_db
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_transaction(db):
    """Create a held transaction through the service, as checkout would."""

    async def _make(
        amount: str = "10.00",
        *,
        payer_id: str = PAYER,
        receiver_id: str = RECEIVER,
        subscription_id: str = "sub-netflix-1",
        days: int = 30,
        idempotency_key: str | None = None,
    ):
        return await escrow_svc.create_transaction(
            db,
            subscription_id=subscription_id,
            payer_id=payer_id,
            receiver_id=receiver_id,
            amount=Decimal(amount),
            release_date=utcnow() + timedelta(days=days),
            idempotency_key=idempotency_key,
        )

    return _make
