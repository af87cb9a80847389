"""Ledger Store. The only component that reads and writes ledger rows.

Per-id serialization of mutations relies on two mechanisms:

- rows loaded ``for_update`` are locked with ``SELECT ... FOR UPDATE`` and
  refreshed from the database even when already in the session;
- every transaction and dispute row carries a ``version`` column managed by
  SQLAlchemy (``version_id_col``), so a write based on a stale read fails
  with ``ConcurrentModification`` instead of silently winning.

The first read of a unit of work is retried with exponential backoff on
connection errors; once a unit of work has begun, I/O failures surface
immediately as ``PersistenceUnavailable``.
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Select, func, select, update
from sqlalchemy.engine import Result
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from escrow_ledger.core.config import settings
from escrow_ledger.models.dispute import DisputeCase
from escrow_ledger.models.escrow import EscrowTransaction
from escrow_ledger.models.escrow_summary import EscrowSummary
from escrow_ledger.services.errors import (
    ConcurrentModification,
    NotFound,
    PersistenceUnavailable,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (OperationalError, InterfaceError)

ACTIVE_DISPUTE_STATUSES = ("open", "investigating")

CENTS = Decimal("0.01")


def _cents(value: object) -> Decimal:
    return Decimal(str(value)).quantize(CENTS)


class LedgerStore:
    """Unit-of-work wrapper around an AsyncSession for ledger records."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Low-level I/O
    # ------------------------------------------------------------------

    async def _read(self, stmt: Select) -> Result:
        retryable = not self.db.in_transaction()
        attempts = settings.store_retry_attempts if retryable else 1
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(attempts, 1)),
                wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
                retry=retry_if_exception_type(_TRANSIENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    try:
                        return await self.db.execute(stmt)
                    except _TRANSIENT_ERRORS:
                        await self.db.rollback()
                        raise
        except StaleDataError as exc:
            await self.db.rollback()
            raise ConcurrentModification("Record was modified concurrently; retry") from exc
        except _TRANSIENT_ERRORS as exc:
            logger.exception("Ledger store read failed after %d attempt(s)", attempts)
            raise PersistenceUnavailable("Ledger store is unavailable") from exc

    async def _write(self, stmt) -> Result:
        try:
            return await self.db.execute(stmt)
        except StaleDataError as exc:
            # raised by the autoflush preceding the statement
            await self.db.rollback()
            raise ConcurrentModification("Record was modified concurrently; retry") from exc
        except _TRANSIENT_ERRORS as exc:
            await self.db.rollback()
            raise PersistenceUnavailable("Ledger store is unavailable") from exc

    def add(self, obj: object) -> None:
        self.db.add(obj)

    async def flush(self) -> None:
        try:
            await self.db.flush()
        except StaleDataError as exc:
            await self.db.rollback()
            raise ConcurrentModification("Record was modified concurrently; retry") from exc
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConcurrentModification("Conflicting write; retry") from exc
        except _TRANSIENT_ERRORS as exc:
            await self.db.rollback()
            raise PersistenceUnavailable("Ledger store is unavailable") from exc

    async def commit(self) -> None:
        """Commit the unit of work, translating version conflicts and I/O failures."""
        try:
            await self.db.commit()
        except StaleDataError as exc:
            await self.db.rollback()
            raise ConcurrentModification("Record was modified concurrently; retry") from exc
        except IntegrityError as exc:
            # Unique idempotency key claimed by a parallel create
            await self.db.rollback()
            raise ConcurrentModification("Conflicting write; retry") from exc
        except _TRANSIENT_ERRORS as exc:
            await self.db.rollback()
            logger.exception("Ledger store commit failed")
            raise PersistenceUnavailable("Ledger store is unavailable") from exc

    async def rollback(self) -> None:
        await self.db.rollback()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def get_transaction(
        self, transaction_id: int, *, for_update: bool = False
    ) -> EscrowTransaction:
        stmt = select(EscrowTransaction).where(EscrowTransaction.id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._read(stmt)
        tx = result.scalar_one_or_none()
        if tx is None:
            raise NotFound("Transaction", transaction_id)
        return tx

    async def find_by_idempotency_key(self, key: str) -> EscrowTransaction | None:
        result = await self._read(
            select(EscrowTransaction).where(EscrowTransaction.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def list_transactions(
        self,
        *,
        user_id: str | None = None,
        role: str | None = None,
        status: str | None = None,
        subscription_id: str | None = None,
        include_archived: bool = False,
        offset: int = 0,
        limit: int = 50,
    ) -> list[EscrowTransaction]:
        stmt = select(EscrowTransaction)
        if user_id is not None:
            if role == "payer":
                stmt = stmt.where(EscrowTransaction.payer_id == user_id)
            elif role == "receiver":
                stmt = stmt.where(EscrowTransaction.receiver_id == user_id)
            else:
                stmt = stmt.where(
                    (EscrowTransaction.payer_id == user_id)
                    | (EscrowTransaction.receiver_id == user_id)
                )
        if status is not None:
            stmt = stmt.where(EscrowTransaction.status == status)
        if subscription_id is not None:
            stmt = stmt.where(EscrowTransaction.subscription_id == subscription_id)
        if not include_archived:
            stmt = stmt.where(EscrowTransaction.archived_at.is_(None))
        stmt = stmt.order_by(EscrowTransaction.id.desc()).offset(offset).limit(limit)
        result = await self._read(stmt)
        return list(result.scalars().all())

    async def due_for_release(self, now: datetime, limit: int) -> list[int]:
        """Ids of held transactions whose release date has passed, oldest first."""
        result = await self._read(
            select(EscrowTransaction.id)
            .where(
                EscrowTransaction.status == "held",
                EscrowTransaction.release_date <= now,
            )
            .order_by(EscrowTransaction.release_date.asc(), EscrowTransaction.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def settled_before(self, cutoff: datetime, limit: int) -> list[EscrowTransaction]:
        result = await self._read(
            select(EscrowTransaction)
            .where(
                EscrowTransaction.status.in_(("released", "refunded")),
                EscrowTransaction.archived_at.is_(None),
                EscrowTransaction.updated_at < cutoff,
            )
            .order_by(EscrowTransaction.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def get_dispute(self, dispute_id: int, *, for_update: bool = False) -> DisputeCase:
        stmt = select(DisputeCase).where(DisputeCase.id == dispute_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._read(stmt)
        dispute = result.scalar_one_or_none()
        if dispute is None:
            raise NotFound("Dispute", dispute_id)
        return dispute

    async def active_dispute_for(self, transaction_id: int) -> DisputeCase | None:
        result = await self._read(
            select(DisputeCase)
            .where(
                DisputeCase.transaction_id == transaction_id,
                DisputeCase.status.in_(ACTIVE_DISPUTE_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def disputes_for_transaction(self, transaction_id: int) -> list[DisputeCase]:
        result = await self._read(
            select(DisputeCase)
            .where(DisputeCase.transaction_id == transaction_id)
            .order_by(DisputeCase.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_disputes(
        self,
        *,
        status: str | None = None,
        transaction_id: int | None = None,
        party_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[DisputeCase]:
        stmt = select(DisputeCase)
        if party_id is not None:
            stmt = stmt.join(
                EscrowTransaction, EscrowTransaction.id == DisputeCase.transaction_id
            ).where(
                (EscrowTransaction.payer_id == party_id)
                | (EscrowTransaction.receiver_id == party_id)
            )
        if status is not None:
            stmt = stmt.where(DisputeCase.status == status)
        if transaction_id is not None:
            stmt = stmt.where(DisputeCase.transaction_id == transaction_id)
        stmt = stmt.order_by(DisputeCase.id.desc()).offset(offset).limit(limit)
        result = await self._read(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Running aggregates
    # ------------------------------------------------------------------

    async def adjust_summary(
        self, status: str, *, count: int, amount: Decimal, fee: Decimal
    ) -> None:
        """Apply a delta to the per-status counters inside the current unit of work."""
        result = await self._write(
            update(EscrowSummary)
            .where(EscrowSummary.status == status)
            .values(
                transaction_count=EscrowSummary.transaction_count + count,
                total_amount=EscrowSummary.total_amount + amount,
                total_fee=EscrowSummary.total_fee + fee,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.add(
                EscrowSummary(
                    status=status,
                    transaction_count=count,
                    total_amount=amount,
                    total_fee=fee,
                )
            )
            await self.flush()

    async def summary_rows(self) -> list[EscrowSummary]:
        # Counters change through bulk UPDATEs, never through these objects
        result = await self._read(
            select(EscrowSummary)
            .order_by(EscrowSummary.status)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def scan_totals_by_status(self) -> list[tuple[str, int, Decimal, Decimal]]:
        """Full-scan aggregate, used to rebuild and reconcile the running counters."""
        result = await self._read(
            select(
                EscrowTransaction.status,
                func.count(EscrowTransaction.id),
                func.coalesce(func.sum(EscrowTransaction.amount), 0),
                func.coalesce(func.sum(EscrowTransaction.escrow_fee), 0),
            ).group_by(EscrowTransaction.status)
        )
        return [
            (row[0], int(row[1]), _cents(row[2]), _cents(row[3]))
            for row in result.all()
        ]
