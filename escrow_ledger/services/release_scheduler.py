"""Release scheduler: release held funds once their release date has passed.

The sweep picks candidate ids up front, then releases each one in its own
unit of work. ``release_transaction`` re-reads the row under lock before
acting, so a transaction disputed after the candidate list was built is
rejected by the state machine rather than released.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.core.config import settings
from escrow_ledger.db.base import utcnow
from escrow_ledger.services import escrow as escrow_svc
from escrow_ledger.services.errors import ConcurrentModification, InvalidStateTransition, NotFound
from escrow_ledger.services.ledger_store import LedgerStore
from escrow_ledger.services.transaction_state_machine import Actor

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    candidates: int = 0
    released: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


async def sweep_due_releases(
    db: AsyncSession,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> SweepResult:
    """Release every held transaction due at ``now``.

    Per-transaction failures are logged and left for the next sweep.
    """
    now = now or utcnow()
    store = LedgerStore(db)
    due = await store.due_for_release(now, batch_size or settings.release_sweep_batch_size)
    # Candidate read must not hold a transaction open across the releases
    await store.rollback()

    result = SweepResult(candidates=len(due))
    if not due:
        return result

    logger.info("Release sweep: %d held transaction(s) due", len(due))
    for transaction_id in due:
        try:
            await escrow_svc.release_transaction(db, transaction_id, actor=Actor.SYSTEM)
            result.released.append(transaction_id)
        except (InvalidStateTransition, ConcurrentModification, NotFound) as exc:
            # Disputed or released by someone else since the candidate read
            await store.rollback()
            logger.info("Release of transaction %s skipped: %s", transaction_id, exc)
            result.skipped.append(transaction_id)
        except Exception:
            await store.rollback()
            logger.exception("Release of transaction %s failed; will retry next sweep", transaction_id)
            result.failed.append(transaction_id)

    logger.info(
        "Release sweep finished: %d released, %d skipped, %d failed",
        len(result.released), len(result.skipped), len(result.failed),
    )
    return result
