"""Celery tasks for the release scheduler and ledger archival.

- release_due_transactions: releases held transactions past their release date
- archive_settled_transactions: archives old released/refunded transactions
"""

import logging
from datetime import timedelta

from escrow_ledger.core.config import settings
from escrow_ledger.db.base import utcnow
from escrow_ledger.db.session import async_session_factory
from escrow_ledger.workers import celery_app, worker_loop

logger = logging.getLogger(__name__)


async def _release_due() -> int:
    from escrow_ledger.services.release_scheduler import sweep_due_releases

    async with async_session_factory() as db:
        try:
            result = await sweep_due_releases(db)
            return len(result.released)
        finally:
            await db.close()


async def _archive_settled() -> int:
    from escrow_ledger.services.escrow import archive_settled_transactions

    cutoff = utcnow() - timedelta(days=settings.archive_after_days)
    async with async_session_factory() as db:
        try:
            count = await archive_settled_transactions(db, cutoff)
            logger.info("Archived %d settled transactions", count)
            return count
        finally:
            await db.close()


@celery_app.task(name="release_due_transactions", bind=True, ignore_result=True)
def release_due_transactions(self) -> int:
    """Periodic task: release held funds whose release date has passed.

    A failed sweep is not retried in place; the next beat tick sweeps again.
    """
    try:
        return worker_loop().run_until_complete(_release_due())
    except Exception:
        logger.exception("release_due_transactions sweep failed")
        return 0


@celery_app.task(
    name="archive_settled_transactions", bind=True, max_retries=3, default_retry_delay=300
)
def archive_settled_transactions(self) -> int:
    """Periodic task: archive released/refunded transactions older than archive_after_days."""
    try:
        return worker_loop().run_until_complete(_archive_settled())
    except Exception as exc:
        logger.exception("archive_settled_transactions failed")
        raise self.retry(exc=exc)
