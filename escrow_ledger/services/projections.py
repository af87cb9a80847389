"""Read-only ledger aggregates for the dashboard and escrow screens.

Status totals come from the ``escrow_summary`` counters maintained inside
every state change, so they never depend on paging through the ledger.
Per-subscription rollups and analytics are computed with grouped scans.
"""

import logging
from decimal import Decimal

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.models.dispute import DisputeCase
from escrow_ledger.models.escrow import EscrowTransaction
from escrow_ledger.models.escrow_summary import EscrowSummary
from escrow_ledger.services.ledger_store import ACTIVE_DISPUTE_STATUSES, CENTS, LedgerStore
from escrow_ledger.services.transaction_state_machine import TransactionStatus

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")


def _empty_totals() -> dict[str, dict]:
    return {
        status.value: {"count": 0, "amount": _ZERO, "fee": _ZERO}
        for status in TransactionStatus
    }


async def ensure_summary_rows(db: AsyncSession) -> None:
    """Seed one counter row per status so transitions only ever UPDATE."""
    result = await db.execute(select(EscrowSummary.status))
    present = set(result.scalars().all())
    missing = [s.value for s in TransactionStatus if s.value not in present]
    for status in missing:
        db.add(EscrowSummary(status=status, transaction_count=0, total_amount=_ZERO, total_fee=_ZERO))
    if missing:
        await db.commit()
        logger.info("Seeded escrow summary rows: %s", ", ".join(missing))


async def get_summary(db: AsyncSession) -> dict:
    """Count, amount and fee totals per status, read from the running counters."""
    by_status = _empty_totals()
    for row in await LedgerStore(db).summary_rows():
        by_status[row.status] = {
            "count": row.transaction_count,
            "amount": Decimal(row.total_amount).quantize(CENTS),
            "fee": Decimal(row.total_fee).quantize(CENTS),
        }
    return _with_totals(by_status)


async def scan_summary(db: AsyncSession) -> dict:
    """Same shape as get_summary, computed from a full scan of the ledger."""
    by_status = _empty_totals()
    for status, count, amount, fee in await LedgerStore(db).scan_totals_by_status():
        by_status[status] = {"count": count, "amount": amount, "fee": fee}
    return _with_totals(by_status)


def _with_totals(by_status: dict[str, dict]) -> dict:
    return {
        "by_status": by_status,
        "total_count": sum(v["count"] for v in by_status.values()),
        "total_amount": sum((v["amount"] for v in by_status.values()), _ZERO),
        "total_fee": sum((v["fee"] for v in by_status.values()), _ZERO),
    }


async def rebuild_summary(db: AsyncSession) -> dict:
    """Replace the running counters with a full-scan recomputation.

    Operator tool for recovering from manual data fixes; normal operation
    never needs it.
    """
    scanned = await scan_summary(db)
    await db.execute(delete(EscrowSummary))
    for status, totals in scanned["by_status"].items():
        db.add(
            EscrowSummary(
                status=status,
                transaction_count=totals["count"],
                total_amount=totals["amount"],
                total_fee=totals["fee"],
            )
        )
    await db.commit()
    logger.info("Rebuilt escrow summary: %d transactions", scanned["total_count"])
    return scanned


async def get_subscription_summary(db: AsyncSession, subscription_id: str) -> dict:
    """Per-status rollup for one subscription share."""
    result = await db.execute(
        select(
            EscrowTransaction.status,
            func.count(EscrowTransaction.id),
            func.coalesce(func.sum(EscrowTransaction.amount), 0),
            func.coalesce(func.sum(EscrowTransaction.escrow_fee), 0),
        )
        .where(EscrowTransaction.subscription_id == subscription_id)
        .group_by(EscrowTransaction.status)
    )
    by_status = _empty_totals()
    for status, count, amount, fee in result.all():
        by_status[status] = {
            "count": int(count),
            "amount": Decimal(str(amount)).quantize(CENTS),
            "fee": Decimal(str(fee)).quantize(CENTS),
        }
    return {"subscription_id": subscription_id, **_with_totals(by_status)}


async def get_analytics(db: AsyncSession) -> dict:
    """Escrow performance: success rate, active disputes, mean resolution time."""
    summary = await get_summary(db)
    released = summary["by_status"][TransactionStatus.RELEASED]["count"]
    refunded = summary["by_status"][TransactionStatus.REFUNDED]["count"]
    settled = released + refunded
    success_rate = round(released / settled, 4) if settled else None

    active_disputes = (
        await db.execute(
            select(func.count(DisputeCase.id)).where(
                DisputeCase.status.in_(ACTIVE_DISPUTE_STATUSES)
            )
        )
    ).scalar() or 0

    resolved = (
        await db.execute(
            select(DisputeCase.created_at, DisputeCase.resolved_at).where(
                DisputeCase.resolved_at.is_not(None)
            )
        )
    ).all()
    avg_resolution_days = None
    if resolved:
        total_seconds = sum(
            (resolved_at - created_at).total_seconds() for created_at, resolved_at in resolved
        )
        avg_resolution_days = round(total_seconds / len(resolved) / 86400, 2)

    return {
        "settled_transactions": settled,
        "success_rate": success_rate,
        "active_disputes": active_disputes,
        "resolved_disputes": len(resolved),
        "average_resolution_days": avg_resolution_days,
        "held_amount": summary["by_status"][TransactionStatus.HELD]["amount"],
        "disputed_amount": summary["by_status"][TransactionStatus.DISPUTED]["amount"],
    }
