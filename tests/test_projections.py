"""Tests for ledger aggregates: running counters, rollups and analytics."""

from decimal import Decimal

from sqlalchemy import update

from escrow_ledger.models.escrow_summary import EscrowSummary
from escrow_ledger.services import disputes as dispute_svc
from escrow_ledger.services import escrow as escrow_svc
from escrow_ledger.services import projections
from escrow_ledger.services.transaction_state_machine import Actor

from tests.factories import PAYER, RESOLVER


async def _mixed_ledger(db, make_transaction) -> dict[str, int]:
    """held x2, released, refunded, disputed."""
    held_a = await make_transaction("3.99")
    held_b = await make_transaction("12.50", subscription_id="sub-spotify-7")
    released = await make_transaction("10.00")
    refunded = await make_transaction("7.25")
    disputed = await make_transaction("20.00")

    await escrow_svc.release_transaction(db, released.id, actor=Actor.SYSTEM)
    await escrow_svc.refund_transaction(db, refunded.id, actor=Actor.SYSTEM)
    await dispute_svc.open_dispute(
        db, transaction_id=disputed.id, initiator_id=PAYER, reason="Service Access"
    )
    return {
        "held_a": held_a.id,
        "held_b": held_b.id,
        "released": released.id,
        "refunded": refunded.id,
        "disputed": disputed.id,
    }


class TestSummary:
    async def test_empty_ledger(self, db):
        summary = await projections.get_summary(db)

        assert set(summary["by_status"]) == {"pending", "held", "released", "disputed", "refunded"}
        assert summary["total_count"] == 0
        assert summary["total_amount"] == Decimal("0")

    async def test_counters_match_full_scan(self, db, make_transaction):
        await _mixed_ledger(db, make_transaction)

        summary = await projections.get_summary(db)

        held = summary["by_status"]["held"]
        assert held["count"] == 2
        assert held["amount"] == Decimal("16.49")
        assert held["fee"] == Decimal("0.83")  # 0.20 + 0.63 (12.50 * 5% = 0.625 half-up)
        assert summary["by_status"]["pending"]["count"] == 0
        assert summary["by_status"]["released"]["amount"] == Decimal("10.00")
        assert summary["by_status"]["refunded"]["amount"] == Decimal("7.25")
        assert summary["by_status"]["disputed"]["amount"] == Decimal("20.00")
        assert summary["total_count"] == 5
        assert summary == await projections.scan_summary(db)

    async def test_rebuild_repairs_drifted_counters(self, db, make_transaction):
        await _mixed_ledger(db, make_transaction)
        await db.execute(
            update(EscrowSummary)
            .where(EscrowSummary.status == "held")
            .values(transaction_count=99, total_amount=Decimal("1.00"))
        )
        await db.commit()
        assert (await projections.get_summary(db))["by_status"]["held"]["count"] == 99

        await projections.rebuild_summary(db)

        assert await projections.get_summary(db) == await projections.scan_summary(db)

    async def test_subscription_rollup(self, db, make_transaction):
        await _mixed_ledger(db, make_transaction)

        rollup = await projections.get_subscription_summary(db, "sub-spotify-7")

        assert rollup["subscription_id"] == "sub-spotify-7"
        assert rollup["total_count"] == 1
        assert rollup["by_status"]["held"]["amount"] == Decimal("12.50")
        assert rollup["by_status"]["released"]["count"] == 0


class TestAnalytics:
    async def test_empty_ledger(self, db):
        analytics = await projections.get_analytics(db)

        assert analytics["settled_transactions"] == 0
        assert analytics["success_rate"] is None
        assert analytics["average_resolution_days"] is None

    async def test_mixed_ledger(self, db, make_transaction):
        ids = await _mixed_ledger(db, make_transaction)
        dispute = (await dispute_svc.list_disputes(db, RESOLVER, transaction_id=ids["disputed"]))[0]

        analytics = await projections.get_analytics(db)
        assert analytics["settled_transactions"] == 2
        assert analytics["success_rate"] == 0.5
        assert analytics["active_disputes"] == 1
        assert analytics["resolved_disputes"] == 0
        assert analytics["held_amount"] == Decimal("16.49")
        assert analytics["disputed_amount"] == Decimal("20.00")

        await dispute_svc.resolve_dispute(
            db, dispute.id, outcome="release", resolution_note="ok", resolver_id=RESOLVER
        )

        analytics = await projections.get_analytics(db)
        assert analytics["settled_transactions"] == 3
        assert analytics["active_disputes"] == 0
        assert analytics["resolved_disputes"] == 1
        assert analytics["average_resolution_days"] >= 0
        assert analytics["disputed_amount"] == Decimal("0")
