"""Operator script: reconcile the escrow_summary counters with the ledger.

Compares the running per-status counters against a full scan of
escrow_transactions and prints every mismatch. With --apply the counters
are replaced by the scanned totals.

Usage:
    python -m scripts.rebuild_summary [--apply]
"""

import asyncio
import sys

from escrow_ledger.db.session import async_session_factory, engine
from escrow_ledger.services import projections


async def rebuild_summary(apply: bool = False) -> int:
    async with async_session_factory() as db:
        counters = await projections.get_summary(db)
        scanned = await projections.scan_summary(db)

        mismatches = 0
        for status, scan in scanned["by_status"].items():
            current = counters["by_status"][status]
            marker = "ok"
            if current != scan:
                marker = "MISMATCH"
                mismatches += 1
            print(
                f"  {status:<10} counters={current['count']:>6} / {current['amount']:>12}"
                f"  scan={scan['count']:>6} / {scan['amount']:>12}  {marker}"
            )
        print()

        if not mismatches:
            print("Counters match the ledger.")
        elif apply:
            await projections.rebuild_summary(db)
            print(f"Rebuilt counters ({mismatches} status row(s) corrected).")
        else:
            print(f"{mismatches} status row(s) out of sync. Re-run with --apply to fix.")

    await engine.dispose()
    return mismatches


def main() -> None:
    args = sys.argv[1:]
    apply = "--apply" in args
    if any(a != "--apply" for a in args):
        print("Usage: python -m scripts.rebuild_summary [--apply]")
        sys.exit(1)

    print("=== Escrow summary reconciliation ===")
    print()
    mismatches = asyncio.run(rebuild_summary(apply=apply))
    sys.exit(1 if mismatches and not apply else 0)


if __name__ == "__main__":
    main()
