#!/usr/bin/env python3
"""
Ledger Reconciliation Script

Replays every account's transaction log against its materialized balance and
cross-checks debits, generations and refunds. Optionally fails generations
stuck past the timeout first. Exits non-zero when anything needs review, so
it can run from cron and alert on failure.
"""

import argparse
import asyncio
import os
import sys
from datetime import timedelta

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import settings  # noqa: E402
from app.db.migration_runner import check_migrations_status  # noqa: E402
from app.db.session import create_ledger_engine, create_session_factory  # noqa: E402
from app.models.domain import ReconciliationReport, from_minor  # noqa: E402
from app.observability import get_logger, setup_logging  # noqa: E402
from app.services.generation import GenerationTracker  # noqa: E402
from app.services.reconciliation import ReconciliationService  # noqa: E402

logger = get_logger("reconcile_ledger")


def print_report(report: ReconciliationReport) -> None:
    print(f"Accounts checked: {report.checked_accounts}")
    for check in report.balance_mismatches:
        print(
            f"  BALANCE  {check.user_id}: cached={from_minor(check.materialized_minor)} "
            f"replayed={from_minor(check.replayed_minor)} broken_snapshots={check.broken_snapshots}"
        )
    for tx_id in report.orphan_deductions:
        print(f"  ORPHAN DEDUCTION  {tx_id}")
    for generation_id in report.generations_without_deduction:
        print(f"  NO DEDUCTION  {generation_id}")
    for generation_id in report.refund_flag_mismatches:
        print(f"  REFUND FLAG  {generation_id}")
    print("OK" if report.ok else "FINDINGS REQUIRE REVIEW")


async def reconcile(database_url: str, fail_stale_minutes: int | None) -> ReconciliationReport:
    engine = create_ledger_engine(database_url)
    session_factory = create_session_factory(engine)
    try:
        if fail_stale_minutes is not None:
            async with session_factory() as session:
                failed = await GenerationTracker(session).fail_stale(
                    timedelta(minutes=fail_stale_minutes)
                )
                logger.info("stale_generations_checked", failed=len(failed))

        async with session_factory() as session:
            return await ReconciliationService(session).run()
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Reconcile the credit ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Audit only
  python3 reconcile_ledger.py

  # Fail jobs stuck for more than 45 minutes, then audit
  python3 reconcile_ledger.py --fail-stale 45
        """,
    )
    parser.add_argument(
        "--database-url", default=None, help="Override DATABASE_URL for this run"
    )
    parser.add_argument(
        "--fail-stale",
        type=int,
        metavar="MINUTES",
        default=None,
        help="Fail pending/processing generations older than MINUTES first",
    )
    args = parser.parse_args()

    setup_logging()
    database_url = args.database_url or settings.database_url

    status = check_migrations_status(database_url)
    if status.pending:
        print(
            f"Schema at {status.current_revision}, expected {status.head_revision}. "
            "Run migrations first."
        )
        sys.exit(2)

    try:
        report = asyncio.run(reconcile(database_url, args.fail_stale))
    except KeyboardInterrupt:
        sys.exit(130)

    print_report(report)
    sys.exit(0 if report.ok else 1)


if __name__ == "__main__":
    main()
