"""
Reconciliation Service - audit the ledger against balances and jobs.

Read-only. Findings are logged at error level and counted in metrics so they
can be alerted on; nothing is repaired automatically.
"""

from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Account, CreditTransaction, Generation, utc_now
from app.models.api import TransactionKind
from app.models.domain import BalanceCheck, ReconciliationReport
from app.observability.metrics import metrics
from app.services.ledger import LedgerStore

logger = get_logger(__name__)


class ReconciliationService:
    """Cross-checks accounts, transactions and generation records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = LedgerStore(session)

    async def run(self) -> ReconciliationReport:
        """Run every check and return the combined report."""
        user_ids = (await self.session.execute(select(Account.user_id))).scalars().all()
        mismatches: list[BalanceCheck] = []
        for user_id in user_ids:
            check = await self.ledger.verify_balance(user_id)
            if not check.is_consistent:
                mismatches.append(check)

        report = ReconciliationReport(
            checked_accounts=len(user_ids),
            balance_mismatches=tuple(mismatches),
            orphan_deductions=tuple(await self.find_orphan_deductions()),
            generations_without_deduction=tuple(await self.find_generations_without_deduction()),
            refund_flag_mismatches=tuple(await self.find_refund_flag_mismatches()),
            generated_at=utc_now(),
        )

        findings = {
            "balance_mismatch": len(report.balance_mismatches),
            "orphan_deduction": len(report.orphan_deductions),
            "generation_without_deduction": len(report.generations_without_deduction),
            "refund_flag_mismatch": len(report.refund_flag_mismatches),
        }
        for finding, count in findings.items():
            if count:
                metrics.reconciliation_alerts_total.labels(finding=finding).inc(count)
                logger.error("reconciliation_alert", finding=finding, count=count)

        logger.info(
            "reconciliation_completed",
            ok=report.ok,
            checked_accounts=report.checked_accounts,
            **findings,
        )
        return report

    async def find_orphan_deductions(self) -> list[UUID]:
        """Deduction transactions whose generation record does not exist."""
        stmt = (
            select(CreditTransaction.id)
            .outerjoin(Generation, Generation.id == CreditTransaction.related_generation_id)
            .where(
                CreditTransaction.kind == TransactionKind.DEDUCTION,
                Generation.id.is_(None),
            )
            .order_by(CreditTransaction.created_at)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def find_generations_without_deduction(self) -> list[UUID]:
        """Generations not linked to a deduction for their own id."""
        stmt = (
            select(Generation.id)
            .outerjoin(
                CreditTransaction,
                and_(
                    CreditTransaction.id == Generation.deduction_transaction_id,
                    CreditTransaction.kind == TransactionKind.DEDUCTION,
                    CreditTransaction.related_generation_id == Generation.id,
                ),
            )
            .where(CreditTransaction.id.is_(None))
            .order_by(Generation.created_at)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def find_refund_flag_mismatches(self) -> list[UUID]:
        """Generations whose `refunded` flag disagrees with their refund transactions."""
        refund_counts = (
            select(
                CreditTransaction.related_generation_id.label("generation_id"),
                func.count().label("refunds"),
            )
            .where(CreditTransaction.kind == TransactionKind.REFUND)
            .group_by(CreditTransaction.related_generation_id)
            .subquery()
        )
        refunds = func.coalesce(refund_counts.c.refunds, 0)
        stmt = (
            select(Generation.id)
            .outerjoin(refund_counts, refund_counts.c.generation_id == Generation.id)
            .where(
                ((Generation.refunded.is_(True)) & (refunds != 1))
                | ((Generation.refunded.is_(False)) & (refunds != 0))
            )
            .order_by(Generation.created_at)
        )
        return list((await self.session.execute(stmt)).scalars().all())
