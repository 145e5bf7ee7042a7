"""
Refund Processor - reverse a failed generation's debit exactly once.

The eligibility check and the `refunded` flag flip are one compare-and-set
UPDATE; the refund transaction is appended in the same database transaction.
A second call finds `refunded = true` and fails without crediting.
"""

from typing import NoReturn
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.atomic import run_atomic
from app.db.models import Generation, utc_now
from app.exceptions import (
    ReconciliationError,
    RefundNotEligibleError,
    UnknownGenerationError,
)
from app.models.api import GenerationStatus, TransactionKind
from app.models.domain import RefundResult
from app.observability.metrics import metrics
from app.services.ledger import LedgerStore

logger = get_logger(__name__)


class RefundProcessor:
    """Idempotent refunds for failed generations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = LedgerStore(session)

    async def refund(self, generation_id: UUID) -> RefundResult:
        """
        Credit back the debit of a failed, not-yet-refunded generation.

        Raises:
            UnknownGenerationError: No such generation
            ReconciliationError: The generation has no linked deduction
            RefundNotEligibleError: Not failed, or already refunded
        """
        try:
            result = await run_atomic(self.session, lambda: self._refund(generation_id), "refund")
        except RefundNotEligibleError as exc:
            metrics.record_refund(exc.reason)
            logger.info(
                "refund_rejected",
                generation_id=str(generation_id),
                reason=exc.reason,
            )
            raise
        except UnknownGenerationError:
            metrics.record_refund("unknown_generation")
            logger.info("refund_rejected", generation_id=str(generation_id), reason="unknown")
            raise
        except ReconciliationError as exc:
            metrics.record_refund("reconciliation_error")
            metrics.reconciliation_alerts_total.labels(finding="refund_without_deduction").inc()
            logger.error(
                "reconciliation_alert",
                finding="refund_without_deduction",
                generation_id=str(generation_id),
                error=exc.message,
            )
            raise

        metrics.record_refund("success")
        metrics.record_append(TransactionKind.REFUND.value, result.amount_minor)
        logger.info(
            "refund_applied",
            generation_id=str(generation_id),
            user_id=result.user_id,
            transaction_id=str(result.transaction_id),
            amount_minor=result.amount_minor,
            balance_after_minor=result.balance_after_minor,
        )
        return result

    async def _refund(self, generation_id: UUID) -> RefundResult:
        claim = (
            update(Generation)
            .where(
                Generation.id == generation_id,
                Generation.status == GenerationStatus.FAILED,
                Generation.refunded.is_(False),
            )
            .values(refunded=True, updated_at=utc_now())
            .returning(
                Generation.user_id,
                Generation.credits_used_minor,
                Generation.deduction_transaction_id,
            )
            .execution_options(synchronize_session=False)
        )
        row = (await self.session.execute(claim)).one_or_none()
        if row is None:
            await self._raise_ineligible(generation_id)

        user_id, amount_minor, deduction_transaction_id = row
        if deduction_transaction_id is None:
            raise ReconciliationError(f"generation {generation_id} has no deduction to refund")

        entry = await self.ledger.append(
            user_id,
            amount_minor,
            TransactionKind.REFUND,
            f"Refund for failed generation {generation_id}",
            related_generation_id=generation_id,
            idempotency_key=f"refund:{generation_id}",
        )

        await self.session.execute(
            update(Generation)
            .where(Generation.id == generation_id)
            .values(refund_transaction_id=entry.transaction_id)
            .execution_options(synchronize_session=False)
        )

        return RefundResult(
            generation_id=generation_id,
            user_id=user_id,
            transaction_id=entry.transaction_id,
            amount_minor=amount_minor,
            balance_after_minor=entry.balance_after_minor,
        )

    async def _raise_ineligible(self, generation_id: UUID) -> NoReturn:
        stmt = select(Generation.status, Generation.refunded).where(Generation.id == generation_id)
        current = (await self.session.execute(stmt)).one_or_none()
        if current is None:
            raise UnknownGenerationError(generation_id)
        _, refunded = current
        if refunded:
            raise RefundNotEligibleError(generation_id, RefundNotEligibleError.ALREADY_REFUNDED)
        raise RefundNotEligibleError(generation_id, RefundNotEligibleError.NOT_FAILED)
