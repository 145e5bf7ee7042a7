"""
Tests for RefundProcessor.

Refunds are at-most-once per failed generation.
"""

from uuid import uuid4

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import CreditTransaction, Generation, utc_now
from app.exceptions import ReconciliationError, RefundNotEligibleError, UnknownGenerationError
from app.models.api import GenerationOptions, GenerationStatus, TransactionKind
from app.models.domain import StatusEvent
from app.services.billing import BillingService
from app.services.generation import GenerationTracker
from app.services.refund import RefundProcessor


@pytest.fixture
async def generation(billing: BillingService, seed_credits):
    await seed_credits("user-1", 1000)
    generation, _ = await billing.create_generation(
        user_id="user-1",
        model_id="clip-video",
        prompt="storm over the sea",
        options=GenerationOptions(duration=5),
    )
    return generation


def _refund_alerts() -> float:
    value = REGISTRY.get_sample_value(
        "ledger_reconciliation_alerts_total", {"finding": "refund_without_deduction"}
    )
    return value or 0.0


async def _fail(session: AsyncSession, generation_id) -> None:
    await GenerationTracker(session).apply_status_event(
        StatusEvent(status=GenerationStatus.FAILED, generation_id=generation_id)
    )


class TestRefund:
    """Tests for RefundProcessor.refund."""

    async def test_refund_failed_generation(
        self, session: AsyncSession, generation, read_balance
    ):
        await _fail(session, generation.generation_id)

        result = await RefundProcessor(session).refund(generation.generation_id)

        assert result.amount_minor == 600
        assert result.balance_after_minor == 1000
        assert result.user_id == "user-1"
        assert await read_balance("user-1") == 1000

        refreshed = await GenerationTracker(session).get(generation.generation_id)
        assert refreshed.refunded is True
        assert refreshed.refund_transaction_id == result.transaction_id

    async def test_refund_transaction_linked(self, session: AsyncSession, generation):
        await _fail(session, generation.generation_id)
        result = await RefundProcessor(session).refund(generation.generation_id)

        tx = (
            await session.execute(
                select(CreditTransaction).where(CreditTransaction.id == result.transaction_id)
            )
        ).scalar_one()
        assert tx.kind == TransactionKind.REFUND
        assert tx.amount_minor == 600
        assert tx.related_generation_id == generation.generation_id
        assert tx.idempotency_key == f"refund:{generation.generation_id}"

    async def test_second_refund_rejected(self, session: AsyncSession, generation, read_balance):
        await _fail(session, generation.generation_id)
        processor = RefundProcessor(session)
        await processor.refund(generation.generation_id)

        with pytest.raises(RefundNotEligibleError) as exc_info:
            await processor.refund(generation.generation_id)

        assert exc_info.value.reason == RefundNotEligibleError.ALREADY_REFUNDED
        assert await read_balance("user-1") == 1000

    @pytest.mark.parametrize(
        "status",
        [None, GenerationStatus.PROCESSING, GenerationStatus.COMPLETED],
    )
    async def test_non_failed_rejected(
        self, session: AsyncSession, generation, read_balance, status
    ):
        if status is not None:
            await GenerationTracker(session).apply_status_event(
                StatusEvent(status=status, generation_id=generation.generation_id)
            )

        with pytest.raises(RefundNotEligibleError) as exc_info:
            await RefundProcessor(session).refund(generation.generation_id)

        assert exc_info.value.reason == RefundNotEligibleError.NOT_FAILED
        assert await read_balance("user-1") == 400

    async def test_unknown_generation(self, session: AsyncSession):
        with pytest.raises(UnknownGenerationError):
            await RefundProcessor(session).refund(uuid4())

    async def test_generation_without_deduction(
        self, session: AsyncSession, seed_credits, read_balance
    ):
        """A job with no linked debit is never refunded."""
        await seed_credits("user-1", 100)
        gid = uuid4()
        session.add(
            Generation(
                id=gid,
                user_id="user-1",
                model_id="flat-image",
                prompt="p",
                options={},
                status=GenerationStatus.FAILED,
                credits_used_minor=40,
                refunded=False,
                created_at=utc_now(),
                updated_at=utc_now(),
            )
        )
        await session.commit()
        alerts_before = _refund_alerts()

        with pytest.raises(ReconciliationError):
            await RefundProcessor(session).refund(gid)

        assert _refund_alerts() == alerts_before + 1
        assert await read_balance("user-1") == 100
        refunded = (
            await session.execute(select(Generation.refunded).where(Generation.id == gid))
        ).scalar_one()
        assert refunded is False
