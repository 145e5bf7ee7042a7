"""
Tests for BillingService.

End-to-end workflows through the facade on a real SQLite ledger, plus
delegation checks with mocked components.
"""

from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import CreditTransaction, Generation
from app.exceptions import (
    InsufficientCreditsError,
    RefundNotEligibleError,
    StorageConflictError,
    UnknownModelError,
)
from app.models.api import AdjustmentMode, GenerationOptions, GenerationStatus, TransactionKind
from app.models.domain import StatusEvent
from app.services.billing import BillingService
from app.services.pricing import PricingCatalog

# ============================================================================
# Generation Lifecycle
# ============================================================================


class TestCreateGeneration:
    """Tests for create_generation."""

    async def test_charges_and_creates_pending_job(
        self, billing: BillingService, seed_credits, read_balance
    ):
        await seed_credits("user-1", 1000)

        generation, debit = await billing.create_generation(
            user_id="user-1",
            model_id="clip-video",
            prompt="a cat surfing",
            options=GenerationOptions(duration=5),
        )

        assert generation.status == GenerationStatus.PENDING
        assert generation.credits_used_minor == 600
        assert generation.deduction_transaction_id == debit.transaction_id
        assert debit.balance_after_minor == 400
        assert await read_balance("user-1") == 400

    async def test_options_stored_without_nulls(
        self, billing: BillingService, session: AsyncSession, seed_credits
    ):
        await seed_credits("user-1", 1000)
        generation, _ = await billing.create_generation(
            user_id="user-1",
            model_id="clip-video",
            prompt="p",
            options=GenerationOptions(duration=5, resolution="720p"),
        )

        row = (
            await session.execute(
                select(Generation).where(Generation.id == generation.generation_id)
            )
        ).scalar_one()
        assert row.options == {"duration": 5, "resolution": "720p"}

    async def test_insufficient_credits_creates_nothing(
        self, billing: BillingService, session: AsyncSession, seed_credits, read_balance
    ):
        await seed_credits("user-1", 500)

        with pytest.raises(InsufficientCreditsError):
            await billing.create_generation(
                user_id="user-1",
                model_id="clip-video",
                prompt="p",
                options=GenerationOptions(duration=5),
            )

        assert await read_balance("user-1") == 500
        count = (await session.execute(select(func.count()).select_from(Generation))).scalar_one()
        assert count == 0

    async def test_unknown_model_charges_nothing(
        self, billing: BillingService, seed_credits, read_balance
    ):
        await seed_credits("user-1", 1000)

        with pytest.raises(UnknownModelError):
            await billing.create_generation(
                user_id="user-1", model_id="nope", prompt="p", options=GenerationOptions()
            )

        assert await read_balance("user-1") == 1000

    async def test_quote_matches_charge(self, billing: BillingService, seed_credits):
        await seed_credits("user-1", 5000)
        options = GenerationOptions(resolution="1080p", duration=10)

        quote = billing.quote("clip-video", options)
        _, debit = await billing.create_generation("user-1", "clip-video", "p", options)

        assert debit.cost_minor == quote.credits_minor == 2000


class TestSettlementScenario:
    """100 credits, a 60-credit job fails, refund once."""

    async def test_fail_then_refund_once(
        self, billing: BillingService, seed_credits, read_balance
    ):
        await seed_credits("user-1", 1000)
        generation, debit = await billing.create_generation(
            "user-1", "clip-video", "p", GenerationOptions(duration=5)
        )
        assert debit.balance_after_minor == 400

        await billing.attach_task(generation.generation_id, "task-1")
        await billing.apply_status_event(
            StatusEvent(status=GenerationStatus.FAILED, task_id="task-1", error_message="boom")
        )
        assert await read_balance("user-1") == 400

        refund = await billing.refund_generation(generation.generation_id)
        assert refund.balance_after_minor == 1000

        with pytest.raises(RefundNotEligibleError):
            await billing.refund_generation(generation.generation_id)
        assert await read_balance("user-1") == 1000

    async def test_completed_job_keeps_charge(
        self, billing: BillingService, seed_credits, read_balance
    ):
        await seed_credits("user-1", 1000)
        generation, _ = await billing.create_generation(
            "user-1", "clip-video", "p", GenerationOptions(duration=5)
        )

        await billing.apply_status_event(
            StatusEvent(status=GenerationStatus.COMPLETED, generation_id=generation.generation_id)
        )

        with pytest.raises(RefundNotEligibleError):
            await billing.refund_generation(generation.generation_id)
        assert await read_balance("user-1") == 400

    async def test_history_shows_job_status(self, billing: BillingService, seed_credits):
        await seed_credits("user-1", 1000)
        generation, _ = await billing.create_generation(
            "user-1", "clip-video", "p", GenerationOptions(duration=5)
        )
        await billing.cancel_generation(generation.generation_id)
        await billing.refund_generation(generation.generation_id)

        page = await billing.list_transactions("user-1")

        assert [e.kind for e in page.entries] == [
            TransactionKind.REFUND,
            TransactionKind.DEDUCTION,
            TransactionKind.ADJUSTMENT,
        ]
        assert page.entries[0].related_generation_status == GenerationStatus.FAILED
        assert page.entries[2].related_generation_status is None


# ============================================================================
# Credits In
# ============================================================================


class TestTopupAndCodes:
    """Tests for top-ups and code redemption through the facade."""

    async def test_webhook_twice_credits_once(self, session_factory, read_balance):
        for _ in range(2):
            async with session_factory() as db:
                await BillingService(db).apply_topup("ch_500", 5000, "user-1")

        assert await read_balance("user-1") == 5000

    async def test_redeem_code(self, billing: BillingService, session_factory, read_balance):
        await billing.codes.create_codes(credits_minor=300, code="HELLO")

        async with session_factory() as db:
            result = await BillingService(db).redeem_code("hello", "user-1")

        assert result.credits_minor == 300
        assert await read_balance("user-1") == 300


class TestAdjustCredits:
    """Tests for admin adjustments."""

    async def test_add(self, billing: BillingService):
        result = await billing.adjust_credits("user-1", 250, AdjustmentMode.ADD, "goodwill")

        assert result.delta_minor == 250
        assert result.balance_after_minor == 250
        assert result.transaction_id is not None

    async def test_negative_add(self, billing: BillingService):
        await billing.adjust_credits("user-1", 250, AdjustmentMode.ADD, "goodwill")
        result = await billing.adjust_credits("user-1", -50, AdjustmentMode.ADD, "correction")
        assert result.balance_after_minor == 200

    async def test_negative_add_cannot_overdraw(self, billing: BillingService):
        await billing.adjust_credits("user-1", 100, AdjustmentMode.ADD, "goodwill")

        with pytest.raises(InsufficientCreditsError):
            await billing.adjust_credits("user-1", -200, AdjustmentMode.ADD, "correction")

    async def test_set_appends_difference(self, billing: BillingService, session: AsyncSession):
        await billing.adjust_credits("user-1", 250, AdjustmentMode.ADD, "seed")

        result = await billing.adjust_credits("user-1", 100, AdjustmentMode.SET, "reset")

        assert result.delta_minor == -150
        assert result.balance_after_minor == 100
        tx = (
            await session.execute(
                select(CreditTransaction).where(CreditTransaction.id == result.transaction_id)
            )
        ).scalar_one()
        assert tx.kind == TransactionKind.ADJUSTMENT
        assert tx.amount_minor == -150

    async def test_set_to_current_writes_nothing(self, billing: BillingService):
        await billing.adjust_credits("user-1", 250, AdjustmentMode.ADD, "seed")

        result = await billing.adjust_credits("user-1", 250, AdjustmentMode.SET, "noop")

        assert result.transaction_id is None
        assert result.delta_minor == 0
        page = await billing.list_transactions("user-1")
        assert page.total_count == 1

    async def test_set_for_new_user(self, billing: BillingService):
        result = await billing.adjust_credits("new-user", 70, AdjustmentMode.SET, "grant")
        assert result.balance_after_minor == 70

    async def test_admin_recorded_in_description(self, billing: BillingService):
        await billing.adjust_credits("user-1", 10, AdjustmentMode.ADD, "promo", admin_id="ops")
        page = await billing.list_transactions("user-1")
        assert "[by ops]" in page.entries[0].description

    async def test_invalid_arguments(self, billing: BillingService):
        with pytest.raises(ValueError):
            await billing.adjust_credits("user-1", 0, AdjustmentMode.ADD, "zero")
        with pytest.raises(ValueError):
            await billing.adjust_credits("user-1", -1, AdjustmentMode.SET, "negative")


# ============================================================================
# Delegation (mocked components)
# ============================================================================


class TestDelegation:
    """BillingService forwards to its components unchanged."""

    @pytest.fixture
    def service(self, db_session: AsyncMock, pricing_catalog: PricingCatalog) -> BillingService:
        return BillingService(db_session, pricing_catalog)

    async def test_get_balance(self, service: BillingService):
        with patch.object(service.ledger, "get_balance", AsyncMock(return_value=42)) as mock:
            assert await service.get_balance("user-1") == 42
        mock.assert_awaited_once_with("user-1")

    async def test_refund(self, service: BillingService):
        gid = uuid4()
        sentinel = MagicMock()
        with patch.object(service.refunds, "refund", AsyncMock(return_value=sentinel)) as mock:
            assert await service.refund_generation(gid) is sentinel
        mock.assert_awaited_once_with(gid)

    async def test_cancel(self, service: BillingService):
        gid = uuid4()
        with patch.object(service.generations, "cancel", AsyncMock()) as mock:
            await service.cancel_generation(gid)
        mock.assert_awaited_once_with(gid)

    async def test_topup_passes_provider(self, service: BillingService):
        with patch.object(service.topups, "apply_topup", AsyncMock()) as mock:
            await service.apply_topup("ch_1", 100, "user-1", provider="stripe")
        mock.assert_awaited_once_with("ch_1", 100, "user-1", "stripe")

    async def test_storage_conflict_propagates(self, service: BillingService):
        with patch.object(
            service.debits, "authorize", AsyncMock(side_effect=StorageConflictError("debit"))
        ):
            with pytest.raises(StorageConflictError):
                await service.create_generation(
                    "user-1", "flat-image", "p", GenerationOptions()
                )

    def test_pricing_loaded_lazily(self, db_session: AsyncMock, pricing_catalog: PricingCatalog):
        with patch(
            "app.services.billing.get_pricing_catalog", return_value=pricing_catalog
        ) as loader:
            service = BillingService(db_session)
            loader.assert_not_called()
            assert service.pricing is pricing_catalog
            assert service.pricing is pricing_catalog
        loader.assert_called_once()
