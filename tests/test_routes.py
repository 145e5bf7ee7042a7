"""
Tests for API Routes.

Tests route handler functions directly with mocked dependencies and checks
how domain errors map to HTTP status codes.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi import HTTPException

from app.api.dependencies import ServiceCaller
from app.exceptions import (
    CodeAlreadyRedeemedError,
    CodeExhaustedError,
    CodeExpiredError,
    CodeInactiveError,
    CodeNotFoundError,
    DataIntegrityError,
    InsufficientCreditsError,
    InvalidTransitionError,
    PaymentProviderError,
    PaymentVerificationError,
    ReconciliationError,
    RefundNotEligibleError,
    StorageConflictError,
    UnknownGenerationError,
    UnknownModelError,
    WebhookVerificationError,
)
from app.models.api import (
    AttachTaskRequest,
    CreateGenerationRequest,
    GenerationOptions,
    GenerationStatus,
    QuoteRequest,
    RedeemCodeRequest,
    StatusEventRequest,
    TopupWebhookRequest,
)
from app.models.domain import (
    RedeemResult,
    RefundResult,
    TopupResult,
    TransitionResult,
)
from app.services.payment_provider import PaymentConfirmation, WebhookEvent


@pytest.fixture
def caller() -> ServiceCaller:
    return ServiceCaller(key_suffix="-key")


# ============================================================================
# Generation Route Tests
# ============================================================================


class TestCreateGenerationRoute:
    """Tests for create_generation route function."""

    def _request(self) -> CreateGenerationRequest:
        return CreateGenerationRequest(
            user_id="user-1",
            model_id="clip-video",
            prompt="a cat surfing",
            options=GenerationOptions(duration=5),
        )

    @pytest.mark.asyncio
    async def test_success(
        self, db_session, pricing_catalog, caller, generation_factory, debit_factory
    ):
        """Returns the job id and the balance after the debit."""
        from app.api.routes import create_generation

        generation = generation_factory()
        debit = debit_factory(generation.generation_id)

        with patch("app.api.routes.BillingService") as MockService:
            service = MockService.return_value
            service.create_generation = AsyncMock(return_value=(generation, debit))

            result = await create_generation(
                request=self._request(), db=db_session, pricing=pricing_catalog, caller=caller
            )

        MockService.assert_called_once_with(db_session, pricing_catalog)
        assert result.generation_id == generation.generation_id
        assert result.status == GenerationStatus.PENDING
        assert result.credits_used == Decimal("60.0")
        assert result.balance_after == Decimal("40.0")
        assert result.deduction_transaction_id == debit.transaction_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,expected_status",
        [
            (InsufficientCreditsError("user-1", 100, 600), 402),
            (UnknownModelError("nope"), 400),
            (StorageConflictError("debit"), 503),
        ],
    )
    async def test_error_mapping(
        self, db_session, pricing_catalog, caller, error, expected_status
    ):
        """Domain errors map to HTTP errors."""
        from app.api.routes import create_generation

        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.create_generation = AsyncMock(side_effect=error)

            with pytest.raises(HTTPException) as exc_info:
                await create_generation(
                    request=self._request(),
                    db=db_session,
                    pricing=pricing_catalog,
                    caller=caller,
                )

        assert exc_info.value.status_code == expected_status


class TestStatusEventRoute:
    """Tests for apply_status_event route function."""

    @pytest.mark.asyncio
    async def test_event_forwarded(self, db_session, caller, generation_factory):
        """Request is converted to a StatusEvent."""
        from app.api.routes import apply_status_event

        generation = generation_factory(status=GenerationStatus.COMPLETED)
        request = StatusEventRequest(
            task_id="task-1", status="completed", result_urls=["https://cdn/1.mp4"]
        )

        with patch("app.api.routes.BillingService") as MockService:
            service = MockService.return_value
            service.apply_status_event = AsyncMock(
                return_value=TransitionResult(generation=generation, applied=True)
            )

            result = await apply_status_event(request=request, db=db_session, caller=caller)

        event = service.apply_status_event.call_args.args[0]
        assert event.status == GenerationStatus.COMPLETED
        assert event.task_id == "task-1"
        assert event.result_urls == ("https://cdn/1.mp4",)
        assert result.applied is True
        assert result.status == GenerationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_duplicate_acknowledged(self, db_session, caller, generation_factory):
        """A no-op event still returns 200 with applied=False."""
        from app.api.routes import apply_status_event

        generation = generation_factory(status=GenerationStatus.COMPLETED)
        request = StatusEventRequest(generation_id=generation.generation_id, status="failed")

        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.apply_status_event = AsyncMock(
                return_value=TransitionResult(generation=generation, applied=False)
            )
            result = await apply_status_event(request=request, db=db_session, caller=caller)

        assert result.applied is False
        assert result.status == GenerationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_task(self, db_session, caller):
        """Unknown task id returns 404."""
        from app.api.routes import apply_status_event

        request = StatusEventRequest(task_id="ghost", status="completed")
        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.apply_status_event = AsyncMock(
                side_effect=UnknownGenerationError("ghost")
            )
            with pytest.raises(HTTPException) as exc_info:
                await apply_status_event(request=request, db=db_session, caller=caller)

        assert exc_info.value.status_code == 404


class TestGenerationLookupRoutes:
    """Tests for get_generation, attach_task and cancel_generation."""

    @pytest.mark.asyncio
    async def test_get_generation(self, db_session, caller, generation_factory):
        from app.api.routes import get_generation

        generation = generation_factory(task_id="task-1")
        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.get_generation = AsyncMock(return_value=generation)
            result = await get_generation(
                generation_id=generation.generation_id, db=db_session, caller=caller
            )

        assert result.generation_id == generation.generation_id
        assert result.task_id == "task-1"
        assert result.credits_used == Decimal("60.0")
        assert result.completed_at is None

    @pytest.mark.asyncio
    async def test_get_unknown(self, db_session, caller):
        from app.api.routes import get_generation

        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.get_generation = AsyncMock(
                side_effect=UnknownGenerationError(uuid4())
            )
            with pytest.raises(HTTPException) as exc_info:
                await get_generation(generation_id=uuid4(), db=db_session, caller=caller)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_attach_conflicting_task(self, db_session, caller):
        """Attaching a second task id returns 409."""
        from app.api.routes import attach_task

        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.attach_task = AsyncMock(
                side_effect=DataIntegrityError("already attached")
            )
            with pytest.raises(HTTPException) as exc_info:
                await attach_task(
                    generation_id=uuid4(),
                    request=AttachTaskRequest(task_id="task-2"),
                    db=db_session,
                    caller=caller,
                )

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_cancel_after_dispatch(self, db_session, caller):
        """Cancelling a processing job returns 409."""
        from app.api.routes import cancel_generation

        gid = uuid4()
        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.cancel_generation = AsyncMock(
                side_effect=InvalidTransitionError(gid, "processing", "failed")
            )
            with pytest.raises(HTTPException) as exc_info:
                await cancel_generation(generation_id=gid, db=db_session, caller=caller)

        assert exc_info.value.status_code == 409
        assert "processing" in exc_info.value.detail


class TestRefundRoute:
    """Tests for refund_generation route function."""

    @pytest.mark.asyncio
    async def test_success(self, db_session, caller):
        from app.api.routes import refund_generation

        gid = uuid4()
        refund = RefundResult(
            generation_id=gid,
            user_id="user-1",
            transaction_id=uuid4(),
            amount_minor=600,
            balance_after_minor=1000,
        )
        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.refund_generation = AsyncMock(return_value=refund)
            result = await refund_generation(generation_id=gid, db=db_session, caller=caller)

        assert result.amount == Decimal("60.0")
        assert result.balance_after == Decimal("100.0")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reason",
        [RefundNotEligibleError.ALREADY_REFUNDED, RefundNotEligibleError.NOT_FAILED],
    )
    async def test_not_eligible(self, db_session, caller, reason):
        """Second refund and refunds of live jobs return 409."""
        from app.api.routes import refund_generation

        gid = uuid4()
        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.refund_generation = AsyncMock(
                side_effect=RefundNotEligibleError(gid, reason)
            )
            with pytest.raises(HTTPException) as exc_info:
                await refund_generation(generation_id=gid, db=db_session, caller=caller)

        assert exc_info.value.status_code == 409
        assert reason in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_missing_deduction(self, db_session, caller):
        """A job with no linked debit is never refunded over HTTP."""
        from app.api.routes import refund_generation

        gid = uuid4()
        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.refund_generation = AsyncMock(
                side_effect=ReconciliationError(f"generation {gid} has no deduction to refund")
            )
            with pytest.raises(HTTPException) as exc_info:
                await refund_generation(generation_id=gid, db=db_session, caller=caller)

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "Refund requires manual review"


# ============================================================================
# Balance and Pricing Route Tests
# ============================================================================


class TestBalanceRoute:
    """Tests for get_balance route function."""

    @pytest.mark.asyncio
    async def test_balance_in_credits(self, db_session, caller):
        from app.api.routes import get_balance

        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.get_balance = AsyncMock(return_value=405)
            result = await get_balance(user_id="user-1", db=db_session, caller=caller)

        assert result.user_id == "user-1"
        assert result.balance == Decimal("40.5")


class TestQuoteRoute:
    """Tests for quote_generation route function."""

    @pytest.mark.asyncio
    async def test_quote(self, pricing_catalog, caller):
        from app.api.routes import quote_generation

        result = await quote_generation(
            request=QuoteRequest(
                model_id="clip-video", options=GenerationOptions(resolution="1080p", duration=10)
            ),
            pricing=pricing_catalog,
            caller=caller,
        )

        assert result.credits == Decimal("200.0")
        assert result.price_key == "1080p-10s"

    @pytest.mark.asyncio
    async def test_inactive_model(self, pricing_catalog, caller):
        from app.api.routes import quote_generation

        with pytest.raises(HTTPException) as exc_info:
            await quote_generation(
                request=QuoteRequest(model_id="retired-model"),
                pricing=pricing_catalog,
                caller=caller,
            )
        assert exc_info.value.status_code == 400


# ============================================================================
# Redemption Route Tests
# ============================================================================


class TestRedeemCodeRoute:
    """Tests for redeem_code route function."""

    @pytest.mark.asyncio
    async def test_success(self, db_session, caller):
        from app.api.routes import redeem_code

        result_data = RedeemResult(
            code="WELCOME",
            code_id=uuid4(),
            user_id="user-1",
            credits_minor=500,
            transaction_id=uuid4(),
            balance_after_minor=500,
        )
        with patch("app.api.routes.BillingService") as MockService:
            service = MockService.return_value
            service.redeem_code = AsyncMock(return_value=result_data)
            result = await redeem_code(
                request=RedeemCodeRequest(user_id="user-1", code=" welcome "),
                db=db_session,
                caller=caller,
            )

        service.redeem_code.assert_awaited_once_with("WELCOME", "user-1")
        assert result.credits == Decimal("50.0")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,expected_status",
        [
            (CodeNotFoundError("X"), 404),
            (CodeInactiveError("X"), 409),
            (CodeAlreadyRedeemedError("X", "user-1"), 409),
            (CodeExhaustedError("X", 1), 410),
            (StorageConflictError("redeem_code"), 503),
        ],
    )
    async def test_error_mapping(self, db_session, caller, error, expected_status):
        from app.api.routes import redeem_code

        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.redeem_code = AsyncMock(side_effect=error)
            with pytest.raises(HTTPException) as exc_info:
                await redeem_code(
                    request=RedeemCodeRequest(user_id="user-1", code="X"),
                    db=db_session,
                    caller=caller,
                )

        assert exc_info.value.status_code == expected_status

    @pytest.mark.asyncio
    async def test_expired(self, db_session, caller):
        from datetime import UTC, datetime

        from app.api.routes import redeem_code

        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.redeem_code = AsyncMock(
                side_effect=CodeExpiredError("OLD", datetime(2024, 1, 1, tzinfo=UTC))
            )
            with pytest.raises(HTTPException) as exc_info:
                await redeem_code(
                    request=RedeemCodeRequest(user_id="user-1", code="OLD"),
                    db=db_session,
                    caller=caller,
                )

        assert exc_info.value.status_code == 410


# ============================================================================
# Webhook Route Tests
# ============================================================================


class TestTopupWebhookRoute:
    """Tests for topup_webhook route function."""

    @pytest.mark.asyncio
    async def test_first_delivery(self, db_session):
        from app.api.routes import topup_webhook

        with patch("app.api.routes.BillingService") as MockService:
            service = MockService.return_value
            service.apply_topup = AsyncMock(
                return_value=TopupResult(
                    charge_id="ch_1",
                    user_id="user-1",
                    credits_minor=5000,
                    already_applied=False,
                    transaction_id=uuid4(),
                    balance_after_minor=5000,
                )
            )
            result = await topup_webhook(
                request=TopupWebhookRequest(
                    charge_id="ch_1", amount=Decimal("500.00"), user_id="user-1"
                ),
                db=db_session,
            )

        service.apply_topup.assert_awaited_once_with("ch_1", 5000, "user-1", provider="webhook")
        assert result.already_applied is False
        assert result.balance_after == Decimal("500.0")

    @pytest.mark.asyncio
    async def test_redelivery(self, db_session):
        from app.api.routes import topup_webhook

        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.apply_topup = AsyncMock(
                return_value=TopupResult(
                    charge_id="ch_1",
                    user_id="user-1",
                    credits_minor=5000,
                    already_applied=True,
                    transaction_id=uuid4(),
                    balance_after_minor=None,
                )
            )
            result = await topup_webhook(
                request=TopupWebhookRequest(
                    charge_id="ch_1", amount=Decimal("500.00"), user_id="user-1"
                ),
                db=db_session,
            )

        assert result.already_applied is True
        assert result.balance_after is None

    @pytest.mark.asyncio
    async def test_amount_below_one_unit(self, db_session):
        from app.api.routes import topup_webhook

        with pytest.raises(HTTPException) as exc_info:
            await topup_webhook(
                request=TopupWebhookRequest(
                    charge_id="ch_1", amount=Decimal("0.01"), user_id="user-1"
                ),
                db=db_session,
            )
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_mismatched_redelivery(self, db_session):
        from app.api.routes import topup_webhook

        with patch("app.api.routes.BillingService") as MockService:
            MockService.return_value.apply_topup = AsyncMock(
                side_effect=PaymentVerificationError("ch_1", "different amount")
            )
            with pytest.raises(HTTPException) as exc_info:
                await topup_webhook(
                    request=TopupWebhookRequest(
                        charge_id="ch_1", amount=Decimal("90.00"), user_id="user-1"
                    ),
                    db=db_session,
                )
        assert exc_info.value.status_code == 400


class TestStripeWebhookRoute:
    """Tests for stripe_webhook route function."""

    def _request(self) -> MagicMock:
        request = MagicMock()
        request.body = AsyncMock(return_value=b'{"id": "evt_1"}')
        request.headers = {"stripe-signature": "t=1,v1=sig"}
        return request

    def _event(self, event_type: str = "payment_intent.succeeded", user_id="user-1"):
        return WebhookEvent(
            event_id="evt_1",
            event_type=event_type,
            payment_id="pi_1",
            status="succeeded",
            amount_minor=50000,
            currency="THB",
            metadata_user_id=user_id,
        )

    def _payment(self, status: str = "succeeded", currency: str = "THB") -> PaymentConfirmation:
        return PaymentConfirmation(
            payment_id="pi_1",
            status=status,
            amount_minor=50000,
            currency=currency,
            metadata_user_id="user-1",
        )

    def _provider(self, event=None, payment=None) -> MagicMock:
        provider = MagicMock()
        provider.verify_webhook = AsyncMock(return_value=event or self._event())
        provider.retrieve_payment = AsyncMock(return_value=payment or self._payment())
        return provider

    @pytest.mark.asyncio
    async def test_succeeded_payment_credited(self, db_session):
        from app.api.routes import stripe_webhook

        provider = self._provider()
        with patch("app.api.routes.BillingService") as MockService:
            service = MockService.return_value
            service.apply_topup = AsyncMock(
                return_value=TopupResult(
                    charge_id="pi_1",
                    user_id="user-1",
                    credits_minor=5000,
                    already_applied=False,
                    transaction_id=uuid4(),
                    balance_after_minor=5000,
                )
            )
            result = await stripe_webhook(
                request=self._request(), db=db_session, stripe_provider=provider
            )

        provider.verify_webhook.assert_awaited_once_with(b'{"id": "evt_1"}', "t=1,v1=sig")
        provider.retrieve_payment.assert_awaited_once_with("pi_1")
        service.apply_topup.assert_awaited_once_with("pi_1", 5000, "user-1", provider="stripe")
        assert result.credits == Decimal("500.0")

    @pytest.mark.asyncio
    async def test_other_events_ignored(self, db_session):
        from app.api.routes import stripe_webhook

        provider = self._provider(event=self._event("payment_intent.created"))
        result = await stripe_webhook(
            request=self._request(), db=db_session, stripe_provider=provider
        )

        assert result == {"status": "ignored", "event_id": "evt_1"}
        provider.retrieve_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_signature(self, db_session):
        from app.api.routes import stripe_webhook

        provider = self._provider()
        provider.verify_webhook = AsyncMock(side_effect=WebhookVerificationError("bad"))

        with pytest.raises(HTTPException) as exc_info:
            await stripe_webhook(request=self._request(), db=db_session, stripe_provider=provider)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_user_metadata(self, db_session):
        from app.api.routes import stripe_webhook

        provider = self._provider(event=self._event(user_id=None))
        with pytest.raises(HTTPException) as exc_info:
            await stripe_webhook(request=self._request(), db=db_session, stripe_provider=provider)
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_unconfirmed_payment_not_credited(self, db_session):
        from app.api.routes import stripe_webhook

        provider = self._provider(payment=self._payment(status="processing"))
        with patch("app.api.routes.BillingService") as MockService:
            with pytest.raises(HTTPException) as exc_info:
                await stripe_webhook(
                    request=self._request(), db=db_session, stripe_provider=provider
                )
            MockService.return_value.apply_topup.assert_not_called()
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_wrong_currency_not_credited(self, db_session):
        from app.api.routes import stripe_webhook

        provider = self._provider(payment=self._payment(currency="USD"))
        with patch("app.api.routes.BillingService") as MockService:
            with pytest.raises(HTTPException) as exc_info:
                await stripe_webhook(
                    request=self._request(), db=db_session, stripe_provider=provider
                )
            MockService.return_value.apply_topup.assert_not_called()
        assert exc_info.value.status_code == 400
        assert "USD" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_lookup_failure(self, db_session):
        from app.api.routes import stripe_webhook

        provider = self._provider()
        provider.retrieve_payment = AsyncMock(side_effect=PaymentProviderError("down"))
        with pytest.raises(HTTPException) as exc_info:
            await stripe_webhook(request=self._request(), db=db_session, stripe_provider=provider)
        assert exc_info.value.status_code == 502


# ============================================================================
# Health Route Tests
# ============================================================================


class TestHealthRoute:
    """Tests for health_check route function."""

    @pytest.mark.asyncio
    async def test_healthy(self, db_session):
        from app.api.routes import health_check

        result = await health_check(db=db_session)
        assert result.status == "healthy"
        assert result.database == "connected"

    @pytest.mark.asyncio
    async def test_database_down(self, db_session):
        from app.api.routes import health_check

        db_session.execute = AsyncMock(side_effect=ConnectionError("refused"))
        with pytest.raises(HTTPException) as exc_info:
            await health_check(db=db_session)

        assert exc_info.value.status_code == 503
        assert exc_info.value.detail["database"] == "disconnected"
