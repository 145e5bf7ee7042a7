"""
API Routes - FastAPI endpoints for generations, balances, codes and top-ups.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    ServiceCaller,
    get_pricing,
    get_stripe_provider,
    require_service_key,
    require_webhook_key,
)
from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    CodeAlreadyRedeemedError,
    CodeExhaustedError,
    CodeExpiredError,
    CodeInactiveError,
    CodeNotFoundError,
    DataIntegrityError,
    InsufficientCreditsError,
    InvalidPricingError,
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
    BalanceResponse,
    CreateGenerationRequest,
    CreateGenerationResponse,
    GenerationResponse,
    GenerationStatus,
    HealthResponse,
    ListTransactionsResponse,
    QuoteRequest,
    QuoteResponse,
    RedeemCodeRequest,
    RedeemCodeResponse,
    RefundResponse,
    StatusEventRequest,
    StatusEventResponse,
    TopupResponse,
    TopupWebhookRequest,
    TransactionListItem,
)
from app.models.domain import (
    GenerationData,
    StatusEvent,
    TopupResult,
    from_minor,
)
from app.services.billing import BillingService
from app.services.pricing import PricingCatalog
from app.services.stripe_provider import StripeProvider
from app.services.topup import payment_to_credits_minor, stripe_amount_to_credits_minor

logger = get_logger(__name__)

router = APIRouter()


def _storage_unavailable(exc: StorageConflictError) -> HTTPException:
    logger.error("request_storage_conflict", resource=exc.resource)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Temporarily unavailable, retry later",
    )


def _generation_response(generation: GenerationData) -> GenerationResponse:
    return GenerationResponse(
        generation_id=generation.generation_id,
        user_id=generation.user_id,
        model_id=generation.model_id,
        status=generation.status,
        credits_used=from_minor(generation.credits_used_minor),
        refunded=generation.refunded,
        task_id=generation.task_id,
        result_urls=list(generation.result_urls),
        error_message=generation.error_message,
        created_at=generation.created_at.isoformat(),
        updated_at=generation.updated_at.isoformat(),
        completed_at=generation.completed_at.isoformat() if generation.completed_at else None,
    )


def _topup_response(result: TopupResult) -> TopupResponse:
    return TopupResponse(
        charge_id=result.charge_id,
        user_id=result.user_id,
        credits=from_minor(result.credits_minor),
        balance_after=(
            from_minor(result.balance_after_minor)
            if result.balance_after_minor is not None
            else None
        ),
        already_applied=result.already_applied,
    )


# =============================================================================
# Generations
# =============================================================================


@router.post(
    "/v1/generations",
    response_model=CreateGenerationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_generation(
    request: CreateGenerationRequest,
    db: AsyncSession = Depends(get_write_db),
    pricing: PricingCatalog = Depends(get_pricing),
    caller: ServiceCaller = Depends(require_service_key),
) -> CreateGenerationResponse:
    """
    Charge for a generation and create its pending job.

    The caller dispatches the job to the provider only after this returns.
    """
    service = BillingService(db, pricing)

    try:
        generation, debit = await service.create_generation(
            user_id=request.user_id,
            model_id=request.model_id,
            prompt=request.prompt,
            options=request.options,
        )
    except (UnknownModelError, InvalidPricingError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="Insufficient credits",
        ) from exc
    except StorageConflictError as exc:
        raise _storage_unavailable(exc) from exc

    return CreateGenerationResponse(
        generation_id=generation.generation_id,
        status=generation.status,
        credits_used=from_minor(debit.cost_minor),
        balance_after=from_minor(debit.balance_after_minor),
        deduction_transaction_id=debit.transaction_id,
    )


@router.post("/v1/generations/status-events", response_model=StatusEventResponse)
async def apply_status_event(
    request: StatusEventRequest,
    db: AsyncSession = Depends(get_write_db),
    caller: ServiceCaller = Depends(require_service_key),
) -> StatusEventResponse:
    """
    Apply a provider status event (from polling or a provider webhook).

    Duplicate and late events are acknowledged with `applied=false`.
    """
    event = StatusEvent(
        status=GenerationStatus(request.status),
        generation_id=request.generation_id,
        task_id=request.task_id,
        result_urls=tuple(request.result_urls),
        error_message=request.error_message,
    )
    service = BillingService(db)

    try:
        result = await service.apply_status_event(event)
    except UnknownGenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Generation not found"
        ) from exc
    except StorageConflictError as exc:
        raise _storage_unavailable(exc) from exc

    return StatusEventResponse(
        generation_id=result.generation.generation_id,
        status=result.generation.status,
        applied=result.applied,
        refunded=result.generation.refunded,
    )


@router.get("/v1/generations/{generation_id}", response_model=GenerationResponse)
async def get_generation(
    generation_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    caller: ServiceCaller = Depends(require_service_key),
) -> GenerationResponse:
    """Get a generation job. Read-only - uses replica if configured."""
    service = BillingService(db)
    try:
        generation = await service.get_generation(generation_id)
    except UnknownGenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Generation not found"
        ) from exc
    return _generation_response(generation)


@router.post("/v1/generations/{generation_id}/task", response_model=GenerationResponse)
async def attach_task(
    generation_id: UUID,
    request: AttachTaskRequest,
    db: AsyncSession = Depends(get_write_db),
    caller: ServiceCaller = Depends(require_service_key),
) -> GenerationResponse:
    """Record the provider task id once the job has been dispatched."""
    service = BillingService(db)
    try:
        generation = await service.attach_task(generation_id, request.task_id)
    except UnknownGenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Generation not found"
        ) from exc
    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Generation already has a task"
        ) from exc
    except StorageConflictError as exc:
        raise _storage_unavailable(exc) from exc
    return _generation_response(generation)


@router.post("/v1/generations/{generation_id}/cancel", response_model=GenerationResponse)
async def cancel_generation(
    generation_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    caller: ServiceCaller = Depends(require_service_key),
) -> GenerationResponse:
    """
    Cancel a job before dispatch.

    The job becomes failed; its credits come back through the refund endpoint
    (or automatically when auto-refund is enabled).
    """
    service = BillingService(db)
    try:
        result = await service.cancel_generation(generation_id)
    except UnknownGenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Generation not found"
        ) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Generation is {exc.current} and can no longer be cancelled",
        ) from exc
    except StorageConflictError as exc:
        raise _storage_unavailable(exc) from exc
    return _generation_response(result.generation)


@router.post("/v1/generations/{generation_id}/refund", response_model=RefundResponse)
async def refund_generation(
    generation_id: UUID,
    db: AsyncSession = Depends(get_write_db),
    caller: ServiceCaller = Depends(require_service_key),
) -> RefundResponse:
    """Refund a failed generation. A second call returns 409."""
    service = BillingService(db)
    try:
        refund = await service.refund_generation(generation_id)
    except UnknownGenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Generation not found"
        ) from exc
    except RefundNotEligibleError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Refund not allowed: {exc.reason}",
        ) from exc
    except ReconciliationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Refund requires manual review",
        ) from exc
    except StorageConflictError as exc:
        raise _storage_unavailable(exc) from exc

    return RefundResponse(
        generation_id=refund.generation_id,
        transaction_id=refund.transaction_id,
        amount=from_minor(refund.amount_minor),
        balance_after=from_minor(refund.balance_after_minor),
    )


# =============================================================================
# Balances
# =============================================================================


@router.get("/v1/users/{user_id}/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: str,
    db: AsyncSession = Depends(get_read_db),
    caller: ServiceCaller = Depends(require_service_key),
) -> BalanceResponse:
    """Current balance. Unknown users have a balance of zero."""
    service = BillingService(db)
    balance_minor = await service.get_balance(user_id)
    return BalanceResponse(user_id=user_id, balance=from_minor(balance_minor))


@router.get("/v1/users/{user_id}/transactions", response_model=ListTransactionsResponse)
async def list_transactions(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_read_db),
    caller: ServiceCaller = Depends(require_service_key),
) -> ListTransactionsResponse:
    """
    Transaction history, newest first.

    Each entry linked to a generation carries that generation's status.
    """
    service = BillingService(db)
    page = await service.list_transactions(user_id, limit=limit, offset=offset)

    return ListTransactionsResponse(
        transactions=[
            TransactionListItem(
                transaction_id=entry.transaction_id,
                kind=entry.kind,
                amount=from_minor(entry.amount_minor),
                balance_after=from_minor(entry.balance_after_minor),
                sequence=entry.sequence,
                description=entry.description,
                related_generation_id=entry.related_generation_id,
                related_generation_status=entry.related_generation_status,
                created_at=entry.created_at.isoformat(),
            )
            for entry in page.entries
        ],
        total_count=page.total_count,
        has_more=page.has_more,
    )


# =============================================================================
# Pricing
# =============================================================================


@router.post("/v1/pricing/quote", response_model=QuoteResponse)
async def quote_generation(
    request: QuoteRequest,
    pricing: PricingCatalog = Depends(get_pricing),
    caller: ServiceCaller = Depends(require_service_key),
) -> QuoteResponse:
    """Price a generation without charging for it."""
    try:
        quote = pricing.quote(request.model_id, request.options)
    except (UnknownModelError, InvalidPricingError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return QuoteResponse(
        model_id=quote.model_id,
        credits=from_minor(quote.credits_minor),
        price_key=quote.price_key,
        quantity=quote.quantity,
    )


# =============================================================================
# Redemption Codes
# =============================================================================


@router.post("/v1/codes/redeem", response_model=RedeemCodeResponse)
async def redeem_code(
    request: RedeemCodeRequest,
    db: AsyncSession = Depends(get_write_db),
    caller: ServiceCaller = Depends(require_service_key),
) -> RedeemCodeResponse:
    """Redeem a promotional code for credits."""
    service = BillingService(db)
    try:
        result = await service.redeem_code(request.code, request.user_id)
    except CodeNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Code not found") from exc
    except CodeInactiveError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Code is not active"
        ) from exc
    except CodeAlreadyRedeemedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Code already redeemed"
        ) from exc
    except CodeExpiredError as exc:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail="Code has expired") from exc
    except CodeExhaustedError as exc:
        raise HTTPException(
            status_code=status.HTTP_410_GONE, detail="Code has no uses left"
        ) from exc
    except StorageConflictError as exc:
        raise _storage_unavailable(exc) from exc

    return RedeemCodeResponse(
        code=result.code,
        credits=from_minor(result.credits_minor),
        balance_after=from_minor(result.balance_after_minor),
        transaction_id=result.transaction_id,
    )


# =============================================================================
# Payment Webhooks
# =============================================================================


@router.post(
    "/v1/webhooks/topup",
    response_model=TopupResponse,
    dependencies=[Depends(require_webhook_key)],
)
async def topup_webhook(
    request: TopupWebhookRequest,
    db: AsyncSession = Depends(get_write_db),
) -> TopupResponse:
    """
    Generic payment gateway confirmation.

    Redeliveries of the same charge id return 200 with `already_applied=true`.
    """
    credits_minor = payment_to_credits_minor(request.amount)
    if credits_minor <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Amount is below one credit unit",
        )

    service = BillingService(db)
    try:
        result = await service.apply_topup(
            request.charge_id, credits_minor, request.user_id, provider="webhook"
        )
    except PaymentVerificationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StorageConflictError as exc:
        raise _storage_unavailable(exc) from exc

    return _topup_response(result)


@router.post("/v1/webhooks/stripe", response_model=None)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    stripe_provider: StripeProvider = Depends(get_stripe_provider),
) -> TopupResponse | dict[str, str]:
    """
    Handle Stripe webhook events.

    Only `payment_intent.succeeded` credits the ledger, and only after the
    PaymentIntent is re-read from Stripe and confirmed as succeeded.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        webhook_event = await stripe_provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc

    logger.info(
        "stripe_webhook_received",
        event_id=webhook_event.event_id,
        event_type=webhook_event.event_type,
        payment_id=webhook_event.payment_id,
    )

    if webhook_event.event_type != "payment_intent.succeeded":
        logger.info(
            "stripe_webhook_ignored",
            event_type=webhook_event.event_type,
            event_id=webhook_event.event_id,
        )
        return {"status": "ignored", "event_id": webhook_event.event_id}

    if not webhook_event.metadata_user_id:
        logger.error("stripe_webhook_missing_metadata", event_id=webhook_event.event_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing user metadata in webhook",
        )

    try:
        payment = await stripe_provider.retrieve_payment(webhook_event.payment_id)
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not confirm payment",
        ) from exc

    if not payment.succeeded or payment.metadata_user_id != webhook_event.metadata_user_id:
        logger.error(
            "stripe_payment_unverified",
            payment_id=payment.payment_id,
            status=payment.status,
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment could not be verified",
        )

    if payment.currency != settings.topup_currency.upper():
        logger.error(
            "stripe_payment_wrong_currency",
            payment_id=payment.payment_id,
            currency=payment.currency,
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported currency: {payment.currency}",
        )

    credits_minor = stripe_amount_to_credits_minor(payment.amount_minor)
    if credits_minor <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Amount is below one credit unit",
        )

    service = BillingService(db)
    try:
        result = await service.apply_topup(
            payment.payment_id, credits_minor, webhook_event.metadata_user_id, provider="stripe"
        )
    except PaymentVerificationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StorageConflictError as exc:
        raise _storage_unavailable(exc) from exc

    return _topup_response(result)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
