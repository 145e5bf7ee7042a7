"""
Billing Service - entry point for every credit-affecting workflow.

Composes the ledger components so that routes and scripts never touch the
tables directly:

- create_generation: price, debit, and insert the pending job atomically
- status events, cancel and refunds via GenerationTracker / RefundProcessor
- top-ups, code redemptions and admin adjustments

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.atomic import run_atomic
from app.models.api import AdjustmentMode, GenerationOptions, TransactionKind
from app.models.domain import (
    AdjustmentResult,
    DebitIntent,
    DebitResult,
    GenerationData,
    Quote,
    RedeemResult,
    RefundResult,
    StatusEvent,
    TopupResult,
    TransactionPage,
    TransitionResult,
    from_minor,
)
from app.observability.metrics import metrics
from app.services.debit import DebitAuthorizer
from app.services.generation import GenerationTracker
from app.services.ledger import LedgerStore
from app.services.pricing import PricingCatalog, get_pricing_catalog
from app.services.redemption import RedemptionService
from app.services.refund import RefundProcessor
from app.services.topup import TopupHandler

logger = get_logger(__name__)


class BillingService:
    """
    Facade over the ledger, debit, generation, refund, top-up and
    redemption components. One instance per database session.
    """

    def __init__(self, session: AsyncSession, pricing: PricingCatalog | None = None) -> None:
        """Initialize billing service with database session."""
        self.session = session
        self._pricing = pricing
        self.ledger = LedgerStore(session)
        self.debits = DebitAuthorizer(session)
        self.generations = GenerationTracker(session)
        self.refunds = RefundProcessor(session)
        self.topups = TopupHandler(session)
        self.codes = RedemptionService(session)

    @property
    def pricing(self) -> PricingCatalog:
        """Pricing catalog, loaded on first use when none was injected."""
        if self._pricing is None:
            self._pricing = get_pricing_catalog()
        return self._pricing

    # ========================================================================
    # Generations
    # ========================================================================

    def quote(self, model_id: str, options: GenerationOptions) -> Quote:
        return self.pricing.quote(model_id, options)

    async def create_generation(
        self,
        user_id: str,
        model_id: str,
        prompt: str,
        options: GenerationOptions,
    ) -> tuple[GenerationData, DebitResult]:
        """
        Charge for a generation and create its pending job record.

        The debit and the job row commit together; if the balance is short
        neither exists.

        Raises:
            UnknownModelError: Model is missing or inactive
            InvalidPricingError: Resolved cost is not positive
            InsufficientCreditsError: Balance below cost
        """
        quote = self.pricing.quote(model_id, options)
        generation_id = uuid4()
        created: list[GenerationData] = []

        async def link(debit: DebitResult) -> None:
            created.append(
                await self.generations.create_pending(
                    generation_id=generation_id,
                    user_id=user_id,
                    model_id=model_id,
                    prompt=prompt,
                    options=options.model_dump(exclude_none=True),
                    credits_used_minor=quote.credits_minor,
                    deduction_transaction_id=debit.transaction_id,
                )
            )

        intent = DebitIntent(
            user_id=user_id,
            cost_minor=quote.credits_minor,
            generation_id=generation_id,
            description=f"Generation {model_id} ({from_minor(quote.credits_minor)} credits)",
        )
        debit = await self.debits.authorize(intent, link=link)

        logger.info(
            "generation_created",
            generation_id=str(generation_id),
            user_id=user_id,
            model_id=model_id,
            price_key=quote.price_key,
            credits_minor=quote.credits_minor,
        )
        # The link may have run more than once if the unit was retried
        return created[-1], debit

    async def get_generation(self, generation_id: UUID) -> GenerationData:
        return await self.generations.get(generation_id)

    async def attach_task(self, generation_id: UUID, task_id: str) -> GenerationData:
        return await self.generations.attach_task(generation_id, task_id)

    async def apply_status_event(self, event: StatusEvent) -> TransitionResult:
        return await self.generations.apply_status_event(event)

    async def cancel_generation(self, generation_id: UUID) -> TransitionResult:
        return await self.generations.cancel(generation_id)

    async def refund_generation(self, generation_id: UUID) -> RefundResult:
        return await self.refunds.refund(generation_id)

    # ========================================================================
    # Balances
    # ========================================================================

    async def get_balance(self, user_id: str) -> int:
        return await self.ledger.get_balance(user_id)

    async def list_transactions(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> TransactionPage:
        return await self.ledger.list_transactions(user_id, limit=limit, offset=offset)

    # ========================================================================
    # Credits in
    # ========================================================================

    async def apply_topup(
        self, charge_id: str, credits_minor: int, user_id: str, provider: str = "webhook"
    ) -> TopupResult:
        return await self.topups.apply_topup(charge_id, credits_minor, user_id, provider)

    async def redeem_code(self, code: str, user_id: str) -> RedeemResult:
        return await self.codes.redeem(code, user_id)

    async def adjust_credits(
        self,
        user_id: str,
        amount_minor: int,
        mode: AdjustmentMode,
        reason: str,
        admin_id: str | None = None,
    ) -> AdjustmentResult:
        """
        Admin credit adjustment, recorded as an ADJUSTMENT transaction.

        `add` applies `amount_minor` as a signed delta. `set` moves the balance
        to `amount_minor` by appending the difference; the write is guarded by
        the balance it was computed from and retried if another write lands
        in between. Setting the current balance writes nothing.

        Raises:
            InsufficientCreditsError: A negative `add` would overdraw
        """
        if mode == AdjustmentMode.SET and amount_minor < 0:
            raise ValueError("Target balance cannot be negative")
        if mode == AdjustmentMode.ADD and amount_minor == 0:
            raise ValueError("Adjustment amount must be non-zero")

        description = f"Admin adjustment ({mode.value}): {reason}"
        if admin_id:
            description = f"{description} [by {admin_id}]"

        async def unit() -> AdjustmentResult:
            await self.ledger.ensure_account(user_id)
            expected: int | None = None
            if mode == AdjustmentMode.SET:
                expected = await self.ledger.get_balance(user_id)
                delta = amount_minor - expected
            else:
                delta = amount_minor

            if delta == 0:
                return AdjustmentResult(
                    user_id=user_id,
                    mode=mode,
                    delta_minor=0,
                    balance_after_minor=amount_minor,
                    transaction_id=None,
                )

            entry = await self.ledger.append(
                user_id,
                delta,
                TransactionKind.ADJUSTMENT,
                description,
                expected_balance_minor=expected,
            )
            return AdjustmentResult(
                user_id=user_id,
                mode=mode,
                delta_minor=delta,
                balance_after_minor=entry.balance_after_minor,
                transaction_id=entry.transaction_id,
            )

        result = await run_atomic(self.session, unit, "adjust_credits")

        metrics.adjustments_total.labels(mode=mode.value).inc()
        if result.delta_minor:
            metrics.record_append(TransactionKind.ADJUSTMENT.value, result.delta_minor)
        logger.info(
            "credits_adjusted",
            user_id=user_id,
            mode=mode.value,
            delta_minor=result.delta_minor,
            balance_after_minor=result.balance_after_minor,
            admin_id=admin_id,
        )
        return result
