"""
Debit Authorizer - deduct-if-sufficient before a job may be dispatched.

The deduction is a single conditional UPDATE (see LedgerStore.append), so two
concurrent requests that the balance can only cover once resolve with exactly
one winner. An optional `link` callback runs inside the same database
transaction, which is how the generation row is created together with its
deduction.
"""

import time
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.atomic import run_atomic
from app.exceptions import InsufficientCreditsError
from app.models.api import TransactionKind
from app.models.domain import DebitIntent, DebitResult
from app.observability.metrics import metrics
from app.services.ledger import LedgerStore

logger = get_logger(__name__)

DebitLink = Callable[[DebitResult], Awaitable[None]]


class DebitAuthorizer:
    """Atomically reserves and deducts credits for a generation."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = LedgerStore(session)

    async def debit(self, intent: DebitIntent) -> DebitResult:
        """Append the deduction inside the caller's transaction (no commit)."""
        entry = await self.ledger.append(
            intent.user_id,
            -intent.cost_minor,
            TransactionKind.DEDUCTION,
            intent.description,
            related_generation_id=intent.generation_id,
            idempotency_key=f"debit:{intent.generation_id}",
        )
        return DebitResult(
            transaction_id=entry.transaction_id,
            user_id=intent.user_id,
            generation_id=intent.generation_id,
            cost_minor=intent.cost_minor,
            balance_after_minor=entry.balance_after_minor,
        )

    async def authorize(self, intent: DebitIntent, link: DebitLink | None = None) -> DebitResult:
        """
        Deduct `intent.cost_minor` from the user's balance and commit.

        Args:
            intent: What to debit and which generation it pays for
            link: Awaited with the debit result before commit; an exception
                from it rolls the debit back

        Returns:
            DebitResult with the deduction transaction id

        Raises:
            InsufficientCreditsError: Balance below cost (no state change)
        """
        start = time.perf_counter()

        async def unit() -> DebitResult:
            result = await self.debit(intent)
            if link is not None:
                await link(result)
            return result

        try:
            result = await run_atomic(self.session, unit, "debit")
        except InsufficientCreditsError as exc:
            metrics.record_debit("insufficient_credits", time.perf_counter() - start)
            logger.info(
                "debit_rejected_insufficient_credits",
                user_id=intent.user_id,
                generation_id=str(intent.generation_id),
                balance_minor=exc.balance,
                cost_minor=intent.cost_minor,
            )
            raise

        metrics.record_debit("success", time.perf_counter() - start)
        metrics.record_append(TransactionKind.DEDUCTION.value, -intent.cost_minor)
        logger.info(
            "debit_authorized",
            user_id=intent.user_id,
            generation_id=str(intent.generation_id),
            transaction_id=str(result.transaction_id),
            cost_minor=intent.cost_minor,
            balance_after_minor=result.balance_after_minor,
        )
        return result
