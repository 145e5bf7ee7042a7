"""
Top-up Handler - credit confirmed payments exactly once.

The gateway's charge id is the dedupe key. Recording the payment event and
appending the top-up transaction happen in one database transaction, so a
charge is either fully applied or not at all, and a redelivered confirmation
finds the existing event and reports success without crediting again.
"""

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.atomic import run_atomic
from app.db.models import PaymentEvent, utc_now
from app.exceptions import DuplicatePaymentError, PaymentVerificationError
from app.models.api import TransactionKind
from app.models.domain import TopupResult, from_minor, to_minor_floor
from app.observability.metrics import metrics
from app.services.ledger import LedgerStore

logger = get_logger(__name__)


def payment_to_credits_minor(amount: Decimal) -> int:
    """Convert a paid amount in major currency units to credit minor units."""
    return to_minor_floor(amount * settings.credits_per_currency_unit)


def stripe_amount_to_credits_minor(amount_minor: int) -> int:
    """Convert a Stripe amount (currency minor units) to credit minor units."""
    return payment_to_credits_minor(Decimal(amount_minor) / 100)


class TopupHandler:
    """Applies payment confirmations to the ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = LedgerStore(session)

    async def apply_topup(
        self,
        charge_id: str,
        credits_minor: int,
        user_id: str,
        provider: str = "webhook",
    ) -> TopupResult:
        """
        Credit a confirmed payment.

        Returns:
            TopupResult; `already_applied=True` for a redelivered charge

        Raises:
            ValueError: Non-positive credit amount or empty charge id
            PaymentVerificationError: Charge id was already applied with a
                different user or amount
        """
        if credits_minor <= 0:
            raise ValueError(f"Top-up credits must be positive: {credits_minor}")
        if not charge_id:
            raise ValueError("charge_id cannot be empty")

        async def unit() -> TopupResult:
            event = PaymentEvent(
                charge_id=charge_id,
                user_id=user_id,
                amount_minor=credits_minor,
                processed=False,
                provider=provider,
                created_at=utc_now(),
            )
            self.session.add(event)
            try:
                await self.session.flush()
            except IntegrityError as exc:
                raise DuplicatePaymentError(charge_id) from exc

            await self.ledger.ensure_account(user_id)
            entry = await self.ledger.append(
                user_id,
                credits_minor,
                TransactionKind.TOPUP,
                f"Top-up {from_minor(credits_minor)} credits ({provider} {charge_id})",
                idempotency_key=f"topup:{charge_id}",
            )
            event.processed = True
            event.transaction_id = entry.transaction_id
            event.processed_at = utc_now()
            await self.session.flush()
            return TopupResult(
                charge_id=charge_id,
                user_id=user_id,
                credits_minor=credits_minor,
                already_applied=False,
                transaction_id=entry.transaction_id,
                balance_after_minor=entry.balance_after_minor,
            )

        try:
            result = await run_atomic(self.session, unit, "topup")
        except DuplicatePaymentError:
            return await self._resolve_duplicate(charge_id, credits_minor, user_id)

        metrics.record_topup("success")
        metrics.record_append(TransactionKind.TOPUP.value, credits_minor)
        logger.info(
            "topup_applied",
            charge_id=charge_id,
            user_id=user_id,
            provider=provider,
            credits_minor=credits_minor,
            balance_after_minor=result.balance_after_minor,
        )
        return result

    async def _resolve_duplicate(
        self, charge_id: str, credits_minor: int, user_id: str
    ) -> TopupResult:
        # Plain columns survive the rollback; ORM instances would be expired
        stmt = select(
            PaymentEvent.user_id, PaymentEvent.amount_minor, PaymentEvent.transaction_id
        ).where(PaymentEvent.charge_id == charge_id)
        recorded_user_id, recorded_minor, transaction_id = (
            await self.session.execute(stmt)
        ).one()
        await self.session.rollback()

        if recorded_user_id != user_id or recorded_minor != credits_minor:
            metrics.record_topup("mismatch")
            logger.error(
                "topup_redelivery_mismatch",
                charge_id=charge_id,
                recorded_user_id=recorded_user_id,
                recorded_credits_minor=recorded_minor,
                user_id=user_id,
                credits_minor=credits_minor,
            )
            raise PaymentVerificationError(
                charge_id, "Charge already applied with a different user or amount"
            )

        metrics.record_topup("duplicate")
        logger.info("topup_duplicate_ignored", charge_id=charge_id, user_id=user_id)
        return TopupResult(
            charge_id=charge_id,
            user_id=user_id,
            credits_minor=credits_minor,
            already_applied=True,
            transaction_id=transaction_id,
            balance_after_minor=None,
        )
