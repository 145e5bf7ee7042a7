"""
Redemption Service - promotional codes that grant credits.

A redemption claims one use of the code with a compare-and-set UPDATE
(`used_count < max_uses`, active, unexpired), appends the credit and records
who redeemed it, all in one transaction. For one-per-user codes a partial
unique index on (code_id, user_id) rejects a second redemption by the same
user; the failed attempt rolls back its use claim as well.
"""

import secrets
from datetime import datetime
from typing import NoReturn
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.atomic import run_atomic
from app.db.models import CodeRedemption, RedemptionCode, ensure_utc, utc_now
from app.exceptions import (
    CodeAlreadyRedeemedError,
    CodeConflictError,
    CodeError,
    CodeExhaustedError,
    CodeExpiredError,
    CodeInactiveError,
    CodeNotFoundError,
    StorageConflictError,
)
from app.models.api import TransactionKind
from app.models.domain import RedeemResult, RedemptionCodeData, from_minor
from app.observability.metrics import metrics
from app.services.ledger import LedgerStore

logger = get_logger(__name__)

# No 0/O or 1/I
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def to_code_data(row: RedemptionCode) -> RedemptionCodeData:
    return RedemptionCodeData(
        code_id=row.id,
        code=row.code,
        credits_minor=row.credits_minor,
        max_uses=row.max_uses,
        used_count=row.used_count,
        is_active=row.is_active,
        one_per_user=row.one_per_user,
        expires_at=ensure_utc(row.expires_at) if row.expires_at else None,
        note=row.note,
        created_by=row.created_by,
        created_at=ensure_utc(row.created_at),
    )


class RedemptionService:
    """Redeem codes and manage the code catalog."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = LedgerStore(session)

    # ========================================================================
    # Redemption
    # ========================================================================

    async def redeem(self, code: str, user_id: str) -> RedeemResult:
        """
        Redeem `code` for `user_id`.

        Raises:
            CodeNotFoundError, CodeInactiveError, CodeExpiredError,
            CodeExhaustedError, CodeAlreadyRedeemedError
        """
        normalized = code.strip().upper()

        async def unit() -> RedeemResult:
            now = utc_now()
            claim = (
                update(RedemptionCode)
                .where(
                    RedemptionCode.code == normalized,
                    RedemptionCode.is_active.is_(True),
                    (RedemptionCode.expires_at.is_(None)) | (RedemptionCode.expires_at > now),
                    RedemptionCode.used_count < RedemptionCode.max_uses,
                )
                .values(used_count=RedemptionCode.used_count + 1, updated_at=now)
                .returning(
                    RedemptionCode.id,
                    RedemptionCode.credits_minor,
                    RedemptionCode.one_per_user,
                    RedemptionCode.used_count,
                )
                .execution_options(synchronize_session=False)
            )
            row = (await self.session.execute(claim)).one_or_none()
            if row is None:
                await self._raise_unavailable(normalized, now)

            code_id, credits_minor, one_per_user, use_number = row
            await self.ledger.ensure_account(user_id)
            entry = await self.ledger.append(
                user_id,
                credits_minor,
                TransactionKind.REDEMPTION,
                f"Redeemed code {normalized}",
                related_code_id=code_id,
                idempotency_key=f"redemption:{code_id}:{use_number}",
            )

            self.session.add(
                CodeRedemption(
                    id=uuid4(),
                    code_id=code_id,
                    user_id=user_id,
                    one_per_user=one_per_user,
                    transaction_id=entry.transaction_id,
                    created_at=now,
                )
            )
            try:
                await self.session.flush()
            except IntegrityError as exc:
                raise CodeAlreadyRedeemedError(normalized, user_id) from exc

            return RedeemResult(
                code=normalized,
                code_id=code_id,
                user_id=user_id,
                credits_minor=credits_minor,
                transaction_id=entry.transaction_id,
                balance_after_minor=entry.balance_after_minor,
            )

        try:
            result = await run_atomic(self.session, unit, "redeem_code")
        except CodeError as exc:
            metrics.record_redemption(type(exc).__name__)
            logger.info(
                "code_redemption_rejected",
                code=normalized,
                user_id=user_id,
                reason=str(exc),
            )
            raise

        metrics.record_redemption("success")
        metrics.record_append(TransactionKind.REDEMPTION.value, result.credits_minor)
        logger.info(
            "code_redeemed",
            code=normalized,
            user_id=user_id,
            credits_minor=result.credits_minor,
            balance_after_minor=result.balance_after_minor,
        )
        return result

    async def _raise_unavailable(self, code: str, now: datetime) -> NoReturn:
        stmt = select(RedemptionCode).where(RedemptionCode.code == code)
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise CodeNotFoundError(code)
        if not row.is_active:
            raise CodeInactiveError(code)
        if row.expires_at is not None and ensure_utc(row.expires_at) <= now:
            raise CodeExpiredError(code, ensure_utc(row.expires_at))
        if row.used_count >= row.max_uses:
            raise CodeExhaustedError(code, row.max_uses)
        # Became available between the claim and this read
        raise StorageConflictError(f"code:{code}")

    # ========================================================================
    # Administration
    # ========================================================================

    async def create_codes(
        self,
        *,
        credits_minor: int,
        count: int = 1,
        max_uses: int = 1,
        code: str | None = None,
        expires_at: datetime | None = None,
        one_per_user: bool = True,
        note: str | None = None,
        created_by: str | None = None,
    ) -> list[RedemptionCodeData]:
        """
        Create `count` codes, or exactly one with the given `code`.

        Raises:
            CodeConflictError: An explicit code already exists
        """
        if credits_minor <= 0:
            raise ValueError(f"Code credits must be positive: {credits_minor}")
        if code is not None and count != 1:
            raise ValueError("count must be 1 when an explicit code is given")

        async def unit() -> list[RedemptionCodeData]:
            rows = [
                RedemptionCode(
                    id=uuid4(),
                    code=code.strip().upper() if code is not None else generate_code(),
                    credits_minor=credits_minor,
                    max_uses=max_uses,
                    used_count=0,
                    is_active=True,
                    one_per_user=one_per_user,
                    expires_at=expires_at,
                    note=note,
                    created_by=created_by,
                    created_at=utc_now(),
                    updated_at=utc_now(),
                )
                for _ in range(count)
            ]
            self.session.add_all(rows)
            try:
                await self.session.flush()
            except IntegrityError as exc:
                if code is not None:
                    raise CodeConflictError(code.strip().upper()) from exc
                # Generated code collided; draw again
                raise StorageConflictError("redemption_codes") from exc
            return [to_code_data(row) for row in rows]

        created = await run_atomic(self.session, unit, "create_codes")
        logger.info(
            "redemption_codes_created",
            count=len(created),
            credits=str(from_minor(credits_minor)),
            max_uses=max_uses,
            created_by=created_by,
        )
        return created

    async def set_active(self, code_id: UUID, is_active: bool) -> RedemptionCodeData:
        """Enable or disable a code."""

        async def unit() -> RedemptionCodeData:
            stmt = (
                update(RedemptionCode)
                .where(RedemptionCode.id == code_id)
                .values(is_active=is_active, updated_at=utc_now())
                .returning(RedemptionCode)
                .execution_options(populate_existing=True)
            )
            row = (await self.session.execute(stmt)).scalar_one_or_none()
            if row is None:
                raise CodeNotFoundError(str(code_id))
            return to_code_data(row)

        data = await run_atomic(self.session, unit, "update_code")
        logger.info("redemption_code_updated", code_id=str(code_id), is_active=is_active)
        return data

    async def list_codes(
        self, limit: int = 50, offset: int = 0
    ) -> tuple[list[RedemptionCodeData], int]:
        """List codes newest first, with the total count."""
        total = (
            await self.session.execute(select(func.count()).select_from(RedemptionCode))
        ).scalar_one()
        stmt = (
            select(RedemptionCode)
            .order_by(RedemptionCode.created_at.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [to_code_data(row) for row in rows], total
