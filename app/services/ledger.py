"""
Ledger Store - append-only credit transactions with a materialized balance.

`append` is the only write primitive. It applies the balance change with a
single conditional UPDATE on the account row and records the transaction in
the same database transaction, so the balance always equals the sum of the log.

Methods here never commit; callers wrap them in `run_atomic`.
"""

from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Account, CreditTransaction, Generation, ensure_utc, utc_now
from app.exceptions import DataIntegrityError, InsufficientCreditsError, StorageConflictError
from app.models.api import GenerationStatus, TransactionKind
from app.models.domain import BalanceCheck, LedgerEntry, TransactionPage

logger = get_logger(__name__)


def to_entry(
    tx: CreditTransaction, generation_status: GenerationStatus | None = None
) -> LedgerEntry:
    """Convert an ORM transaction row to its immutable domain form."""
    return LedgerEntry(
        transaction_id=tx.id,
        user_id=tx.user_id,
        kind=TransactionKind(tx.kind),
        amount_minor=tx.amount_minor,
        balance_after_minor=tx.balance_after_minor,
        sequence=tx.sequence,
        description=tx.description,
        related_generation_id=tx.related_generation_id,
        related_code_id=tx.related_code_id,
        idempotency_key=tx.idempotency_key,
        created_at=ensure_utc(tx.created_at),
        related_generation_status=generation_status,
    )


class LedgerStore:
    """Per-user append-only log plus the cached balance it implies."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ========================================================================
    # Writes
    # ========================================================================

    async def ensure_account(self, user_id: str) -> None:
        """Create the account row if it does not exist yet (idempotent)."""
        now = utc_now()
        dialect = self.session.get_bind().dialect.name
        insert = sqlite_insert if dialect == "sqlite" else pg_insert
        stmt = (
            insert(Account)
            .values(user_id=user_id, balance_minor=0, ledger_seq=0, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await self.session.execute(stmt)

    async def append(
        self,
        user_id: str,
        amount_minor: int,
        kind: TransactionKind,
        description: str,
        *,
        related_generation_id: UUID | None = None,
        related_code_id: UUID | None = None,
        idempotency_key: str | None = None,
        expected_balance_minor: int | None = None,
    ) -> LedgerEntry:
        """
        Apply a signed amount to the user's balance and record it.

        The balance change is one conditional UPDATE: it only matches when the
        result stays non-negative (and, if given, when the balance still equals
        `expected_balance_minor`). The new balance and sequence number come back
        from the same statement.

        Raises:
            InsufficientCreditsError: Debit would overdraw (no state change)
            StorageConflictError: Balance moved away from `expected_balance_minor`
            DataIntegrityError: Credit targets a user with no account row
        """
        if amount_minor == 0:
            raise ValueError("Ledger amounts must be non-zero")

        conditions = [
            Account.user_id == user_id,
            Account.balance_minor + amount_minor >= 0,
        ]
        if expected_balance_minor is not None:
            conditions.append(Account.balance_minor == expected_balance_minor)

        stmt = (
            update(Account)
            .where(*conditions)
            .values(
                balance_minor=Account.balance_minor + amount_minor,
                ledger_seq=Account.ledger_seq + 1,
                updated_at=utc_now(),
            )
            .returning(Account.balance_minor, Account.ledger_seq)
            .execution_options(synchronize_session=False)
        )
        row = (await self.session.execute(stmt)).one_or_none()

        if row is None:
            current = await self._materialized_balance(user_id)
            if expected_balance_minor is not None and current != expected_balance_minor:
                raise StorageConflictError(f"account:{user_id}")
            if current is None and amount_minor > 0:
                raise DataIntegrityError(f"No account row for {user_id}")
            raise InsufficientCreditsError(user_id, current or 0, -amount_minor)

        balance_after, sequence = row
        tx = CreditTransaction(
            id=uuid4(),
            user_id=user_id,
            kind=kind,
            amount_minor=amount_minor,
            balance_after_minor=balance_after,
            sequence=sequence,
            description=description,
            related_generation_id=related_generation_id,
            related_code_id=related_code_id,
            idempotency_key=idempotency_key,
            created_at=utc_now(),
        )
        self.session.add(tx)
        await self.session.flush()

        logger.debug(
            "ledger_appended",
            user_id=user_id,
            kind=kind.value,
            amount_minor=amount_minor,
            balance_after_minor=balance_after,
            sequence=sequence,
        )
        return to_entry(tx)

    # ========================================================================
    # Reads
    # ========================================================================

    async def _materialized_balance(self, user_id: str) -> int | None:
        stmt = select(Account.balance_minor).where(Account.user_id == user_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_balance(self, user_id: str) -> int:
        """Current materialized balance in minor units; unknown users have 0."""
        balance = await self._materialized_balance(user_id)
        return balance or 0

    async def list_transactions(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> TransactionPage:
        """List a user's transactions, newest first, with linked job status."""
        count_stmt = select(func.count()).select_from(CreditTransaction).where(
            CreditTransaction.user_id == user_id
        )
        total_count = (await self.session.execute(count_stmt)).scalar_one()

        stmt = (
            select(CreditTransaction, Generation.status)
            .outerjoin(Generation, Generation.id == CreditTransaction.related_generation_id)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.sequence.desc())
            .limit(limit)
            .offset(offset)
        )
        rows = (await self.session.execute(stmt)).all()
        entries = tuple(to_entry(tx, status) for tx, status in rows)

        return TransactionPage(
            entries=entries,
            total_count=total_count,
            has_more=(offset + len(entries)) < total_count,
        )

    async def replay_balance(self, user_id: str) -> int:
        """Re-derive the balance by summing the log."""
        stmt = select(func.coalesce(func.sum(CreditTransaction.amount_minor), 0)).where(
            CreditTransaction.user_id == user_id
        )
        return int((await self.session.execute(stmt)).scalar_one())

    async def verify_balance(self, user_id: str) -> BalanceCheck:
        """
        Replay the log in sequence order and compare against the cache.

        Counts snapshots whose `balance_after` or `sequence` does not match the
        running replay.
        """
        stmt = (
            select(
                CreditTransaction.sequence,
                CreditTransaction.amount_minor,
                CreditTransaction.balance_after_minor,
            )
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.sequence)
        )
        running = 0
        broken = 0
        for position, (sequence, amount, balance_after) in enumerate(
            (await self.session.execute(stmt)).all(), start=1
        ):
            running += amount
            if balance_after != running or sequence != position:
                broken += 1

        materialized = await self.get_balance(user_id)
        check = BalanceCheck(
            user_id=user_id,
            materialized_minor=materialized,
            replayed_minor=running,
            broken_snapshots=broken,
        )
        if not check.is_consistent:
            logger.error(
                "ledger_balance_mismatch",
                user_id=user_id,
                materialized_minor=materialized,
                replayed_minor=running,
                broken_snapshots=broken,
            )
        return check
