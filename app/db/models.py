"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Amounts are stored as integer minor units (tenths of a credit).
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import GenerationStatus, TransactionKind


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _enum_values(enum_cls: type) -> list[str]:
    return [member.value for member in enum_cls]


class Account(Base):
    """
    ORM model for accounts table.

    Holds the materialized balance for one user. `balance_minor` and
    `ledger_seq` are only ever changed by the ledger's conditional UPDATE.
    """

    __tablename__ = "accounts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ledger_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance_minor >= 0", name="ck_balance_non_negative"),
        CheckConstraint("ledger_seq >= 0", name="ck_ledger_seq_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Account(user_id={self.user_id}, balance={self.balance_minor}, "
            f"seq={self.ledger_seq})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only. Rows are never updated or deleted.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.user_id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[TransactionKind] = mapped_column(
        SQLEnum(
            TransactionKind,
            name="transaction_kind",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    # Links
    related_generation_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    related_code_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("redemption_codes.id", ondelete="RESTRICT"), nullable=True
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_minor <> 0", name="ck_transaction_amount_non_zero"),
        CheckConstraint("balance_after_minor >= 0", name="ck_transaction_balance_after"),
        CheckConstraint("sequence > 0", name="ck_transaction_sequence_positive"),
        UniqueConstraint("user_id", "sequence", name="uq_transaction_user_sequence"),
        UniqueConstraint("kind", "idempotency_key", name="uq_transaction_kind_idempotency"),
        Index("idx_transactions_user_created", "user_id", "created_at"),
        Index(
            "idx_transactions_related_generation",
            "related_generation_id",
            postgresql_where=(related_generation_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, kind={self.kind}, "
            f"amount={self.amount_minor}, balance_after={self.balance_after_minor})>"
        )


class Generation(Base):
    """
    ORM model for generations table.

    One row per generation job, created in the same database transaction
    as its deduction.
    """

    __tablename__ = "generations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.user_id", ondelete="RESTRICT"), nullable=False
    )
    model_id: Mapped[str] = mapped_column(String(128), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    options: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[GenerationStatus] = mapped_column(
        SQLEnum(
            GenerationStatus,
            name="generation_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=GenerationStatus.PENDING,
    )
    credits_used_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    deduction_transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("credit_transactions.id", ondelete="RESTRICT"), nullable=True
    )
    refund_transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("credit_transactions.id", ondelete="RESTRICT"), nullable=True
    )

    # Provider side
    task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result_urls: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("credits_used_minor > 0", name="ck_generation_credits_positive"),
        CheckConstraint(
            "refunded = false OR status = 'failed'", name="ck_generation_refund_requires_failure"
        ),
        UniqueConstraint("task_id", name="uq_generation_task_id"),
        UniqueConstraint("deduction_transaction_id", name="uq_generation_deduction"),
        Index("idx_generations_user_created", "user_id", "created_at"),
        Index("idx_generations_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Generation(id={self.id}, user_id={self.user_id}, status={self.status}, "
            f"credits={self.credits_used_minor}, refunded={self.refunded})>"
        )


class RedemptionCode(Base):
    """ORM model for redemption_codes table."""

    __tablename__ = "redemption_codes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    credits_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    max_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    one_per_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_minor > 0", name="ck_code_credits_positive"),
        CheckConstraint("max_uses > 0", name="ck_code_max_uses_positive"),
        CheckConstraint(
            "used_count >= 0 AND used_count <= max_uses", name="ck_code_used_within_max"
        ),
        UniqueConstraint("code", name="uq_redemption_code"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<RedemptionCode(code={self.code}, credits={self.credits_minor}, "
            f"used={self.used_count}/{self.max_uses}, active={self.is_active})>"
        )


class CodeRedemption(Base):
    """
    ORM model for code_redemptions table.

    `one_per_user` is copied from the code so the partial unique index can
    enforce a single redemption per user for those codes.
    """

    __tablename__ = "code_redemptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    code_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("redemption_codes.id", ondelete="RESTRICT"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    one_per_user: Mapped[bool] = mapped_column(Boolean, nullable=False)
    transaction_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("credit_transactions.id", ondelete="RESTRICT"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index(
            "uq_code_redemptions_one_per_user",
            "code_id",
            "user_id",
            unique=True,
            postgresql_where=(one_per_user.is_(True)),
            sqlite_where=(one_per_user.is_(True)),
        ),
        Index("idx_code_redemptions_user", "user_id"),
    )


class PaymentEvent(Base):
    """
    ORM model for payment_events table.

    Dedupe table for payment confirmations, keyed by the gateway charge id.
    """

    __tablename__ = "payment_events"

    charge_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("credit_transactions.id", ondelete="RESTRICT"), nullable=True
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="webhook")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_payment_amount_positive"),
        Index("idx_payment_events_user", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentEvent(charge_id={self.charge_id}, user_id={self.user_id}, "
            f"amount={self.amount_minor}, processed={self.processed})>"
        )
