"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.

Credits are fixed-point with one fractional digit. Inside the engine every
amount is an integer count of minor units (tenths of a credit).
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from uuid import UUID

from app.models.api import AdjustmentMode, GenerationStatus, TransactionKind

CREDIT_SCALE = 10
CREDIT_QUANTUM = Decimal("0.1")


def to_minor(credits: Decimal) -> int:
    """Convert a credit amount to minor units, rejecting sub-unit precision."""
    scaled = credits * CREDIT_SCALE
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Credit amount has more than one decimal place: {credits}")
    return int(scaled)


def to_minor_floor(credits: Decimal) -> int:
    """Convert a credit amount to minor units, truncating extra precision."""
    return int((credits * CREDIT_SCALE).to_integral_value(rounding=ROUND_DOWN))


def from_minor(amount_minor: int) -> Decimal:
    """Convert minor units back to a credit amount."""
    return (Decimal(amount_minor) / CREDIT_SCALE).quantize(CREDIT_QUANTUM)


@dataclass(frozen=True)
class DebitIntent:
    """Domain model for a debit before persistence - immutable intent."""

    user_id: str
    cost_minor: int
    generation_id: UUID
    description: str

    def __post_init__(self) -> None:
        """Validate debit constraints."""
        if self.cost_minor <= 0:
            raise ValueError(f"Debit cost must be positive: {self.cost_minor}")
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.description:
            raise ValueError("Description cannot be empty")


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable credit transaction after persistence."""

    transaction_id: UUID
    user_id: str
    kind: TransactionKind
    amount_minor: int
    balance_after_minor: int
    sequence: int
    description: str
    related_generation_id: UUID | None
    related_code_id: UUID | None
    idempotency_key: str | None
    created_at: datetime
    related_generation_status: GenerationStatus | None = None


@dataclass(frozen=True)
class TransactionPage:
    """One page of a user's transaction history, newest first."""

    entries: tuple[LedgerEntry, ...]
    total_count: int
    has_more: bool


@dataclass(frozen=True)
class BalanceCheck:
    """Result of replaying a user's log against the materialized balance."""

    user_id: str
    materialized_minor: int
    replayed_minor: int
    broken_snapshots: int

    @property
    def is_consistent(self) -> bool:
        return self.materialized_minor == self.replayed_minor and self.broken_snapshots == 0


@dataclass(frozen=True)
class DebitResult:
    """Immutable outcome of a successful debit."""

    transaction_id: UUID
    user_id: str
    generation_id: UUID
    cost_minor: int
    balance_after_minor: int


@dataclass(frozen=True)
class GenerationData:
    """Immutable generation job snapshot."""

    generation_id: UUID
    user_id: str
    model_id: str
    prompt: str
    status: GenerationStatus
    credits_used_minor: int
    refunded: bool
    deduction_transaction_id: UUID | None
    refund_transaction_id: UUID | None
    task_id: str | None
    result_urls: tuple[str, ...]
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(frozen=True)
class StatusEvent:
    """Inbound provider status, independent of polling or webhook transport."""

    status: GenerationStatus
    generation_id: UUID | None = None
    task_id: str | None = None
    result_urls: tuple[str, ...] = field(default_factory=tuple)
    error_message: str | None = None

    def __post_init__(self) -> None:
        """Validate the event references a job and carries a reachable status."""
        if self.generation_id is None and self.task_id is None:
            raise ValueError("StatusEvent needs a generation_id or task_id")
        if self.status == GenerationStatus.PENDING:
            raise ValueError("StatusEvent cannot move a job back to pending")


@dataclass(frozen=True)
class RefundResult:
    """Immutable outcome of a successful refund."""

    generation_id: UUID
    user_id: str
    transaction_id: UUID
    amount_minor: int
    balance_after_minor: int


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of applying one status event."""

    generation: GenerationData
    applied: bool
    refund: RefundResult | None = None


@dataclass(frozen=True)
class Quote:
    """Priced generation request."""

    model_id: str
    credits_minor: int
    price_key: str | None
    quantity: int


@dataclass(frozen=True)
class TopupResult:
    """Outcome of a payment confirmation; duplicates are successes."""

    charge_id: str
    user_id: str
    credits_minor: int
    already_applied: bool
    transaction_id: UUID | None
    balance_after_minor: int | None


@dataclass(frozen=True)
class RedeemResult:
    """Immutable outcome of a successful code redemption."""

    code: str
    code_id: UUID
    user_id: str
    credits_minor: int
    transaction_id: UUID
    balance_after_minor: int


@dataclass(frozen=True)
class AdjustmentResult:
    """Immutable outcome of an admin credit adjustment."""

    user_id: str
    mode: AdjustmentMode
    delta_minor: int
    balance_after_minor: int
    transaction_id: UUID | None


@dataclass(frozen=True)
class RedemptionCodeData:
    """Immutable redemption code snapshot."""

    code_id: UUID
    code: str
    credits_minor: int
    max_uses: int
    used_count: int
    is_active: bool
    one_per_user: bool
    expires_at: datetime | None
    note: str | None
    created_by: str | None
    created_at: datetime


@dataclass(frozen=True)
class ReconciliationReport:
    """Findings from replaying the ledger against jobs and balances."""

    checked_accounts: int
    balance_mismatches: tuple[BalanceCheck, ...]
    orphan_deductions: tuple[UUID, ...]
    generations_without_deduction: tuple[UUID, ...]
    refund_flag_mismatches: tuple[UUID, ...]
    generated_at: datetime

    @property
    def ok(self) -> bool:
        return not (
            self.balance_mismatches
            or self.orphan_deductions
            or self.generations_without_deduction
            or self.refund_flag_mismatches
        )
