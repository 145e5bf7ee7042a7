"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Credits cross the API boundary as decimals with one fractional digit.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TransactionKind(str, Enum):
    """Credit transaction kind enumeration."""

    DEDUCTION = "deduction"
    REFUND = "refund"
    TOPUP = "topup"
    REDEMPTION = "redemption"
    ADJUSTMENT = "adjustment"


class GenerationStatus(str, Enum):
    """Generation job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStatus.COMPLETED, GenerationStatus.FAILED)


class AdjustmentMode(str, Enum):
    """Admin credit adjustment mode."""

    ADD = "add"
    SET = "set"


# ============================================================================
# Generation Models
# ============================================================================


class GenerationOptions(BaseModel):
    """Typed generation options that participate in pricing."""

    model_config = ConfigDict(extra="forbid")

    duration: int | None = Field(None, ge=1, le=60, description="Clip length in seconds")
    resolution: str | None = Field(None, max_length=16, description="e.g. 480p, 720p, 1080p")
    quality: str | None = Field(None, max_length=16, description="e.g. standard, high")
    rendering_speed: str | None = Field(None, max_length=16, description="e.g. TURBO, QUALITY")
    num_images: int | None = Field(None, ge=1, le=10)
    aspect_ratio: str | None = Field(None, max_length=16)


class CreateGenerationRequest(BaseModel):
    """POST /v1/generations request body."""

    user_id: str = Field(..., min_length=1, max_length=64)
    model_id: str = Field(..., min_length=1, max_length=128)
    prompt: str = Field(..., min_length=1, max_length=10000)
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class CreateGenerationResponse(BaseModel):
    """POST /v1/generations response."""

    generation_id: UUID
    status: GenerationStatus
    credits_used: Decimal
    balance_after: Decimal
    deduction_transaction_id: UUID


class GenerationResponse(BaseModel):
    """GET /v1/generations/{generation_id} response."""

    generation_id: UUID
    user_id: str
    model_id: str
    status: GenerationStatus
    credits_used: Decimal
    refunded: bool
    task_id: str | None
    result_urls: list[str]
    error_message: str | None
    created_at: str  # ISO 8601 timestamp
    updated_at: str
    completed_at: str | None


class AttachTaskRequest(BaseModel):
    """POST /v1/generations/{generation_id}/task request body."""

    task_id: str = Field(..., min_length=1, max_length=255)


class StatusEventRequest(BaseModel):
    """POST /v1/generations/status-events request body.

    Polling workers and provider webhooks both deliver this shape.
    """

    generation_id: UUID | None = None
    task_id: str | None = Field(None, min_length=1, max_length=255)
    status: Literal["processing", "completed", "failed"]
    result_urls: list[str] = Field(default_factory=list, max_length=20)
    error_message: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def require_reference(self) -> "StatusEventRequest":
        """Ensure the event names a generation."""
        if self.generation_id is None and self.task_id is None:
            raise ValueError("generation_id or task_id is required")
        return self


class StatusEventResponse(BaseModel):
    """POST /v1/generations/status-events response."""

    generation_id: UUID
    status: GenerationStatus
    applied: bool
    refunded: bool


class RefundResponse(BaseModel):
    """POST /v1/generations/{generation_id}/refund response."""

    generation_id: UUID
    transaction_id: UUID
    amount: Decimal
    balance_after: Decimal


# ============================================================================
# Balance & Transaction Models
# ============================================================================


class BalanceResponse(BaseModel):
    """GET /v1/users/{user_id}/balance response."""

    user_id: str
    balance: Decimal


class TransactionListItem(BaseModel):
    """Credit transaction in list responses."""

    transaction_id: UUID
    kind: TransactionKind
    amount: Decimal
    balance_after: Decimal
    sequence: int
    description: str
    related_generation_id: UUID | None
    related_generation_status: GenerationStatus | None
    created_at: str


class ListTransactionsResponse(BaseModel):
    """GET /v1/users/{user_id}/transactions response."""

    transactions: list[TransactionListItem]
    total_count: int
    has_more: bool


# ============================================================================
# Pricing Models
# ============================================================================


class QuoteRequest(BaseModel):
    """POST /v1/pricing/quote request body."""

    model_id: str = Field(..., min_length=1, max_length=128)
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class QuoteResponse(BaseModel):
    """POST /v1/pricing/quote response."""

    model_id: str
    credits: Decimal
    price_key: str | None
    quantity: int


# ============================================================================
# Redemption Models
# ============================================================================


class RedeemCodeRequest(BaseModel):
    """POST /v1/codes/redeem request body."""

    user_id: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1, max_length=64)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        """Codes are stored uppercase without surrounding whitespace."""
        return v.strip().upper()


class RedeemCodeResponse(BaseModel):
    """POST /v1/codes/redeem response."""

    code: str
    credits: Decimal
    balance_after: Decimal
    transaction_id: UUID


# ============================================================================
# Topup Webhook Models
# ============================================================================


class TopupWebhookRequest(BaseModel):
    """POST /v1/webhooks/topup request body.

    `amount` is the confirmed payment amount in major currency units.
    """

    charge_id: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    user_id: str = Field(..., min_length=1, max_length=64)


class TopupResponse(BaseModel):
    """Topup webhook response."""

    charge_id: str
    user_id: str
    credits: Decimal
    balance_after: Decimal | None
    already_applied: bool


# ============================================================================
# Admin Models
# ============================================================================


class AdjustCreditsRequest(BaseModel):
    """POST /admin/users/{user_id}/credits request body."""

    amount: Decimal = Field(..., max_digits=10, decimal_places=1)
    mode: AdjustmentMode = AdjustmentMode.ADD
    reason: str = Field("Admin adjustment", min_length=1, max_length=500)

    @model_validator(mode="after")
    def validate_amount_for_mode(self) -> "AdjustCreditsRequest":
        """`add` needs a non-zero delta, `set` needs a non-negative target."""
        if self.mode == AdjustmentMode.ADD and self.amount == 0:
            raise ValueError("amount must be non-zero for mode=add")
        if self.mode == AdjustmentMode.SET and self.amount < 0:
            raise ValueError("amount must be non-negative for mode=set")
        return self


class AdjustCreditsResponse(BaseModel):
    """POST /admin/users/{user_id}/credits response."""

    user_id: str
    mode: AdjustmentMode
    delta: Decimal
    balance_after: Decimal
    transaction_id: UUID | None


class CreateCodesRequest(BaseModel):
    """POST /admin/codes request body."""

    credits: Decimal = Field(..., gt=0, max_digits=10, decimal_places=1)
    count: int = Field(1, ge=1, le=100)
    max_uses: int = Field(1, ge=1, le=100000)
    code: str | None = Field(None, min_length=4, max_length=64)
    expires_at: datetime | None = None
    one_per_user: bool = True
    note: str | None = Field(None, max_length=500)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str | None) -> str | None:
        """Codes are stored uppercase without surrounding whitespace."""
        return v.strip().upper() if v is not None else None

    @model_validator(mode="after")
    def validate_explicit_code(self) -> "CreateCodesRequest":
        """An explicit code can only be created once."""
        if self.code is not None and self.count != 1:
            raise ValueError("count must be 1 when an explicit code is given")
        return self


class UpdateCodeRequest(BaseModel):
    """PATCH /admin/codes/{code_id} request body."""

    is_active: bool


class CodeResponse(BaseModel):
    """Redemption code as seen by admins."""

    code_id: UUID
    code: str
    credits: Decimal
    max_uses: int
    used_count: int
    is_active: bool
    one_per_user: bool
    expires_at: str | None
    note: str | None
    created_by: str | None
    created_at: str


class ListCodesResponse(BaseModel):
    """GET /admin/codes response."""

    codes: list[CodeResponse]
    total_count: int


class BalanceMismatchItem(BaseModel):
    """Account whose materialized balance disagrees with its log."""

    user_id: str
    materialized_balance: Decimal
    replayed_balance: Decimal
    broken_snapshots: int


class ReconciliationResponse(BaseModel):
    """GET /admin/reconciliation response."""

    ok: bool
    checked_accounts: int
    balance_mismatches: list[BalanceMismatchItem]
    orphan_deductions: list[UUID]
    generations_without_deduction: list[UUID]
    refund_flag_mismatches: list[UUID]
    generated_at: str


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
