"""
Admin API routes for operating the credit ledger.

Protected by the admin API key. Every change made here is itself a ledger
transaction (adjustments) or an audited row (codes).
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import AdminCaller, require_admin_key
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    CodeConflictError,
    CodeNotFoundError,
    InsufficientCreditsError,
    StorageConflictError,
)
from app.models.api import (
    AdjustCreditsRequest,
    AdjustCreditsResponse,
    BalanceMismatchItem,
    CodeResponse,
    CreateCodesRequest,
    ListCodesResponse,
    ReconciliationResponse,
    UpdateCodeRequest,
)
from app.models.domain import RedemptionCodeData, from_minor, to_minor
from app.services.billing import BillingService
from app.services.generation import GenerationTracker
from app.services.reconciliation import ReconciliationService
from app.services.redemption import RedemptionService

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


def _code_response(code: RedemptionCodeData) -> CodeResponse:
    return CodeResponse(
        code_id=code.code_id,
        code=code.code,
        credits=from_minor(code.credits_minor),
        max_uses=code.max_uses,
        used_count=code.used_count,
        is_active=code.is_active,
        one_per_user=code.one_per_user,
        expires_at=code.expires_at.isoformat() if code.expires_at else None,
        note=code.note,
        created_by=code.created_by,
        created_at=code.created_at.isoformat(),
    )


# ============================================================================
# Credit Adjustments
# ============================================================================


@router.post("/users/{user_id}/credits", response_model=AdjustCreditsResponse)
async def adjust_credits(
    user_id: str,
    request: AdjustCreditsRequest,
    db: AsyncSession = Depends(get_write_db),
    admin: AdminCaller = Depends(require_admin_key),
) -> AdjustCreditsResponse:
    """
    Add to or set a user's balance.

    `mode=add` takes a signed amount and cannot overdraw; `mode=set` moves the
    balance to the given value.
    """
    service = BillingService(db)
    try:
        result = await service.adjust_credits(
            user_id,
            to_minor(request.amount),
            request.mode,
            request.reason,
            admin_id=admin.admin_id,
        )
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="Adjustment would overdraw the balance",
        ) from exc
    except StorageConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporarily unavailable, retry later",
        ) from exc

    return AdjustCreditsResponse(
        user_id=result.user_id,
        mode=result.mode,
        delta=from_minor(result.delta_minor),
        balance_after=from_minor(result.balance_after_minor),
        transaction_id=result.transaction_id,
    )


# ============================================================================
# Redemption Codes
# ============================================================================


@router.post("/codes", response_model=list[CodeResponse], status_code=status.HTTP_201_CREATED)
async def create_codes(
    request: CreateCodesRequest,
    db: AsyncSession = Depends(get_write_db),
    admin: AdminCaller = Depends(require_admin_key),
) -> list[CodeResponse]:
    """Create a batch of generated codes, or one explicit code."""
    service = RedemptionService(db)
    try:
        codes = await service.create_codes(
            credits_minor=to_minor(request.credits),
            count=request.count,
            max_uses=request.max_uses,
            code=request.code,
            expires_at=request.expires_at,
            one_per_user=request.one_per_user,
            note=request.note,
            created_by=admin.admin_id,
        )
    except CodeConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Code already exists"
        ) from exc
    except StorageConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporarily unavailable, retry later",
        ) from exc

    return [_code_response(code) for code in codes]


@router.get("/codes", response_model=ListCodesResponse)
async def list_codes(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_read_db),
    admin: AdminCaller = Depends(require_admin_key),
) -> ListCodesResponse:
    """List redemption codes, newest first."""
    codes, total = await RedemptionService(db).list_codes(limit=limit, offset=offset)
    return ListCodesResponse(codes=[_code_response(code) for code in codes], total_count=total)


@router.patch("/codes/{code_id}", response_model=CodeResponse)
async def update_code(
    code_id: UUID,
    request: UpdateCodeRequest,
    db: AsyncSession = Depends(get_write_db),
    admin: AdminCaller = Depends(require_admin_key),
) -> CodeResponse:
    """Activate or deactivate a code."""
    try:
        code = await RedemptionService(db).set_active(code_id, request.is_active)
    except CodeNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Code not found") from exc

    logger.info(
        "admin_code_updated",
        code_id=str(code_id),
        is_active=request.is_active,
        admin_id=admin.admin_id,
    )
    return _code_response(code)


# ============================================================================
# Operations
# ============================================================================


@router.get("/reconciliation", response_model=ReconciliationResponse)
async def reconciliation_report(
    db: AsyncSession = Depends(get_read_db),
    admin: AdminCaller = Depends(require_admin_key),
) -> ReconciliationResponse:
    """Replay the ledger and cross-check balances, debits and refunds."""
    report = await ReconciliationService(db).run()

    return ReconciliationResponse(
        ok=report.ok,
        checked_accounts=report.checked_accounts,
        balance_mismatches=[
            BalanceMismatchItem(
                user_id=check.user_id,
                materialized_balance=from_minor(check.materialized_minor),
                replayed_balance=from_minor(check.replayed_minor),
                broken_snapshots=check.broken_snapshots,
            )
            for check in report.balance_mismatches
        ],
        orphan_deductions=list(report.orphan_deductions),
        generations_without_deduction=list(report.generations_without_deduction),
        refund_flag_mismatches=list(report.refund_flag_mismatches),
        generated_at=report.generated_at.isoformat(),
    )


@router.post("/generations/fail-stale", response_model=list[UUID])
async def fail_stale_generations(
    db: AsyncSession = Depends(get_write_db),
    admin: AdminCaller = Depends(require_admin_key),
) -> list[UUID]:
    """Fail jobs stuck in pending/processing past the generation timeout."""
    failed = await GenerationTracker(db).fail_stale()
    logger.info("admin_fail_stale", count=len(failed), admin_id=admin.admin_id)
    return failed
