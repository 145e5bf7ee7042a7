"""
Generation Job Tracker - per-job state machine linked 1:1 to its debit.

    pending -> processing -> completed | failed
    pending -> completed | failed

Every transition is a compare-and-set UPDATE guarded by the allowed source
states. Once a job is terminal, further events (duplicates, late or
out-of-order deliveries) are dropped as no-ops. Failure never touches the
ledger by itself; refunds go through RefundProcessor, either explicitly or
when `auto_refund_on_failure` is enabled.
"""

from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.atomic import run_atomic
from app.db.models import Generation, ensure_utc, utc_now
from app.exceptions import (
    DataIntegrityError,
    InvalidTransitionError,
    RefundNotEligibleError,
    UnknownGenerationError,
)
from app.models.api import GenerationStatus
from app.models.domain import GenerationData, RefundResult, StatusEvent, TransitionResult
from app.observability.metrics import metrics
from app.services.refund import RefundProcessor

logger = get_logger(__name__)

# Source states each target status may be reached from
ALLOWED_SOURCES: dict[GenerationStatus, tuple[GenerationStatus, ...]] = {
    GenerationStatus.PROCESSING: (GenerationStatus.PENDING,),
    GenerationStatus.COMPLETED: (GenerationStatus.PENDING, GenerationStatus.PROCESSING),
    GenerationStatus.FAILED: (GenerationStatus.PENDING, GenerationStatus.PROCESSING),
}

CANCELLED_MESSAGE = "Cancelled before dispatch"


def to_generation_data(generation: Generation) -> GenerationData:
    """Convert an ORM generation row to its immutable domain form."""
    return GenerationData(
        generation_id=generation.id,
        user_id=generation.user_id,
        model_id=generation.model_id,
        prompt=generation.prompt,
        status=GenerationStatus(generation.status),
        credits_used_minor=generation.credits_used_minor,
        refunded=generation.refunded,
        deduction_transaction_id=generation.deduction_transaction_id,
        refund_transaction_id=generation.refund_transaction_id,
        task_id=generation.task_id,
        result_urls=tuple(generation.result_urls or ()),
        error_message=generation.error_message,
        created_at=ensure_utc(generation.created_at),
        updated_at=ensure_utc(generation.updated_at),
        completed_at=ensure_utc(generation.completed_at) if generation.completed_at else None,
    )


class GenerationTracker:
    """Owns generation rows and their status transitions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ========================================================================
    # Creation (runs inside the debit's transaction)
    # ========================================================================

    async def create_pending(
        self,
        *,
        generation_id: UUID,
        user_id: str,
        model_id: str,
        prompt: str,
        options: dict[str, Any],
        credits_used_minor: int,
        deduction_transaction_id: UUID,
    ) -> GenerationData:
        """Insert a pending job row without committing."""
        now = utc_now()
        generation = Generation(
            id=generation_id,
            user_id=user_id,
            model_id=model_id,
            prompt=prompt,
            options=options,
            status=GenerationStatus.PENDING,
            credits_used_minor=credits_used_minor,
            refunded=False,
            deduction_transaction_id=deduction_transaction_id,
            result_urls=[],
            created_at=now,
            updated_at=now,
        )
        self.session.add(generation)
        await self.session.flush()
        return to_generation_data(generation)

    # ========================================================================
    # Lookups
    # ========================================================================

    async def _load(self, generation_id: UUID) -> Generation:
        stmt = (
            select(Generation)
            .where(Generation.id == generation_id)
            .execution_options(populate_existing=True)
        )
        generation = (await self.session.execute(stmt)).scalar_one_or_none()
        if generation is None:
            raise UnknownGenerationError(generation_id)
        return generation

    async def _id_for_task(self, task_id: str) -> UUID:
        stmt = select(Generation.id).where(Generation.task_id == task_id)
        generation_id = (await self.session.execute(stmt)).scalar_one_or_none()
        if generation_id is None:
            raise UnknownGenerationError(task_id)
        return generation_id

    async def get(self, generation_id: UUID) -> GenerationData:
        """Get a generation by id."""
        return to_generation_data(await self._load(generation_id))

    async def get_by_task(self, task_id: str) -> GenerationData:
        """Get a generation by its provider task id."""
        return await self.get(await self._id_for_task(task_id))

    # ========================================================================
    # Transitions
    # ========================================================================

    async def attach_task(self, generation_id: UUID, task_id: str) -> GenerationData:
        """Record the provider's task handle after dispatch (idempotent)."""

        async def unit() -> GenerationData:
            stmt = (
                update(Generation)
                .where(
                    Generation.id == generation_id,
                    (Generation.task_id.is_(None)) | (Generation.task_id == task_id),
                )
                .values(task_id=task_id, updated_at=utc_now())
                .returning(Generation.id)
                .execution_options(synchronize_session=False)
            )
            row = (await self.session.execute(stmt)).one_or_none()
            generation = await self._load(generation_id)
            if row is None:
                raise DataIntegrityError(
                    f"Generation {generation_id} already has task {generation.task_id}"
                )
            return to_generation_data(generation)

        data = await run_atomic(self.session, unit, "attach_task")
        logger.info("generation_task_attached", generation_id=str(generation_id), task_id=task_id)
        return data

    async def _transition(self, generation_id: UUID, event: StatusEvent) -> TransitionResult:
        now = utc_now()
        values: dict[str, Any] = {"status": event.status, "updated_at": now}
        if event.task_id is not None:
            values["task_id"] = func.coalesce(Generation.task_id, event.task_id)
        if event.status == GenerationStatus.COMPLETED:
            values["result_urls"] = list(event.result_urls)
            values["completed_at"] = now
        elif event.status == GenerationStatus.FAILED:
            values["error_message"] = event.error_message or "Generation failed"
            values["completed_at"] = now

        stmt = (
            update(Generation)
            .where(
                Generation.id == generation_id,
                Generation.status.in_(ALLOWED_SOURCES[event.status]),
            )
            .values(**values)
            .returning(Generation.id)
            .execution_options(synchronize_session=False)
        )
        row = (await self.session.execute(stmt)).one_or_none()
        generation = await self._load(generation_id)
        return TransitionResult(generation=to_generation_data(generation), applied=row is not None)

    async def apply_status_event(self, event: StatusEvent) -> TransitionResult:
        """
        Apply one provider status event.

        Returns:
            TransitionResult with `applied=False` when the event was a duplicate
            or arrived after the job reached a terminal state

        Raises:
            UnknownGenerationError: Neither generation_id nor task_id matched
        """

        async def unit() -> TransitionResult:
            generation_id = event.generation_id
            if generation_id is None:
                assert event.task_id is not None
                generation_id = await self._id_for_task(event.task_id)
            return await self._transition(generation_id, event)

        result = await run_atomic(self.session, unit, "status_transition")
        metrics.record_transition(event.status.value, result.applied)

        generation = result.generation
        if not result.applied:
            logger.info(
                "status_event_ignored",
                generation_id=str(generation.generation_id),
                current_status=generation.status.value,
                event_status=event.status.value,
            )
            if event.status == GenerationStatus.FAILED and self._refund_outstanding(result):
                # An earlier auto-refund for this failure did not go through
                return await self._settle_failure(result)
            return result

        logger.info(
            "generation_status_changed",
            generation_id=str(generation.generation_id),
            status=generation.status.value,
            task_id=generation.task_id,
        )
        if generation.status == GenerationStatus.FAILED:
            return await self._settle_failure(result)
        return result

    async def cancel(self, generation_id: UUID) -> TransitionResult:
        """
        Cancel a job that has not been dispatched yet.

        The debit stays; the job becomes failed and follows the refund path.

        Raises:
            InvalidTransitionError: Job already acknowledged or completed
        """
        event = StatusEvent(
            status=GenerationStatus.FAILED,
            generation_id=generation_id,
            error_message=CANCELLED_MESSAGE,
        )

        async def unit() -> TransitionResult:
            generation = await self._load(generation_id)
            current = GenerationStatus(generation.status)
            if current == GenerationStatus.FAILED:
                return TransitionResult(generation=to_generation_data(generation), applied=False)
            if current != GenerationStatus.PENDING:
                raise InvalidTransitionError(generation_id, current.value, "failed")
            result = await self._transition(generation_id, event)
            if not result.applied:
                # Moved on between the read and the update
                raise InvalidTransitionError(
                    generation_id, result.generation.status.value, "failed"
                )
            return result

        result = await run_atomic(self.session, unit, "cancel_generation")
        metrics.record_transition(GenerationStatus.FAILED.value, result.applied)
        if not result.applied:
            if self._refund_outstanding(result):
                return await self._settle_failure(result)
            return result

        logger.info("generation_cancelled", generation_id=str(generation_id))
        return await self._settle_failure(result)

    async def fail_stale(self, older_than: timedelta | None = None) -> list[UUID]:
        """
        Fail jobs stuck in pending/processing past the generation timeout.

        Returns:
            Ids of the jobs this call moved to failed
        """
        timeout = older_than or timedelta(minutes=settings.generation_timeout_minutes)
        cutoff = utc_now() - timeout
        stmt = (
            select(Generation.id)
            .where(
                Generation.status.in_((GenerationStatus.PENDING, GenerationStatus.PROCESSING)),
                Generation.updated_at < cutoff,
            )
            .order_by(Generation.updated_at)
            .limit(500)
        )
        stale_ids = list((await self.session.execute(stmt)).scalars().all())
        await self.session.rollback()

        failed: list[UUID] = []
        minutes = int(timeout.total_seconds() // 60)
        for generation_id in stale_ids:
            result = await self.apply_status_event(
                StatusEvent(
                    status=GenerationStatus.FAILED,
                    generation_id=generation_id,
                    error_message=f"Generation timed out after {minutes} minutes",
                )
            )
            if result.applied:
                failed.append(generation_id)

        if failed:
            logger.warning("stale_generations_failed", count=len(failed), timeout_minutes=minutes)
        return failed

    # ========================================================================
    # Settlement
    # ========================================================================

    @staticmethod
    def _refund_outstanding(result: TransitionResult) -> bool:
        generation = result.generation
        return (
            settings.auto_refund_on_failure
            and generation.status == GenerationStatus.FAILED
            and not generation.refunded
        )

    async def _settle_failure(self, result: TransitionResult) -> TransitionResult:
        """
        Apply the auto-refund policy to a failed job.

        Runs when the failure is applied and again on any later `failed`
        delivery while the job is still unrefunded, so a refund that raised
        is retried by the provider's redelivery.
        """
        if not settings.auto_refund_on_failure:
            return result

        generation_id = result.generation.generation_id
        refund: RefundResult | None = None
        try:
            refund = await RefundProcessor(self.session).refund(generation_id)
        except RefundNotEligibleError as exc:
            # Already refunded by an explicit call
            logger.info("auto_refund_skipped", generation_id=str(generation_id), reason=exc.reason)

        generation = await self.get(generation_id)
        await self.session.commit()
        return TransitionResult(generation=generation, applied=result.applied, refund=refund)
