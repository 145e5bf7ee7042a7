"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from datetime import datetime
from uuid import UUID


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class InsufficientCreditsError(LedgerError):
    """Raised when a debit would take the balance below zero."""

    def __init__(self, user_id: str, balance: int, required: int) -> None:
        self.user_id = user_id
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class UnknownGenerationError(LedgerError):
    """Raised when a generation id or provider task id is not known."""

    def __init__(self, reference: UUID | str) -> None:
        self.reference = reference
        super().__init__(f"Generation not found: {reference}")


class InvalidTransitionError(LedgerError):
    """Raised for an illegal non-terminal status transition."""

    def __init__(self, generation_id: UUID, current: str, requested: str) -> None:
        self.generation_id = generation_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Generation {generation_id} cannot move from {current} to {requested}"
        )


class RefundNotEligibleError(LedgerError):
    """Raised when a generation cannot be refunded (not failed, or already refunded)."""

    NOT_FAILED = "not_failed"
    ALREADY_REFUNDED = "already_refunded"

    def __init__(self, generation_id: UUID, reason: str) -> None:
        self.generation_id = generation_id
        self.reason = reason
        super().__init__(f"Generation {generation_id} is not refundable: {reason}")


class DuplicatePaymentError(LedgerError):
    """Raised internally when a charge id was already applied."""

    def __init__(self, charge_id: str) -> None:
        self.charge_id = charge_id
        super().__init__(f"Payment already applied: {charge_id}")


class PaymentVerificationError(LedgerError):
    """Raised when a payment reference cannot be verified."""

    def __init__(self, charge_id: str, message: str) -> None:
        self.charge_id = charge_id
        self.message = message
        super().__init__(f"Payment {charge_id} rejected: {message}")


class PaymentProviderError(LedgerError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(LedgerError):
    """Raised when webhook signature verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


# ============================================================================
# Redemption Code Errors
# ============================================================================


class CodeError(LedgerError):
    """Base class for redemption failures."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(message)


class CodeNotFoundError(CodeError):
    """Raised when a redemption code does not exist."""

    def __init__(self, code: str) -> None:
        super().__init__(code, f"Code not found: {code}")


class CodeInactiveError(CodeError):
    """Raised when a redemption code has been disabled."""

    def __init__(self, code: str) -> None:
        super().__init__(code, f"Code is inactive: {code}")


class CodeExpiredError(CodeError):
    """Raised when a redemption code is past its expiry."""

    def __init__(self, code: str, expires_at: datetime) -> None:
        self.expires_at = expires_at
        super().__init__(code, f"Code expired at {expires_at.isoformat()}: {code}")


class CodeExhaustedError(CodeError):
    """Raised when a redemption code has no uses left."""

    def __init__(self, code: str, max_uses: int) -> None:
        self.max_uses = max_uses
        super().__init__(code, f"Code has reached its limit of {max_uses} uses: {code}")


class CodeAlreadyRedeemedError(CodeError):
    """Raised when a one-per-user code is redeemed twice by the same user."""

    def __init__(self, code: str, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(code, f"Code {code} already redeemed by {user_id}")


class CodeConflictError(CodeError):
    """Raised when an admin creates a code that already exists."""

    def __init__(self, code: str) -> None:
        super().__init__(code, f"Code already exists: {code}")


# ============================================================================
# Pricing Errors
# ============================================================================


class UnknownModelError(LedgerError):
    """Raised when a model is missing from the pricing catalog or inactive."""

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"Unknown or inactive model: {model_id}")


class InvalidPricingError(LedgerError):
    """Raised when a pricing entry resolves to an unusable amount."""

    def __init__(self, model_id: str, message: str) -> None:
        self.model_id = model_id
        self.message = message
        super().__init__(f"Invalid pricing for {model_id}: {message}")


# ============================================================================
# Storage Errors
# ============================================================================


class StorageConflictError(LedgerError):
    """Raised when an atomic operation lost a race; retried before surfacing."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class DataIntegrityError(LedgerError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class ReconciliationError(LedgerError):
    """Raised when a debit and its job row disagree."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Reconciliation error: {message}")
