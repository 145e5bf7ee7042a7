"""
FastAPI Dependencies - Authentication and shared service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets
from dataclasses import dataclass

from fastapi import Header, HTTPException, status
from structlog import get_logger

from app.config import settings
from app.services.pricing import PricingCatalog, get_pricing_catalog
from app.services.stripe_provider import StripeProvider

logger = get_logger(__name__)


def _matches(candidate: str, keys: list[str]) -> bool:
    """Constant-time membership check for secret keys."""
    found = False
    for key in keys:
        if key and secrets.compare_digest(candidate.encode(), key.encode()):
            found = True
    return found


# ============================================================================
# Service API Key (application backend -> ledger)
# ============================================================================


@dataclass(frozen=True)
class ServiceCaller:
    """Authenticated service caller. Only the key's last characters are kept."""

    key_suffix: str


async def require_service_key(
    x_api_key: str = Header(..., description="Service API key"),
) -> ServiceCaller:
    """
    FastAPI dependency to validate the X-API-Key header.

    Usage:
        @router.post("/v1/generations")
        async def create_generation(
            request: CreateGenerationRequest,
            caller: ServiceCaller = Depends(require_service_key),
        ):
            pass

    Raises:
        HTTPException 401 if the key is not one of the configured service keys
    """
    if not _matches(x_api_key, settings.valid_service_api_keys):
        logger.warning("service_key_rejected", key_suffix=x_api_key[-4:])
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return ServiceCaller(key_suffix=x_api_key[-4:])


# ============================================================================
# Admin API Key
# ============================================================================


@dataclass(frozen=True)
class AdminCaller:
    """Authenticated admin. `admin_id` is recorded on adjustments and codes."""

    admin_id: str


async def require_admin_key(
    x_admin_key: str = Header(..., description="Admin API key"),
    x_admin_id: str | None = Header(None, max_length=255, description="Operator identity"),
) -> AdminCaller:
    """
    FastAPI dependency for admin endpoints.

    Raises:
        HTTPException 401 if the admin key is wrong or not configured
    """
    if not settings.admin_api_key or not _matches(x_admin_key, [settings.admin_api_key]):
        logger.warning("admin_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return AdminCaller(admin_id=x_admin_id or "admin")


# ============================================================================
# Payment Webhooks
# ============================================================================


async def require_webhook_key(
    x_webhook_key: str = Header(..., description="Payment gateway shared secret"),
) -> None:
    """
    FastAPI dependency for the generic top-up webhook.

    Raises:
        HTTPException 401 if the shared secret does not match
    """
    if not settings.webhook_api_key or not _matches(x_webhook_key, [settings.webhook_api_key]):
        logger.warning("webhook_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook key",
        )


def get_stripe_provider() -> StripeProvider:
    """
    Stripe provider built from settings.

    Raises:
        HTTPException 503 if Stripe is not configured
    """
    if not settings.stripe_api_key or not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


# ============================================================================
# Pricing
# ============================================================================


def get_pricing() -> PricingCatalog:
    """Process-wide pricing catalog."""
    return get_pricing_catalog()
