"""
Stripe Payment Provider Implementation.

Verifies Stripe webhooks and looks up PaymentIntents so that a top-up is only
credited for a charge Stripe reports as succeeded.
"""

import stripe
from structlog import get_logger

from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.services.payment_provider import PaymentConfirmation, WebhookEvent

logger = get_logger(__name__)


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    async def retrieve_payment(self, payment_id: str) -> PaymentConfirmation:
        """
        Get the current state of a PaymentIntent from Stripe.

        Raises:
            PaymentProviderError: If the Stripe API call fails
        """
        try:
            payment_intent = stripe.PaymentIntent.retrieve(payment_id)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_lookup_failed",
                payment_intent_id=payment_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to get payment status: {exc}") from exc

        metadata = payment_intent.get("metadata") or {}
        logger.info(
            "stripe_payment_retrieved",
            payment_intent_id=payment_id,
            status=payment_intent.status,
        )
        return PaymentConfirmation(
            payment_id=payment_intent.id,
            status=payment_intent.status,
            amount_minor=payment_intent.amount,
            currency=payment_intent.currency.upper(),
            metadata_user_id=metadata.get("user_id"),
        )

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        payment_intent = event.data.object
        metadata = payment_intent.get("metadata") or {}
        currency = payment_intent.get("currency")

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)
        return WebhookEvent(
            event_id=event.id,
            event_type=event.type,
            payment_id=payment_intent.get("id", ""),
            status=payment_intent.get("status", ""),
            amount_minor=payment_intent.get("amount"),
            currency=currency.upper() if currency else None,
            metadata_user_id=metadata.get("user_id"),
        )
