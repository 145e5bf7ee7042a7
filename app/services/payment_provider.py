"""
Payment Provider Protocol - Provider-agnostic interface for top-up confirmations.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    Represents a verified notification from the payment provider.
    """

    event_id: str
    event_type: str
    payment_id: str
    status: str
    amount_minor: int | None
    currency: str | None
    metadata_user_id: str | None

    @property
    def is_succeeded_payment(self) -> bool:
        return self.event_type == "payment_intent.succeeded" and self.status == "succeeded"


@dataclass(frozen=True)
class PaymentConfirmation:
    """A payment as the provider reports it when looked up directly."""

    payment_id: str
    status: str
    amount_minor: int
    currency: str
    metadata_user_id: str | None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    A provider only has to prove that a charge really happened; crediting the
    ledger is done by TopupHandler.
    """

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook event from the provider.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...

    async def retrieve_payment(self, payment_id: str) -> PaymentConfirmation:
        """
        Look up a payment by its provider id.

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...
