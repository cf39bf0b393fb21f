"""
Payment Provider Protocol - Provider-agnostic billing interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from mycelia_billing.models.domain import SubscriptionEvent, TopUpEvent


class CheckoutMode(str, Enum):
    """What a checkout session sells."""

    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"


@dataclass(frozen=True)
class CheckoutSessionIntent:
    """
    Provider-agnostic hosted checkout request.

    Subscriptions carry the plan; one-time credit packs carry the credits
    granted on completion.
    """

    user_id: str
    customer_id: str
    price_id: str
    mode: CheckoutMode
    success_url: str
    cancel_url: str
    quantity: int = 1
    plan: str | None = None
    credits: int | None = None

    def __post_init__(self) -> None:
        """Validate checkout constraints."""
        if self.quantity <= 0:
            raise ValueError(f"Quantity must be positive: {self.quantity}")
        if self.mode == CheckoutMode.SUBSCRIPTION and not self.plan:
            raise ValueError("Subscription checkout requires a plan")
        if self.mode == CheckoutMode.PAYMENT and not self.credits:
            raise ValueError("Credit pack checkout requires a credit amount")


@dataclass(frozen=True)
class VerifiedWebhook:
    """
    Authenticated webhook, already mapped to what the reconciler consumes.

    At most one of subscription, checkout_subscription_id and top_up is set.
    checkout_subscription_id means a completed subscription checkout whose
    subscription still has to be fetched.
    """

    event_id: str
    event_type: str
    subscription: SubscriptionEvent | None = None
    checkout_subscription_id: str | None = None
    user_id_hint: str | None = None
    top_up: TopUpEvent | None = None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Stripe is the only implementation; routes and the reconciler depend on
    this interface so tests can substitute a fake.
    """

    async def ensure_customer(
        self, user_id: str, email: str | None, name: str | None, existing_customer_id: str | None
    ) -> str:
        """
        Return the user's customer id, creating the customer when missing.

        Raises:
            PaymentProviderError: If customer creation fails
        """
        ...

    async def create_checkout_session(self, intent: CheckoutSessionIntent) -> str:
        """
        Create a hosted checkout session and return its URL.

        Raises:
            PaymentProviderError: If session creation fails
        """
        ...

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a self-service billing portal session and return its URL.

        Raises:
            PaymentProviderError: If session creation fails
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> VerifiedWebhook:
        """
        Verify and parse a webhook.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...

    async def retrieve_subscription(
        self, subscription_id: str, event_id: str, user_id_hint: str | None
    ) -> SubscriptionEvent:
        """
        Fetch a subscription and express it as a resync event.

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...
