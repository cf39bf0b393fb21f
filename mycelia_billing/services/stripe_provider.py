"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - Stripe objects are parsed into typed domain events at
this boundary.
"""

import json
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import stripe
from structlog import get_logger

from mycelia_billing.exceptions import PaymentProviderError, WebhookVerificationError
from mycelia_billing.models.api import SubscriptionEventType
from mycelia_billing.models.domain import SubscriptionEvent, TopUpEvent
from mycelia_billing.services.payment_provider import (
    CheckoutMode,
    CheckoutSessionIntent,
    VerifiedWebhook,
)

logger = get_logger(__name__)

SUBSCRIPTION_EVENT_TYPES: dict[str, SubscriptionEventType] = {
    "customer.subscription.created": SubscriptionEventType.CREATED,
    "customer.subscription.updated": SubscriptionEventType.UPDATED,
    "customer.subscription.deleted": SubscriptionEventType.DELETED,
}

CREDIT_PACK_KIND = "credit_pack"


def _timestamp(value: Any) -> datetime | None:
    """Stripe epoch seconds to an aware datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _price_id(item: Mapping[str, Any]) -> str | None:
    price = item.get("price")
    if isinstance(price, str):
        return price
    if price:
        return price.get("id")
    return None


def _id_of(value: Any) -> str | None:
    """Id of an expandable field (plain id or expanded object)."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _positive_int(value: Any) -> int | None:
    """Metadata values arrive as strings; None unless a positive whole number."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def parse_subscription(
    subscription: Mapping[str, Any],
    event_id: str,
    event_type: SubscriptionEventType,
    user_id_hint: str | None = None,
) -> SubscriptionEvent:
    """Map a Stripe Subscription object to a SubscriptionEvent."""
    item = _first_item(subscription)

    # Newer API versions moved the period end onto subscription items
    current_period_end = subscription.get("current_period_end") or item.get(
        "current_period_end"
    )

    pending_price_id = None
    pending_update = subscription.get("pending_update") or {}
    pending_items = pending_update.get("subscription_items") or []
    if pending_items:
        pending_price_id = _price_id(pending_items[0])

    return SubscriptionEvent(
        event_id=event_id,
        event_type=event_type,
        subscription_id=subscription["id"],
        customer_id=_id_of(subscription.get("customer")),
        status=subscription.get("status") or "",
        price_id=_price_id(item),
        user_id_hint=user_id_hint or _metadata(subscription).get("userId"),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        cancel_at=_timestamp(subscription.get("cancel_at")),
        current_period_end=_timestamp(current_period_end),
        pending_price_id=pending_price_id,
    )


def parse_webhook_event(event: Mapping[str, Any]) -> VerifiedWebhook:
    """Map a verified Stripe Event to what the reconciler consumes."""
    event_id = event["id"]
    event_type = event["type"]
    obj = event["data"]["object"]

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return VerifiedWebhook(
            event_id=event_id,
            event_type=event_type,
            subscription=parse_subscription(obj, event_id, SUBSCRIPTION_EVENT_TYPES[event_type]),
        )

    if event_type == "checkout.session.completed":
        metadata = _metadata(obj)
        user_id = metadata.get("userId")

        if obj.get("mode") == CheckoutMode.SUBSCRIPTION.value and obj.get("subscription"):
            return VerifiedWebhook(
                event_id=event_id,
                event_type=event_type,
                checkout_subscription_id=_id_of(obj.get("subscription")),
                user_id_hint=user_id,
            )

        if (
            obj.get("mode") == CheckoutMode.PAYMENT.value
            and metadata.get("kind") == CREDIT_PACK_KIND
            and obj.get("payment_status") == "paid"
            and user_id
        ):
            credits = _positive_int(metadata.get("credits"))
            if credits is None:
                # Acknowledged as ignored, never rejected
                logger.warning(
                    "billing_top_up_invalid_metadata",
                    event_id=event_id,
                    user_id=user_id,
                    credits=metadata.get("credits"),
                )
                return VerifiedWebhook(event_id=event_id, event_type=event_type)
            return VerifiedWebhook(
                event_id=event_id,
                event_type=event_type,
                user_id_hint=user_id,
                top_up=TopUpEvent(
                    event_id=event_id,
                    user_id=user_id,
                    credits=credits,
                    payment_reference=_id_of(obj.get("payment_intent")) or obj["id"],
                    customer_id=_id_of(obj.get("customer")),
                ),
            )

    return VerifiedWebhook(event_id=event_id, event_type=event_type)


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

    async def ensure_customer(
        self, user_id: str, email: str | None, name: str | None, existing_customer_id: str | None
    ) -> str:
        """
        Return the user's Stripe customer id, creating the customer on first checkout.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        if existing_customer_id:
            return existing_customer_id

        try:
            customer = stripe.Customer.create(
                email=email,
                name=name or None,
                metadata={"userId": user_id},
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_customer_create_failed",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to create Stripe customer: {exc}") from exc

        logger.info("stripe_customer_created", user_id=user_id, customer_id=customer.id)
        customer_id: str = customer.id
        return customer_id

    async def create_checkout_session(self, intent: CheckoutSessionIntent) -> str:
        """
        Create a Stripe Checkout session.

        Subscription sessions tag both the session and the subscription with
        the user id so later subscription events can be matched back.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        metadata: dict[str, str] = {"userId": intent.user_id}
        if intent.plan:
            metadata["plan"] = intent.plan
        if intent.mode == CheckoutMode.PAYMENT:
            metadata["kind"] = CREDIT_PACK_KIND
            metadata["credits"] = str(intent.credits)

        params: dict[str, Any] = {
            "mode": intent.mode.value,
            "customer": intent.customer_id,
            "line_items": [{"price": intent.price_id, "quantity": intent.quantity}],
            "success_url": intent.success_url,
            "cancel_url": intent.cancel_url,
            "metadata": metadata,
        }
        if intent.mode == CheckoutMode.SUBSCRIPTION:
            params["allow_promotion_codes"] = True
            params["subscription_data"] = {"metadata": metadata}

        try:
            logger.info(
                "creating_stripe_checkout_session",
                user_id=intent.user_id,
                mode=intent.mode.value,
                price_id=intent.price_id,
                quantity=intent.quantity,
            )
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_failed",
                user_id=intent.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Failed to create checkout session: {exc}") from exc

        logger.info("stripe_checkout_session_created", session_id=session.id)
        url: str = session.url or ""
        return url

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a Stripe billing portal session.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_portal_session_failed",
                customer_id=customer_id,
                error=str(exc),
            )
            raise PaymentProviderError(f"Failed to open billing portal: {exc}") from exc

        url: str = session.url
        return url

    async def verify_webhook(self, payload: bytes, signature: str) -> VerifiedWebhook:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Parsed webhook

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        try:
            logger.info("verifying_stripe_webhook", signature_present=bool(signature))

            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )

            logger.info(
                "stripe_webhook_verified",
                event_id=event.id,
                event_type=event.type,
            )

            # Parse the verified payload as plain JSON, independent of SDK object types
            return parse_webhook_event(json.loads(payload))

        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

    async def retrieve_subscription(
        self, subscription_id: str, event_id: str, user_id_hint: str | None
    ) -> SubscriptionEvent:
        """
        Fetch a subscription (with prices expanded) as an update event.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            subscription = stripe.Subscription.retrieve(
                subscription_id, expand=["items.data.price"]
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_retrieve_failed",
                subscription_id=subscription_id,
                error=str(exc),
            )
            raise PaymentProviderError(f"Failed to retrieve subscription: {exc}") from exc

        return parse_subscription(
            subscription.to_dict(), event_id, SubscriptionEventType.UPDATED, user_id_hint
        )
