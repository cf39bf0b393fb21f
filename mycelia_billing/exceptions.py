"""
Exception Classes - Strongly typed exception hierarchy.

All exceptions carry typed attributes, never dicts.
"""

from datetime import datetime

from mycelia_billing.config import ConfigurationError
from mycelia_billing.models.api import ModelType, PlanTier

__all__ = [
    "AccountNotFoundError",
    "BillingError",
    "ConfigurationError",
    "CreditsExhaustedError",
    "DataIntegrityError",
    "ModelNotFoundError",
    "ModelTypeMismatchError",
    "PaymentProviderError",
    "PlanNotPermittedError",
    "UnknownSubscriptionReferenceError",
    "UnrecognizedPriceError",
    "UnsupportedModelError",
    "WebhookVerificationError",
    "WriteVerificationError",
]


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


# ============================================================================
# Model resolution
# ============================================================================


class UnsupportedModelError(BillingError):
    """Raised when a model id cannot be served for the requested action."""

    def __init__(self, model_id: str | None, reason: str = "Unsupported model") -> None:
        self.model_id = model_id
        self.reason = reason
        super().__init__(f"{reason}: {model_id or 'undefined'}")


class ModelNotFoundError(UnsupportedModelError):
    """Raised when a model id is unknown and no default can stand in."""

    def __init__(self, model_id: str | None, expected_type: ModelType) -> None:
        self.expected_type = expected_type
        super().__init__(model_id, f"No {expected_type.value} model available")


class ModelTypeMismatchError(UnsupportedModelError):
    """Raised when a model exists but produces the wrong kind of output."""

    def __init__(
        self, model_id: str | None, expected_type: ModelType, actual_type: ModelType
    ) -> None:
        self.expected_type = expected_type
        self.actual_type = actual_type
        super().__init__(model_id, f"Model type mismatch (expected {expected_type.value})")


# ============================================================================
# Credit gate
# ============================================================================


class CreditsExhaustedError(BillingError):
    """Raised when a charge would exceed the user's allowance plus bonus."""

    def __init__(
        self,
        user_id: str,
        credits_required: int,
        credits_remaining: int,
        credits_total: int,
        credits_bonus: int,
        period_end: datetime,
    ) -> None:
        self.user_id = user_id
        self.credits_required = credits_required
        self.credits_remaining = credits_remaining
        self.credits_total = credits_total
        self.credits_bonus = credits_bonus
        self.period_end = period_end
        super().__init__(
            f"Credits exhausted. Remaining: {credits_remaining}, Required: {credits_required}"
        )


class PlanNotPermittedError(BillingError):
    """Raised when the user's plan does not include an action."""

    def __init__(self, plan: PlanTier, required: list[PlanTier]) -> None:
        self.plan = plan
        self.required = required
        super().__init__(
            f"Plan {plan.value} not permitted, requires one of: "
            + ", ".join(p.value for p in required)
        )


class AccountNotFoundError(BillingError):
    """Raised when a credit account doesn't exist."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Credit account not found: {user_id}")


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


# ============================================================================
# Billing reconciliation
# ============================================================================


class UnknownSubscriptionReferenceError(BillingError):
    """No user matches a subscription event. Logged, never propagated to the webhook."""

    def __init__(self, subscription_id: str, customer_id: str | None) -> None:
        self.subscription_id = subscription_id
        self.customer_id = customer_id
        super().__init__(
            f"No user matched subscription {subscription_id} (customer {customer_id})"
        )


class UnrecognizedPriceError(BillingError):
    """An active subscription references a price outside the plan table."""

    def __init__(self, price_id: str | None) -> None:
        self.price_id = price_id
        super().__init__(f"Unrecognized price: {price_id}")


class PaymentProviderError(BillingError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")
