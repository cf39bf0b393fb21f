"""
Domain Models - Internal business logic models using dataclasses.

All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar

from mycelia_billing.models.api import (
    IMAGE_ACTIONS,
    ActionKind,
    BillingInterval,
    Capability,
    ModelType,
    PlanTier,
    Provider,
    SubscriptionEventType,
)

# ============================================================================
# Model Catalog
# ============================================================================


@dataclass(frozen=True)
class TokenPricing:
    """Per-1K-token prices in USD."""

    input_usd_per_1k: Decimal
    output_usd_per_1k: Decimal

    def __post_init__(self) -> None:
        """Validate prices."""
        if self.input_usd_per_1k < 0 or self.output_usd_per_1k < 0:
            raise ValueError("Token prices cannot be negative")


@dataclass(frozen=True)
class UnitPricing:
    """Per-unit (per image) prices in USD, optionally split by quality tier."""

    usd_per_unit: Decimal | None = None
    usd_per_unit_by_quality: dict[str, Decimal] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate prices."""
        if self.usd_per_unit is not None and self.usd_per_unit < 0:
            raise ValueError(f"Unit price cannot be negative: {self.usd_per_unit}")
        for tier, price in self.usd_per_unit_by_quality.items():
            if price < 0:
                raise ValueError(f"Unit price for tier {tier} cannot be negative: {price}")

    def price_for(self, quality: str) -> Decimal:
        """Price of one unit at a quality tier, falling back to medium, then flat."""
        if quality in self.usd_per_unit_by_quality:
            return self.usd_per_unit_by_quality[quality]
        if "medium" in self.usd_per_unit_by_quality:
            return self.usd_per_unit_by_quality["medium"]
        return self.usd_per_unit or Decimal("0")


Pricing = TokenPricing | UnitPricing


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable catalog entry for one provider model."""

    id: str
    provider: Provider
    model_type: ModelType
    capabilities: frozenset[Capability]
    pricing: Pricing | None
    display_name: str
    is_default_for_type: bool = False

    def __post_init__(self) -> None:
        """Validate the namespaced id."""
        prefix = f"{self.provider.value}/"
        if not self.id.startswith(prefix) or len(self.id) == len(prefix):
            raise ValueError(f"Model id must look like '{prefix}<model-name>': {self.id}")

    @property
    def provider_model_name(self) -> str:
        """Model name as the provider API expects it (namespace stripped)."""
        return self.id.split("/", 1)[1]


@dataclass(frozen=True)
class ProviderBinding:
    """Ready-to-call handle for a provider/model pair."""

    client: Any
    model_name: str
    descriptor: ModelDescriptor

    @property
    def provider(self) -> Provider:
        return self.descriptor.provider


# ============================================================================
# Cost Estimation
# ============================================================================

# Action names used by older clients
LEGACY_ACTION_KINDS: dict[str, ActionKind] = {
    "generateMainIdeas": ActionKind.GENERATE_IDEAS,
}


def parse_action_kind(value: str) -> ActionKind | None:
    """Map an action name to ActionKind, honouring legacy names."""
    if value in LEGACY_ACTION_KINDS:
        return LEGACY_ACTION_KINDS[value]
    try:
        return ActionKind(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class ActionCostRequest:
    """Description of an AI action to be priced before it runs."""

    action_kind: str
    model_id: str | None = None
    model_ids: tuple[str, ...] = ()
    input_chars: int = 0
    history_chars: int = 0
    image_count: int | None = None
    image_quality: str | None = None
    image_preset: str | None = None

    @property
    def kind(self) -> ActionKind | None:
        """Parsed action kind; None for kinds this service does not know."""
        return parse_action_kind(self.action_kind)

    @property
    def is_image_action(self) -> bool:
        return self.kind in IMAGE_ACTIONS

    @property
    def requested_model_ids(self) -> tuple[str, ...]:
        """Model ids explicitly named by the caller (blank entries dropped)."""
        explicit = tuple(m for m in self.model_ids if m and m.strip())
        if explicit:
            return explicit
        if self.model_id and self.model_id.strip():
            return (self.model_id,)
        return ()


# ============================================================================
# Credit Accounts
# ============================================================================


@dataclass(frozen=True)
class PlanAllowances:
    """Credits granted per period for each plan tier."""

    free: int
    basic: int
    pro: int

    def credits_for(self, plan: PlanTier | str | None) -> int:
        """Allowance for a plan; unknown plans get the free allowance."""
        if plan == PlanTier.BASIC:
            return self.basic
        if plan == PlanTier.PRO:
            return self.pro
        return self.free


@dataclass(frozen=True)
class PendingPlanChange:
    """Scheduled downgrade or cancellation."""

    to_plan: PlanTier
    effective_at: datetime


@dataclass(frozen=True)
class CreditAccountData:
    """Immutable snapshot of a user's credit account."""

    user_id: str
    plan_tier: PlanTier
    allowance_total: int
    bonus_credits: int
    used_credits: int
    period_start: datetime | None
    period_end: datetime | None
    pending_plan_change: PendingPlanChange | None = None
    billing_interval: BillingInterval | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None

    @property
    def credits_available(self) -> int:
        """Allowance plus bonus."""
        return self.allowance_total + self.bonus_credits

    @property
    def credits_remaining(self) -> int:
        return max(self.credits_available - self.used_credits, 0)

    def is_period_expired(self, now: datetime) -> bool:
        """True when the rolling window has elapsed (or was never set)."""
        return self.period_end is None or now > self.period_end


@dataclass(frozen=True)
class ChargeAccepted:
    """Gate outcome: credits were deducted."""

    user_id: str
    action_kind: str
    model_ids: tuple[str, ...]
    charged_credits: int
    credits_remaining: int
    credits_total: int
    credits_bonus: int
    period_end: datetime

    accepted: ClassVar[bool] = True


@dataclass(frozen=True)
class ChargeRejected:
    """Gate outcome: the charge would exceed allowance plus bonus."""

    user_id: str
    action_kind: str
    model_ids: tuple[str, ...]
    credits_required: int
    credits_remaining: int
    credits_total: int
    credits_bonus: int
    period_end: datetime

    accepted: ClassVar[bool] = False


GateOutcome = ChargeAccepted | ChargeRejected


@dataclass(frozen=True)
class ChargeAttempt:
    """Audit record of one gate evaluation."""

    user_id: str
    action_kind: str
    model_ids: tuple[str, ...]
    cost: int
    accepted: bool
    used_before: int
    used_after: int
    remaining_before: int
    remaining_after: int


# ============================================================================
# Billing Events
# ============================================================================


@dataclass(frozen=True)
class PlanPrice:
    """What a payment-processor price id buys."""

    plan: PlanTier
    interval: BillingInterval


@dataclass(frozen=True)
class SubscriptionEvent:
    """Verified subscription lifecycle event from the payment processor."""

    event_id: str
    event_type: SubscriptionEventType
    subscription_id: str
    customer_id: str | None
    status: str
    price_id: str | None
    user_id_hint: str | None = None
    cancel_at_period_end: bool = False
    cancel_at: datetime | None = None
    current_period_end: datetime | None = None
    pending_price_id: str | None = None


@dataclass(frozen=True)
class TopUpEvent:
    """Completed one-time credit purchase."""

    event_id: str
    user_id: str
    credits: int
    payment_reference: str
    customer_id: str | None = None

    def __post_init__(self) -> None:
        """Validate top-up constraints."""
        if self.credits <= 0:
            raise ValueError(f"Top-up credits must be positive: {self.credits}")
        if not self.payment_reference:
            raise ValueError("payment_reference cannot be empty")


class ReconcileOutcome(str, Enum):
    """What the reconciler did with an event."""

    APPLIED = "applied"
    DOWNGRADED = "downgraded"
    TOPPED_UP = "topped_up"
    DUPLICATE = "duplicate"
    IGNORED_UNKNOWN_USER = "ignored_unknown_user"
    IGNORED_UNRECOGNIZED_PRICE = "ignored_unrecognized_price"
    IGNORED_STATUS = "ignored_status"


@dataclass(frozen=True)
class ReconcileResult:
    """Result of applying one billing event."""

    outcome: ReconcileOutcome
    user_id: str | None = None
    plan_tier: PlanTier | None = None
    previous_plan_tier: PlanTier | None = None
