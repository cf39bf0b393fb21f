"""
API Models - Pydantic models for request/response validation.

Enumerations shared by the API and domain layers also live here.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class PlanTier(str, Enum):
    """Subscription plan tier."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


class BillingInterval(str, Enum):
    """Billing cadence of a paid plan."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class ActionKind(str, Enum):
    """AI actions metered by the credit gate."""

    CHAT_MESSAGE = "chatMessage"
    CHAT_STREAM = "chatStream"
    GENERATE_IDEAS = "generateIdeas"
    EXPAND_IDEA = "expandIdea"
    IMAGE_GENERATE = "imageGenerate"
    IMAGE_REGENERATE = "imageRegenerate"


IMAGE_ACTIONS = frozenset({ActionKind.IMAGE_GENERATE, ActionKind.IMAGE_REGENERATE})


class ModelType(str, Enum):
    """Kind of output a model produces."""

    TEXT = "text"
    IMAGE = "image"


class Provider(str, Enum):
    """AI provider behind a catalog entry."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class Capability(str, Enum):
    """Use-cases a model is allowed to serve."""

    CHAT = "chat"
    GRAPH = "graph"
    IMAGE = "image"


class SubscriptionStatus(str, Enum):
    """Stripe subscription statuses."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class SubscriptionEventType(str, Enum):
    """Subscription lifecycle events consumed by the reconciler."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


# ============================================================================
# Credit Models
# ============================================================================


class ActionCostFields(BaseModel):
    """Action description shared by estimate and charge requests."""

    model_config = ConfigDict(protected_namespaces=())

    action_kind: str = Field(..., min_length=1, max_length=64)
    model_id: str | None = Field(None, max_length=255)
    model_ids: list[str] = Field(default_factory=list, max_length=8)
    input_chars: int = Field(0, ge=0)
    history_chars: int = Field(0, ge=0)
    image_count: int | None = Field(None, ge=1, le=16)
    image_quality: str | None = Field(None, max_length=32)
    image_preset: str | None = Field(None, max_length=32)


class EstimateRequest(ActionCostFields):
    """POST /v1/credits/estimate request body."""

    pass


class EstimateResponse(BaseModel):
    """POST /v1/credits/estimate response."""

    action_kind: str
    credits: int


class ChargeRequest(ActionCostFields):
    """POST /v1/credits/charge request body."""

    user_id: str = Field(..., min_length=1, max_length=255)

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        """Reject whitespace-only user ids."""
        if not v.strip():
            raise ValueError("user_id cannot be blank")
        return v


class ChargeResponse(BaseModel):
    """Accepted charge."""

    accepted: Literal[True] = True
    charged_credits: int
    credits_remaining: int
    credits_total: int
    credits_bonus: int
    period_end: str


class CreditsExhaustedResponse(BaseModel):
    """402 payload - enough context for upgrade / wait-for-refill UX."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    error: str = "Credits exhausted"
    code: str = "credits_exhausted"
    credits_remaining: int
    credits_total: int
    credits_bonus: int
    credits_required: int
    period_end: str


class PlanForbiddenResponse(BaseModel):
    """403 payload when the plan does not allow an action."""

    error: str = "Plan not permitted for this action"
    code: str = "plan_forbidden"
    plan: str
    required: list[str]


class CreditBalanceResponse(BaseModel):
    """GET /v1/credits/{user_id} response."""

    user_id: str
    plan_tier: PlanTier
    credits_total: int
    credits_used: int
    credits_bonus: int
    credits_remaining: int
    period_start: str | None
    period_end: str | None
    pending_plan: PlanTier | None = None
    pending_plan_effective_at: str | None = None


class ModelBindingInfo(BaseModel):
    """A resolved provider model the caller may dispatch to."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    provider: Provider
    model_name: str


class AuthorizeActionResponse(ChargeResponse):
    """POST /v1/actions/authorize response - charge plus provider bindings.

    The top-level model fields mirror the first binding. Multi-model image
    requests get one binding per requested model, in request order.
    """

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    provider: Provider
    model_name: str
    bindings: list[ModelBindingInfo]


# ============================================================================
# Model Catalog Models
# ============================================================================


class ModelInfo(BaseModel):
    """Public view of a catalog entry."""

    model_config = ConfigDict(protected_namespaces=())

    id: str
    provider: Provider
    model_type: ModelType
    capabilities: list[Capability]
    display_name: str
    is_default: bool


class ModelListResponse(BaseModel):
    """GET /v1/models response."""

    models: list[ModelInfo]


# ============================================================================
# Billing Models
# ============================================================================


class CheckoutSessionRequest(BaseModel):
    """POST /v1/billing/checkout-session request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    name: str | None = Field(None, max_length=255)
    plan: PlanTier
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    success_url: str | None = Field(None, max_length=2048)
    cancel_url: str | None = Field(None, max_length=2048)

    @field_validator("plan")
    @classmethod
    def validate_paid_plan(cls, v: PlanTier) -> PlanTier:
        """Checkout is only for paid plans."""
        if v == PlanTier.FREE:
            raise ValueError("A paid plan is required")
        return v


class CreditPackCheckoutRequest(BaseModel):
    """POST /v1/billing/credit-pack-session request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    name: str | None = Field(None, max_length=255)
    quantity: int = Field(1, ge=1, le=20)
    success_url: str | None = Field(None, max_length=2048)
    cancel_url: str | None = Field(None, max_length=2048)


class PortalSessionRequest(BaseModel):
    """POST /v1/billing/portal-session request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    return_url: str | None = Field(None, max_length=2048)


class SessionUrlResponse(BaseModel):
    """Hosted Stripe page to redirect the user to."""

    url: str


class WebhookAckResponse(BaseModel):
    """Webhook acknowledgement."""

    status: str
    event_id: str
    outcome: str | None = None


# ============================================================================
# Health Check
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
