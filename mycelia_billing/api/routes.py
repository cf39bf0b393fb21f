"""
API Routes - FastAPI endpoints for credit metering and billing.

NO DICTIONARIES - All requests/responses use Pydantic models.

Credits exhausted (402) and plan forbidden (403) are rendered by the
application-level exception handlers in main.py.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from mycelia_billing.api.dependencies import (
    get_billing_reconciler,
    get_cost_estimator,
    get_credit_gate,
    get_credit_store,
    get_model_catalog,
    get_model_router,
    get_payment_provider,
    require_service_key,
)
from mycelia_billing.config import ConfigurationError, settings
from mycelia_billing.db.session import get_db
from mycelia_billing.exceptions import (
    PaymentProviderError,
    UnsupportedModelError,
    WebhookVerificationError,
)
from mycelia_billing.models.api import (
    ActionCostFields,
    AuthorizeActionResponse,
    BillingInterval,
    ChargeRequest,
    ChargeResponse,
    CheckoutSessionRequest,
    CreditBalanceResponse,
    CreditPackCheckoutRequest,
    EstimateRequest,
    EstimateResponse,
    HealthResponse,
    ModelBindingInfo,
    ModelInfo,
    ModelListResponse,
    ModelType,
    PlanTier,
    PortalSessionRequest,
    SessionUrlResponse,
    WebhookAckResponse,
)
from mycelia_billing.models.domain import ActionCostRequest, ChargeAccepted
from mycelia_billing.services.billing_reconciler import BillingReconciler
from mycelia_billing.services.cost_estimator import CostEstimator
from mycelia_billing.services.credit_ledger import CreditLedgerGate
from mycelia_billing.services.credit_store import CreditAccountStore
from mycelia_billing.services.model_catalog import ModelCatalog
from mycelia_billing.services.model_router import ModelRouter
from mycelia_billing.services.payment_provider import (
    CheckoutMode,
    CheckoutSessionIntent,
    PaymentProvider,
)

logger = get_logger(__name__)

router = APIRouter()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _cost_request(body: ActionCostFields) -> ActionCostRequest:
    return ActionCostRequest(
        action_kind=body.action_kind,
        model_id=body.model_id,
        model_ids=tuple(body.model_ids),
        input_chars=body.input_chars,
        history_chars=body.history_chars,
        image_count=body.image_count,
        image_quality=body.image_quality,
        image_preset=body.image_preset,
    )


def _frontend_url(path: str) -> str:
    return f"{settings.frontend_url.rstrip('/')}{path}"


# =============================================================================
# Model Catalog
# =============================================================================


@router.get("/v1/models", response_model=ModelListResponse)
async def list_models(
    catalog: ModelCatalog = Depends(get_model_catalog),
    _: None = Depends(require_service_key),
) -> ModelListResponse:
    """List every model in the catalog with its type and default flag."""
    default_ids = [d.id for d in (catalog.default_for(t) for t in ModelType) if d is not None]
    return ModelListResponse(
        models=[
            ModelInfo(
                id=d.id,
                provider=d.provider,
                model_type=d.model_type,
                capabilities=sorted(d.capabilities, key=lambda c: c.value),
                display_name=d.display_name,
                is_default=d.id in default_ids,
            )
            for d in catalog.models
        ]
    )


# =============================================================================
# Credits
# =============================================================================


@router.post("/v1/credits/estimate", response_model=EstimateResponse)
async def estimate_credits(
    request: EstimateRequest,
    estimator: CostEstimator = Depends(get_cost_estimator),
    _: None = Depends(require_service_key),
) -> EstimateResponse:
    """
    Price an action without touching the ledger.

    Unknown model ids are priced as the catalog default, never rejected.
    """
    return EstimateResponse(
        action_kind=request.action_kind,
        credits=estimator.estimate(_cost_request(request)),
    )


@router.post("/v1/credits/charge", response_model=ChargeResponse)
async def charge_credits(
    request: ChargeRequest,
    gate: CreditLedgerGate = Depends(get_credit_gate),
    _: None = Depends(require_service_key),
) -> ChargeResponse:
    """
    Deduct the estimated cost of an action from the user's allowance.

    Returns 402 with the full balance context when credits are exhausted.
    """
    outcome = await gate.require(request.user_id, _cost_request(request))
    return _charge_response(outcome)


@router.get("/v1/credits/{user_id}", response_model=CreditBalanceResponse)
async def get_credit_balance(
    user_id: str,
    gate: CreditLedgerGate = Depends(get_credit_gate),
    _: None = Depends(require_service_key),
) -> CreditBalanceResponse:
    """
    Current balance, with lazy rollover applied.

    Creates the free-tier account on first sight, as a charge would.
    """
    account = await gate.get_account(user_id)
    pending = account.pending_plan_change
    return CreditBalanceResponse(
        user_id=account.user_id,
        plan_tier=account.plan_tier,
        credits_total=account.allowance_total,
        credits_used=account.used_credits,
        credits_bonus=account.bonus_credits,
        credits_remaining=account.credits_remaining,
        period_start=_iso(account.period_start),
        period_end=_iso(account.period_end),
        pending_plan=pending.to_plan if pending else None,
        pending_plan_effective_at=_iso(pending.effective_at) if pending else None,
    )


@router.post("/v1/actions/authorize", response_model=AuthorizeActionResponse)
async def authorize_action(
    request: ChargeRequest,
    gate: CreditLedgerGate = Depends(get_credit_gate),
    model_router: ModelRouter = Depends(get_model_router),
    _: None = Depends(require_service_key),
) -> AuthorizeActionResponse:
    """
    Gate an AI action end to end: plan check, charge, then model routing.

    The charge happens before routing and is not refunded if routing or the
    later generation fails.
    """
    cost_request = _cost_request(request)
    await gate.ensure_plan_permits(request.user_id, request.action_kind)
    outcome = await gate.require(request.user_id, cost_request)

    model_ids = _routed_model_ids(cost_request, model_router)
    model_type = ModelType.IMAGE if cost_request.is_image_action else ModelType.TEXT

    bindings: list[ModelBindingInfo] = []
    for model_id in model_ids:
        try:
            binding = model_router.resolve(model_id, model_type)
        except UnsupportedModelError as exc:
            logger.warning(
                "authorize_model_rejected",
                user_id=request.user_id,
                model_id=model_id,
                reason=exc.reason,
            )
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=str(exc),
            ) from exc
        except ConfigurationError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Model provider not configured",
            ) from exc
        bindings.append(
            ModelBindingInfo(
                model_id=binding.descriptor.id,
                provider=binding.provider,
                model_name=binding.model_name,
            )
        )

    primary = bindings[0]
    return AuthorizeActionResponse(
        **_charge_response(outcome).model_dump(exclude={"accepted"}),
        model_id=primary.model_id,
        provider=primary.provider,
        model_name=primary.model_name,
        bindings=bindings,
    )


def _routed_model_ids(
    cost_request: ActionCostRequest, model_router: ModelRouter
) -> tuple[str | None, ...]:
    """The ids to route, matching the models the charge was priced with."""
    if cost_request.is_image_action:
        requested = cost_request.requested_model_ids
        if requested:
            return requested
        # Route to the model the preset was priced with
        return (model_router.catalog.preset_default(cost_request.image_preset),)
    model_id = cost_request.model_id
    return (model_id if model_id and model_id.strip() else None,)


def _charge_response(outcome: ChargeAccepted) -> ChargeResponse:
    return ChargeResponse(
        charged_credits=outcome.charged_credits,
        credits_remaining=outcome.credits_remaining,
        credits_total=outcome.credits_total,
        credits_bonus=outcome.credits_bonus,
        period_end=outcome.period_end.isoformat(),
    )


# =============================================================================
# Billing (Stripe)
# =============================================================================


@router.post("/v1/billing/checkout-session", response_model=SessionUrlResponse)
async def create_checkout_session(
    request: CheckoutSessionRequest,
    gate: CreditLedgerGate = Depends(get_credit_gate),
    store: CreditAccountStore = Depends(get_credit_store),
    provider: PaymentProvider = Depends(get_payment_provider),
    _: None = Depends(require_service_key),
) -> SessionUrlResponse:
    """Start a Stripe Checkout subscription for a paid plan."""
    price_id = _subscription_price(request.plan, request.billing_interval)
    if not price_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unsupported plan",
        )

    try:
        customer_id = await _ensure_customer(
            gate, store, provider, request.user_id, request.email, request.name
        )
        url = await provider.create_checkout_session(
            CheckoutSessionIntent(
                user_id=request.user_id,
                customer_id=customer_id,
                price_id=price_id,
                mode=CheckoutMode.SUBSCRIPTION,
                success_url=request.success_url
                or _frontend_url("/workspace/settings?billing=success"),
                cancel_url=request.cancel_url
                or _frontend_url("/workspace/settings?billing=cancelled"),
                plan=request.plan.value,
            )
        )
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create checkout session",
        ) from exc

    return SessionUrlResponse(url=url)


@router.post("/v1/billing/credit-pack-session", response_model=SessionUrlResponse)
async def create_credit_pack_session(
    request: CreditPackCheckoutRequest,
    gate: CreditLedgerGate = Depends(get_credit_gate),
    store: CreditAccountStore = Depends(get_credit_store),
    provider: PaymentProvider = Depends(get_payment_provider),
    _: None = Depends(require_service_key),
) -> SessionUrlResponse:
    """Start a one-time Stripe Checkout for bonus credits."""
    if not settings.stripe_price_credit_pack:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Credit packs are not available",
        )

    try:
        customer_id = await _ensure_customer(
            gate, store, provider, request.user_id, request.email, request.name
        )
        url = await provider.create_checkout_session(
            CheckoutSessionIntent(
                user_id=request.user_id,
                customer_id=customer_id,
                price_id=settings.stripe_price_credit_pack,
                mode=CheckoutMode.PAYMENT,
                quantity=request.quantity,
                success_url=request.success_url
                or _frontend_url("/workspace/settings?billing=success"),
                cancel_url=request.cancel_url
                or _frontend_url("/workspace/settings?billing=cancelled"),
                credits=settings.credit_pack_credits * request.quantity,
            )
        )
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create checkout session",
        ) from exc

    return SessionUrlResponse(url=url)


@router.post("/v1/billing/portal-session", response_model=SessionUrlResponse)
async def create_portal_session(
    request: PortalSessionRequest,
    store: CreditAccountStore = Depends(get_credit_store),
    provider: PaymentProvider = Depends(get_payment_provider),
    _: None = Depends(require_service_key),
) -> SessionUrlResponse:
    """Open the Stripe billing portal for an existing customer."""
    account = await store.get(request.user_id)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    if not account.stripe_customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No billing account found. Start a subscription first.",
        )

    try:
        url = await provider.create_portal_session(
            account.stripe_customer_id,
            request.return_url or _frontend_url("/workspace/settings"),
        )
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to open billing portal",
        ) from exc

    return SessionUrlResponse(url=url)


@router.post("/v1/billing/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    provider: PaymentProvider = Depends(get_payment_provider),
    reconciler: BillingReconciler = Depends(get_billing_reconciler),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    Subscription events resync the user's plan; completed credit-pack
    checkouts add bonus credits. Stale references are acknowledged, not
    retried.
    """
    signature = request.headers.get("stripe-signature", "")
    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe-signature",
        )

    payload = await request.body()
    try:
        webhook = await provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc

    logger.info(
        "stripe_webhook_received",
        event_id=webhook.event_id,
        event_type=webhook.event_type,
    )

    try:
        subscription = webhook.subscription
        if subscription is None and webhook.checkout_subscription_id:
            subscription = await provider.retrieve_subscription(
                webhook.checkout_subscription_id, webhook.event_id, webhook.user_id_hint
            )

        if subscription is not None:
            result = await reconciler.apply_subscription_event(subscription)
        elif webhook.top_up is not None:
            result = await reconciler.apply_top_up(webhook.top_up)
        else:
            logger.info(
                "stripe_webhook_ignored",
                event_type=webhook.event_type,
                event_id=webhook.event_id,
            )
            return WebhookAckResponse(status="ignored", event_id=webhook.event_id)

    except Exception as exc:
        logger.error(
            "stripe_webhook_processing_failed",
            event_id=webhook.event_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookAckResponse(
        status="success", event_id=webhook.event_id, outcome=result.outcome.value
    )


def _subscription_price(plan: PlanTier, interval: BillingInterval) -> str:
    prices = {
        (PlanTier.BASIC, BillingInterval.MONTHLY): settings.stripe_price_basic_monthly,
        (PlanTier.BASIC, BillingInterval.ANNUAL): settings.stripe_price_basic_annual,
        (PlanTier.PRO, BillingInterval.MONTHLY): settings.stripe_price_pro_monthly,
        (PlanTier.PRO, BillingInterval.ANNUAL): settings.stripe_price_pro_annual,
    }
    return prices.get((plan, interval), "")


async def _ensure_customer(
    gate: CreditLedgerGate,
    store: CreditAccountStore,
    provider: PaymentProvider,
    user_id: str,
    email: str,
    name: str | None,
) -> str:
    """Stripe customer for the user, created and remembered on first checkout."""
    account = await gate.get_account(user_id)
    customer_id = await provider.ensure_customer(
        user_id, email, name, account.stripe_customer_id
    )
    if customer_id != account.stripe_customer_id:
        await store.set_customer_id(user_id, customer_id)
    return customer_id


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
