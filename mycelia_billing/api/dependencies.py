"""
FastAPI Dependencies - Service wiring and service-to-service auth.

Immutable collaborators (catalog, router, plan table) are built once per
process; session-bound services are built per request.
"""

import secrets
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from mycelia_billing.config import settings
from mycelia_billing.db.session import get_db
from mycelia_billing.models.domain import PlanAllowances
from mycelia_billing.services.billing_reconciler import BillingReconciler, build_price_map
from mycelia_billing.services.cost_estimator import CostEstimator
from mycelia_billing.services.credit_ledger import CreditLedgerGate
from mycelia_billing.services.credit_store import CreditAccountStore, SqlCreditAccountStore
from mycelia_billing.services.model_catalog import ModelCatalog, load_model_catalog
from mycelia_billing.services.model_router import ModelRouter
from mycelia_billing.services.notifications import build_notifier
from mycelia_billing.services.payment_provider import PaymentProvider
from mycelia_billing.services.stripe_provider import StripeProvider

logger = get_logger(__name__)


# ============================================================================
# Service-to-service authentication
# ============================================================================


async def require_service_key(
    x_api_key: str | None = Header(None, alias="X-API-Key"),
) -> None:
    """
    Validate the shared service key sent by the route layer.

    Disabled when API_KEY is not configured (local development).

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    if settings.api_key is None:
        return
    if not x_api_key or not secrets.compare_digest(x_api_key, settings.api_key):
        logger.warning("service_key_rejected", has_key=bool(x_api_key))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


# ============================================================================
# Process-wide immutable collaborators
# ============================================================================


@lru_cache
def get_model_catalog() -> ModelCatalog:
    return load_model_catalog(settings)


@lru_cache
def get_plan_allowances() -> PlanAllowances:
    return PlanAllowances(
        free=settings.plan_credits_free,
        basic=settings.plan_credits_basic,
        pro=settings.plan_credits_pro,
    )


@lru_cache
def get_model_router() -> ModelRouter:
    return ModelRouter(get_model_catalog(), settings)


def get_cost_estimator(catalog: ModelCatalog = Depends(get_model_catalog)) -> CostEstimator:
    return CostEstimator(catalog, settings.credits_per_usd)


# ============================================================================
# Request-scoped services
# ============================================================================


def get_credit_store(db: AsyncSession = Depends(get_db)) -> CreditAccountStore:
    return SqlCreditAccountStore(db)


def get_credit_gate(
    store: CreditAccountStore = Depends(get_credit_store),
    estimator: CostEstimator = Depends(get_cost_estimator),
    allowances: PlanAllowances = Depends(get_plan_allowances),
) -> CreditLedgerGate:
    return CreditLedgerGate(
        store=store,
        estimator=estimator,
        allowances=allowances,
        period_months=settings.credit_period_months,
    )


def get_billing_reconciler(
    store: CreditAccountStore = Depends(get_credit_store),
    allowances: PlanAllowances = Depends(get_plan_allowances),
) -> BillingReconciler:
    return BillingReconciler(
        store=store,
        price_map=build_price_map(settings),
        allowances=allowances,
        notifier=build_notifier(
            settings.plan_upgrade_webhook_url, settings.plan_upgrade_webhook_timeout
        ),
        period_months=settings.credit_period_months,
    )


def get_payment_provider() -> PaymentProvider:
    """
    Stripe provider from settings.

    Raises:
        HTTPException 503 if Stripe is not configured
    """
    if not settings.stripe_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )
