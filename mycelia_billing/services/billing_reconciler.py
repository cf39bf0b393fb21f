"""
Billing Reconciler - Applies payment-processor events to credit accounts.

Each subscription event is a full-state resync of the account, never a
delta, so replaying an event converges to the same state. Events are
applied in arrival order.

Stale references and unknown prices are logged and ignored: raising would
make the webhook sender retry the same event forever.
"""

from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

from structlog import get_logger

from mycelia_billing.config import Settings
from mycelia_billing.exceptions import UnknownSubscriptionReferenceError, UnrecognizedPriceError
from mycelia_billing.models.api import (
    BillingInterval,
    PlanTier,
    SubscriptionEventType,
    SubscriptionStatus,
)
from mycelia_billing.models.domain import (
    CreditAccountData,
    PendingPlanChange,
    PlanAllowances,
    PlanPrice,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionEvent,
    TopUpEvent,
)
from mycelia_billing.observability.metrics import metrics
from mycelia_billing.services.credit_ledger import add_months
from mycelia_billing.services.credit_store import CreditAccountStore
from mycelia_billing.services.notifications import PlanUpgradeNotifier

logger = get_logger(__name__)

ACTIVE_STATUSES = frozenset(
    s.value
    for s in (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.INCOMPLETE,
    )
)
DOWNGRADE_STATUSES = frozenset(
    s.value
    for s in (
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
    )
)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def build_price_map(settings: Settings) -> dict[str, PlanPrice]:
    """Stripe price id -> (plan, interval) for every configured price."""
    configured = (
        (settings.stripe_price_basic_monthly, PlanTier.BASIC, BillingInterval.MONTHLY),
        (settings.stripe_price_basic_annual, PlanTier.BASIC, BillingInterval.ANNUAL),
        (settings.stripe_price_pro_monthly, PlanTier.PRO, BillingInterval.MONTHLY),
        (settings.stripe_price_pro_annual, PlanTier.PRO, BillingInterval.ANNUAL),
    )
    return {
        price_id: PlanPrice(plan=plan, interval=interval)
        for price_id, plan, interval in configured
        if price_id
    }


def settle_period(account: CreditAccountData) -> int:
    """Bonus left after charging the period's overflow usage against it."""
    overflow = max(0, account.used_credits - account.allowance_total)
    return max(0, account.bonus_credits - overflow)


class BillingReconciler:
    """
    Subscription state machine over CreditAccount.plan_tier.

    active/trialing/past_due/incomplete + known price -> that plan
    canceled/unpaid/incomplete_expired or deleted     -> free
    anything else                                     -> ignored
    """

    def __init__(
        self,
        store: CreditAccountStore,
        price_map: dict[str, PlanPrice],
        allowances: PlanAllowances,
        notifier: PlanUpgradeNotifier,
        period_months: int = 1,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize reconciler with its store, plan tables and notifier."""
        self.store = store
        self.price_map = price_map
        self.allowances = allowances
        self.notifier = notifier
        self.period_months = period_months
        self.clock = clock

    async def apply_subscription_event(self, event: SubscriptionEvent) -> ReconcileResult:
        """
        Resync one account from a verified subscription event.

        Never raises for stale references or unknown prices.
        """
        logger.info(
            "billing_sync_received",
            event_id=event.event_id,
            event_type=event.event_type.value,
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
            status=event.status,
            price_id=event.price_id,
        )

        account = await self.store.lock_account(event.user_id_hint, event.customer_id)
        try:
            if account is None:
                raise UnknownSubscriptionReferenceError(event.subscription_id, event.customer_id)
            updated = self._resynced(account, event)
        except UnknownSubscriptionReferenceError as exc:
            await self.store.release()
            logger.warning(
                "billing_sync_unknown_user",
                event_id=event.event_id,
                subscription_id=exc.subscription_id,
                customer_id=exc.customer_id,
                user_id_hint=event.user_id_hint,
            )
            return self._result(event, ReconcileOutcome.IGNORED_UNKNOWN_USER)
        except UnrecognizedPriceError as exc:
            await self.store.release()
            logger.warning(
                "billing_sync_unrecognized_price",
                event_id=event.event_id,
                user_id=account.user_id if account else None,
                price_id=exc.price_id,
                status=event.status,
            )
            user_id = account.user_id if account else None
            return self._result(event, ReconcileOutcome.IGNORED_UNRECOGNIZED_PRICE, user_id)

        if updated is None:
            await self.store.release()
            logger.info(
                "billing_sync_ignored_status",
                event_id=event.event_id,
                user_id=account.user_id,
                status=event.status,
            )
            return self._result(event, ReconcileOutcome.IGNORED_STATUS, account.user_id)

        saved = await self.store.save(updated)
        outcome = (
            ReconcileOutcome.DOWNGRADED if self._is_downgrade(event) else ReconcileOutcome.APPLIED
        )
        logger.info(
            "billing_sync_applied",
            event_id=event.event_id,
            outcome=outcome.value,
            user_id=saved.user_id,
            previous_plan=account.plan_tier.value,
            plan_tier=saved.plan_tier.value,
            allowance_total=saved.allowance_total,
            bonus_credits=saved.bonus_credits,
            period_end=saved.period_end.isoformat() if saved.period_end else None,
            pending_plan=(
                saved.pending_plan_change.to_plan.value if saved.pending_plan_change else None
            ),
        )

        if (
            outcome == ReconcileOutcome.APPLIED
            and saved.plan_tier != PlanTier.FREE
            and saved.plan_tier != account.plan_tier
        ):
            await self._notify_upgrade(saved.user_id, saved.plan_tier)

        metrics.record_billing_event(event.event_type.value, outcome.value)
        return ReconcileResult(
            outcome=outcome,
            user_id=saved.user_id,
            plan_tier=saved.plan_tier,
            previous_plan_tier=account.plan_tier,
        )

    async def apply_top_up(self, event: TopUpEvent) -> ReconcileResult:
        """
        Add purchased credits to the bonus balance.

        Idempotent per payment reference; a redelivered event is a duplicate.
        """
        now = self.clock()
        account = await self.store.get_or_create(
            event.user_id,
            allowance=self.allowances.free,
            period_start=now,
            period_end=add_months(now, self.period_months),
        )

        updated = await self.store.add_bonus_credits(
            event.user_id, event.credits, event.payment_reference
        )
        if updated is None:
            logger.info(
                "billing_top_up_duplicate",
                event_id=event.event_id,
                user_id=event.user_id,
                payment_reference=event.payment_reference,
            )
            metrics.record_billing_event("top_up", ReconcileOutcome.DUPLICATE.value)
            return ReconcileResult(
                outcome=ReconcileOutcome.DUPLICATE,
                user_id=event.user_id,
                plan_tier=account.plan_tier,
                previous_plan_tier=account.plan_tier,
            )

        if event.customer_id and account.stripe_customer_id is None:
            await self.store.set_customer_id(event.user_id, event.customer_id)

        logger.info(
            "billing_top_up_applied",
            event_id=event.event_id,
            user_id=event.user_id,
            credits=event.credits,
            bonus_credits=updated.bonus_credits,
            payment_reference=event.payment_reference,
        )
        metrics.top_up_credits.observe(event.credits)
        metrics.record_billing_event("top_up", ReconcileOutcome.TOPPED_UP.value)
        return ReconcileResult(
            outcome=ReconcileOutcome.TOPPED_UP,
            user_id=event.user_id,
            plan_tier=updated.plan_tier,
            previous_plan_tier=account.plan_tier,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _is_downgrade(self, event: SubscriptionEvent) -> bool:
        return event.event_type == SubscriptionEventType.DELETED or (
            event.status in DOWNGRADE_STATUSES
        )

    def _resynced(
        self, account: CreditAccountData, event: SubscriptionEvent
    ) -> CreditAccountData | None:
        """
        Full target state for the account, or None when the status is ignored.

        Raises:
            UnrecognizedPriceError: active status with a price outside the plan table
        """
        now = self.clock()
        period_end = add_months(now, self.period_months)
        customer_id = account.stripe_customer_id or event.customer_id

        if self._is_downgrade(event):
            return replace(
                account,
                plan_tier=PlanTier.FREE,
                billing_interval=None,
                allowance_total=self.allowances.free,
                bonus_credits=settle_period(account),
                used_credits=0,
                period_start=now,
                period_end=period_end,
                pending_plan_change=None,
                stripe_customer_id=customer_id,
                stripe_subscription_id=None,
            )

        if event.status not in ACTIVE_STATUSES:
            return None

        price = self.price_map.get(event.price_id or "")
        if price is None:
            raise UnrecognizedPriceError(event.price_id)

        return replace(
            account,
            plan_tier=price.plan,
            billing_interval=price.interval,
            allowance_total=self.allowances.credits_for(price.plan),
            bonus_credits=settle_period(account),
            used_credits=0,
            period_start=now,
            period_end=period_end,
            pending_plan_change=self._pending_change(event, account.user_id, period_end),
            stripe_customer_id=customer_id,
            stripe_subscription_id=event.subscription_id,
        )

    def _pending_change(
        self, event: SubscriptionEvent, user_id: str, period_end: datetime
    ) -> PendingPlanChange | None:
        """Scheduled cancellation or plan switch carried by the subscription."""
        if event.cancel_at_period_end:
            return PendingPlanChange(
                to_plan=PlanTier.FREE,
                effective_at=event.current_period_end or event.cancel_at or period_end,
            )
        if event.cancel_at is not None:
            return PendingPlanChange(to_plan=PlanTier.FREE, effective_at=event.cancel_at)
        if event.pending_price_id:
            pending_price = self.price_map.get(event.pending_price_id)
            if pending_price is None:
                logger.warning(
                    "billing_sync_unrecognized_pending_price",
                    event_id=event.event_id,
                    user_id=user_id,
                    price_id=event.pending_price_id,
                )
                return None
            return PendingPlanChange(
                to_plan=pending_price.plan,
                effective_at=event.current_period_end or period_end,
            )
        return None

    async def _notify_upgrade(self, user_id: str, plan: PlanTier) -> None:
        """Best effort: a failed notification never undoes the resync."""
        try:
            await self.notifier.notify_plan_upgrade(user_id, plan)
        except Exception as exc:
            logger.warning(
                "plan_upgrade_notification_failed",
                user_id=user_id,
                plan=plan.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            metrics.record_error(type(exc).__name__, "notify_plan_upgrade")

    def _result(
        self, event: SubscriptionEvent, outcome: ReconcileOutcome, user_id: str | None = None
    ) -> ReconcileResult:
        metrics.record_billing_event(event.event_type.value, outcome.value)
        return ReconcileResult(outcome=outcome, user_id=user_id)
