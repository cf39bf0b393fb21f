"""
Tests for BillingReconciler.

Runs the subscription state machine against the in-memory store.
"""

from datetime import UTC, datetime, timedelta

import pytest

from mycelia_billing.config import settings
from mycelia_billing.models.api import BillingInterval, PlanTier, SubscriptionEventType
from mycelia_billing.models.domain import (
    PendingPlanChange,
    PlanAllowances,
    PlanPrice,
    ReconcileOutcome,
    TopUpEvent,
)
from mycelia_billing.services.billing_reconciler import (
    BillingReconciler,
    build_price_map,
    settle_period,
)
from tests.factories import (
    CUSTOMER_ID,
    NEXT_PERIOD_END,
    NOW,
    PRICE_BASIC_MONTHLY,
    PRICE_PRO_ANNUAL,
    PRICE_PRO_MONTHLY,
    USER_ID,
    FixedClock,
    InMemoryCreditStore,
    RecordingNotifier,
    make_account,
    subscription_event,
)

PERIOD_END_AT_STRIPE = datetime(2026, 2, 1, tzinfo=UTC)


class TestPlanChanges:
    """Tests for active-status resyncs."""

    async def test_upgrade_resets_period(
        self,
        reconciler: BillingReconciler,
        store: InMemoryCreditStore,
        notifier: RecordingNotifier,
    ) -> None:
        store.seed(make_account(used_credits=480))

        result = await reconciler.apply_subscription_event(subscription_event())

        account = store.accounts[USER_ID]
        assert result.outcome == ReconcileOutcome.APPLIED
        assert result.previous_plan_tier == PlanTier.FREE
        assert result.plan_tier == PlanTier.BASIC
        assert account.plan_tier == PlanTier.BASIC
        assert account.billing_interval == BillingInterval.MONTHLY
        assert account.allowance_total == 3000
        assert account.used_credits == 0
        assert account.period_start == NOW
        assert account.period_end == NEXT_PERIOD_END
        assert account.stripe_subscription_id == "sub_1"
        assert account.stripe_customer_id == CUSTOMER_ID
        assert notifier.calls == [(USER_ID, PlanTier.BASIC)]

    async def test_replay_converges_and_notifies_once(
        self,
        reconciler: BillingReconciler,
        store: InMemoryCreditStore,
        notifier: RecordingNotifier,
    ) -> None:
        store.seed(make_account())
        event = subscription_event(price_id=PRICE_PRO_ANNUAL)

        await reconciler.apply_subscription_event(event)
        first = store.accounts[USER_ID]
        replayed = await reconciler.apply_subscription_event(event)

        assert replayed.outcome == ReconcileOutcome.APPLIED
        assert store.accounts[USER_ID] == first
        assert notifier.calls == [(USER_ID, PlanTier.PRO)]

    async def test_plan_switch_between_paid_tiers_notifies(
        self,
        reconciler: BillingReconciler,
        store: InMemoryCreditStore,
        notifier: RecordingNotifier,
    ) -> None:
        store.seed(make_account(plan_tier=PlanTier.BASIC, allowance_total=3000))

        await reconciler.apply_subscription_event(subscription_event(price_id=PRICE_PRO_MONTHLY))

        assert store.accounts[USER_ID].allowance_total == 6000
        assert notifier.calls == [(USER_ID, PlanTier.PRO)]

    @pytest.mark.parametrize("status", ["trialing", "past_due", "incomplete"])
    async def test_other_active_statuses_apply(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore, status: str
    ) -> None:
        store.seed(make_account())

        result = await reconciler.apply_subscription_event(subscription_event(status=status))

        assert result.outcome == ReconcileOutcome.APPLIED
        assert store.accounts[USER_ID].plan_tier == PlanTier.BASIC

    async def test_resync_settles_bonus_overflow(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        """Usage past the allowance was paid from bonus; that part is gone."""
        store.seed(make_account(used_credits=600, bonus_credits=300))

        await reconciler.apply_subscription_event(subscription_event())

        assert store.accounts[USER_ID].bonus_credits == 200

    async def test_notifier_failure_does_not_undo_resync(
        self, store: InMemoryCreditStore, price_map: dict[str, PlanPrice], clock: FixedClock
    ) -> None:
        failing = RecordingNotifier(fail=True)
        reconciler = BillingReconciler(
            store,
            price_map,
            PlanAllowances(free=500, basic=3000, pro=6000),
            failing,
            clock=clock,
        )
        store.seed(make_account())

        result = await reconciler.apply_subscription_event(subscription_event())

        assert result.outcome == ReconcileOutcome.APPLIED
        assert store.accounts[USER_ID].plan_tier == PlanTier.BASIC
        assert failing.calls == [(USER_ID, PlanTier.BASIC)]

    async def test_match_by_customer_id(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        store.seed(make_account(stripe_customer_id=CUSTOMER_ID))

        result = await reconciler.apply_subscription_event(subscription_event(user_id_hint=None))

        assert result.outcome == ReconcileOutcome.APPLIED
        assert result.user_id == USER_ID
        assert store.locks_taken == [USER_ID]


class TestPendingChanges:
    """Tests for scheduled cancellations and plan switches."""

    async def test_cancel_at_period_end(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        store.seed(make_account())
        event = subscription_event(
            cancel_at_period_end=True, current_period_end=PERIOD_END_AT_STRIPE
        )

        result = await reconciler.apply_subscription_event(event)

        account = store.accounts[USER_ID]
        assert result.outcome == ReconcileOutcome.APPLIED
        assert account.plan_tier == PlanTier.BASIC
        assert account.pending_plan_change == PendingPlanChange(
            PlanTier.FREE, PERIOD_END_AT_STRIPE
        )

    async def test_cancel_at_timestamp(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        store.seed(make_account())
        cancel_at = NOW + timedelta(days=5)

        await reconciler.apply_subscription_event(subscription_event(cancel_at=cancel_at))

        assert store.accounts[USER_ID].pending_plan_change == PendingPlanChange(
            PlanTier.FREE, cancel_at
        )

    async def test_scheduled_price_change(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        store.seed(make_account(plan_tier=PlanTier.PRO, allowance_total=6000))
        event = subscription_event(
            price_id=PRICE_PRO_MONTHLY,
            pending_price_id=PRICE_BASIC_MONTHLY,
            current_period_end=PERIOD_END_AT_STRIPE,
        )

        await reconciler.apply_subscription_event(event)

        assert store.accounts[USER_ID].pending_plan_change == PendingPlanChange(
            PlanTier.BASIC, PERIOD_END_AT_STRIPE
        )

    async def test_unknown_pending_price_is_dropped(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        store.seed(make_account())

        result = await reconciler.apply_subscription_event(
            subscription_event(pending_price_id="price_retired")
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        assert store.accounts[USER_ID].pending_plan_change is None

    async def test_resync_clears_previous_pending_change(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        """Resubscribing after a scheduled cancel drops the cancel."""
        store.seed(
            make_account(
                plan_tier=PlanTier.BASIC,
                pending_plan_change=PendingPlanChange(PlanTier.FREE, PERIOD_END_AT_STRIPE),
            )
        )

        await reconciler.apply_subscription_event(subscription_event())

        assert store.accounts[USER_ID].pending_plan_change is None


class TestDowngrades:
    """Tests for terminal statuses and deleted subscriptions."""

    @pytest.mark.parametrize("status", ["canceled", "unpaid", "incomplete_expired"])
    async def test_terminal_status_downgrades(
        self,
        reconciler: BillingReconciler,
        store: InMemoryCreditStore,
        notifier: RecordingNotifier,
        status: str,
    ) -> None:
        store.seed(
            make_account(
                plan_tier=PlanTier.PRO,
                allowance_total=6000,
                used_credits=1200,
                billing_interval=BillingInterval.ANNUAL,
                stripe_customer_id=CUSTOMER_ID,
                stripe_subscription_id="sub_1",
            )
        )

        result = await reconciler.apply_subscription_event(subscription_event(status=status))

        account = store.accounts[USER_ID]
        assert result.outcome == ReconcileOutcome.DOWNGRADED
        assert account.plan_tier == PlanTier.FREE
        assert account.allowance_total == 500
        assert account.used_credits == 0
        assert account.billing_interval is None
        assert account.stripe_subscription_id is None
        assert account.stripe_customer_id == CUSTOMER_ID
        assert notifier.calls == []

    async def test_deleted_event_downgrades_whatever_the_status(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        store.seed(make_account(plan_tier=PlanTier.BASIC, allowance_total=3000))
        event = subscription_event(event_type=SubscriptionEventType.DELETED, status="active")

        result = await reconciler.apply_subscription_event(event)

        assert result.outcome == ReconcileOutcome.DOWNGRADED
        assert store.accounts[USER_ID].plan_tier == PlanTier.FREE

    async def test_downgrade_keeps_unspent_bonus(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        store.seed(make_account(plan_tier=PlanTier.BASIC, allowance_total=3000, bonus_credits=400))

        await reconciler.apply_subscription_event(subscription_event(status="canceled"))

        assert store.accounts[USER_ID].bonus_credits == 400


class TestIgnoredEvents:
    """Events that change nothing and never raise."""

    async def test_unknown_user(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        result = await reconciler.apply_subscription_event(
            subscription_event(user_id_hint="ghost", customer_id="cus_ghost")
        )

        assert result.outcome == ReconcileOutcome.IGNORED_UNKNOWN_USER
        assert result.user_id is None
        assert store.releases == 1
        assert store.saves == 0

    async def test_unrecognized_price(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        original = store.seed(make_account(used_credits=50))

        result = await reconciler.apply_subscription_event(
            subscription_event(price_id="price_unknown")
        )

        assert result.outcome == ReconcileOutcome.IGNORED_UNRECOGNIZED_PRICE
        assert result.user_id == USER_ID
        assert store.accounts[USER_ID] == original
        assert store.releases == 1

    @pytest.mark.parametrize("status", ["paused", "something_new"])
    async def test_unhandled_status(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore, status: str
    ) -> None:
        original = store.seed(make_account())

        result = await reconciler.apply_subscription_event(subscription_event(status=status))

        assert result.outcome == ReconcileOutcome.IGNORED_STATUS
        assert store.accounts[USER_ID] == original
        assert store.releases == 1


class TestTopUps:
    """Tests for credit pack purchases."""

    async def test_top_up_adds_bonus(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        store.seed(make_account(bonus_credits=100))
        event = TopUpEvent(
            event_id="evt_9", user_id=USER_ID, credits=2000, payment_reference="pi_1"
        )

        result = await reconciler.apply_top_up(event)

        assert result.outcome == ReconcileOutcome.TOPPED_UP
        assert store.accounts[USER_ID].bonus_credits == 2100

    async def test_redelivered_top_up_is_duplicate(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        store.seed(make_account())
        event = TopUpEvent(
            event_id="evt_9", user_id=USER_ID, credits=2000, payment_reference="pi_1"
        )

        await reconciler.apply_top_up(event)
        result = await reconciler.apply_top_up(event)

        assert result.outcome == ReconcileOutcome.DUPLICATE
        assert store.accounts[USER_ID].bonus_credits == 2000

    async def test_top_up_for_new_user_creates_account(
        self, reconciler: BillingReconciler, store: InMemoryCreditStore
    ) -> None:
        event = TopUpEvent(
            event_id="evt_10",
            user_id="new-user",
            credits=2000,
            payment_reference="pi_2",
            customer_id="cus_new",
        )

        await reconciler.apply_top_up(event)

        account = store.accounts["new-user"]
        assert account.plan_tier == PlanTier.FREE
        assert account.allowance_total == 500
        assert account.bonus_credits == 2000
        assert account.stripe_customer_id == "cus_new"

    def test_top_up_requires_positive_credits(self) -> None:
        with pytest.raises(ValueError):
            TopUpEvent(event_id="evt", user_id=USER_ID, credits=0, payment_reference="pi_3")


class TestHelpers:
    """Tests for module-level helpers."""

    @pytest.mark.parametrize(
        ("used", "allowance", "bonus", "expected"),
        [
            (0, 500, 100, 100),
            (500, 500, 100, 100),
            (550, 500, 100, 50),
            (700, 500, 100, 0),
        ],
    )
    def test_settle_period(self, used: int, allowance: int, bonus: int, expected: int) -> None:
        account = make_account(used_credits=used, allowance_total=allowance, bonus_credits=bonus)
        assert settle_period(account) == expected

    def test_build_price_map_skips_unset_prices(self) -> None:
        configured = settings.model_copy(
            update={
                "stripe_price_basic_monthly": "price_b_m",
                "stripe_price_basic_annual": "",
                "stripe_price_pro_monthly": "price_p_m",
                "stripe_price_pro_annual": "price_p_a",
            }
        )

        assert build_price_map(configured) == {
            "price_b_m": PlanPrice(PlanTier.BASIC, BillingInterval.MONTHLY),
            "price_p_m": PlanPrice(PlanTier.PRO, BillingInterval.MONTHLY),
            "price_p_a": PlanPrice(PlanTier.PRO, BillingInterval.ANNUAL),
        }
