"""
Tests for SqlCreditAccountStore.

Uses a mocked AsyncSession and inspects the SQL each operation emits.
"""

from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from mycelia_billing.db.models import CreditAccount, CreditChargeAttempt, CreditTopUp
from mycelia_billing.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    WriteVerificationError,
)
from mycelia_billing.models.api import BillingInterval, PlanTier
from mycelia_billing.models.domain import (
    ChargeAttempt,
    PendingPlanChange,
    PlanAllowances,
)
from mycelia_billing.services.credit_store import SqlCreditAccountStore
from tests.factories import NEXT_PERIOD_END, NOW, USER_ID, account_row, make_account

ALLOWANCES = PlanAllowances(free=500, basic=3000, pro=6000)


def compiled(session: AsyncMock, call: int = -1) -> str:
    """SQL text of an execute() call, rendered for PostgreSQL."""
    statement = session.execute.call_args_list[call].args[0]
    return str(statement.compile(dialect=postgresql.dialect()))


def result_with(row: Any = None, scalar: Any = None, rowcount: int = 0) -> MagicMock:
    result = MagicMock()
    result.first = MagicMock(return_value=row)
    result.scalar_one_or_none = MagicMock(return_value=scalar)
    result.rowcount = rowcount
    return result


def orm_account(**overrides: Any) -> CreditAccount:
    values: dict[str, Any] = {
        "user_id": USER_ID,
        "plan_tier": "free",
        "allowance_total": 500,
        "bonus_credits": 0,
        "used_credits": 0,
        "period_start": NOW,
        "period_end": NEXT_PERIOD_END,
        "pending_plan": None,
        "pending_plan_effective_at": None,
        "billing_interval": None,
        "stripe_customer_id": None,
        "stripe_subscription_id": None,
    }
    values.update(overrides)
    return CreditAccount(**values)


class TestReads:
    """Tests for get and get_or_create."""

    async def test_get_missing_account(self, db_session: AsyncMock) -> None:
        store = SqlCreditAccountStore(db_session)
        assert await store.get(USER_ID) is None

    async def test_get_maps_row_to_domain(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(
            return_value=result_with(
                account_row(
                    plan_tier="pro",
                    billing_interval="annual",
                    pending_plan="free",
                    pending_plan_effective_at=NEXT_PERIOD_END,
                )
            )
        )
        store = SqlCreditAccountStore(db_session)

        account = await store.get(USER_ID)

        assert account is not None
        assert account.plan_tier == PlanTier.PRO
        assert account.billing_interval == BillingInterval.ANNUAL
        assert account.pending_plan_change == PendingPlanChange(PlanTier.FREE, NEXT_PERIOD_END)

    async def test_get_or_create_inserts_on_conflict_do_nothing(
        self, db_session: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(side_effect=[result_with(), result_with(account_row())])
        store = SqlCreditAccountStore(db_session)

        account = await store.get_or_create(USER_ID, 500, NOW, NEXT_PERIOD_END)

        sql = compiled(db_session, 0)
        assert sql.startswith("INSERT INTO credit_accounts")
        assert "ON CONFLICT (user_id) DO NOTHING" in sql
        assert account.user_id == USER_ID
        db_session.commit.assert_awaited()

    async def test_get_or_create_verifies_row_exists(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(side_effect=[result_with(), result_with(None)])
        store = SqlCreditAccountStore(db_session)

        with pytest.raises(WriteVerificationError):
            await store.get_or_create(USER_ID, 500, NOW, NEXT_PERIOD_END)


class TestTryConsume:
    """Tests for the atomic check-and-deduct."""

    @pytest.mark.parametrize("cost", [0, -5])
    async def test_non_positive_cost_rejected(self, db_session: AsyncMock, cost: int) -> None:
        store = SqlCreditAccountStore(db_session)

        with pytest.raises(DataIntegrityError):
            await store.try_consume(USER_ID, cost)

        db_session.execute.assert_not_awaited()

    async def test_single_conditional_update(self, db_session: AsyncMock) -> None:
        """Check and deduct happen in one UPDATE ... WHERE ... RETURNING."""
        store = SqlCreditAccountStore(db_session)

        await store.try_consume(USER_ID, 3)

        assert db_session.execute.await_count == 1
        sql = compiled(db_session)
        assert sql.startswith("UPDATE credit_accounts SET used_credits=")
        assert "credit_accounts.allowance_total + credit_accounts.bonus_credits" in sql
        assert "<=" in sql
        assert "RETURNING" in sql

    async def test_no_row_means_rejected(self, db_session: AsyncMock) -> None:
        store = SqlCreditAccountStore(db_session)

        assert await store.try_consume(USER_ID, 3) is None
        db_session.commit.assert_awaited_once()

    async def test_returned_row_is_post_charge_state(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=result_with(account_row(used_credits=53)))
        store = SqlCreditAccountStore(db_session)

        account = await store.try_consume(USER_ID, 3)

        assert account is not None
        assert account.used_credits == 53


class TestRollover:
    """Tests for conditional and bulk rollover."""

    async def test_rollover_rechecks_expiry_in_where_clause(
        self, db_session: AsyncMock
    ) -> None:
        store = SqlCreditAccountStore(db_session)

        result = await store.rollover_if_expired(USER_ID, NOW, NEXT_PERIOD_END, ALLOWANCES)

        assert result is None
        sql = compiled(db_session)
        assert "credit_accounts.period_end IS NULL OR credit_accounts.period_end <" in sql
        assert "CASE WHEN" in sql
        assert "greatest(" in sql

    async def test_rollover_returns_new_state(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=result_with(account_row(used_credits=0)))
        store = SqlCreditAccountStore(db_session)

        account = await store.rollover_if_expired(USER_ID, NOW, NEXT_PERIOD_END, ALLOWANCES)

        assert account is not None
        assert account.used_credits == 0

    async def test_bulk_rollover_returns_rowcount(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=result_with(rowcount=7))
        store = SqlCreditAccountStore(db_session)

        assert await store.rollover_expired(NOW, NEXT_PERIOD_END, ALLOWANCES) == 7
        assert "RETURNING" not in compiled(db_session)
        db_session.commit.assert_awaited_once()


class TestAudit:
    """Tests for charge attempt audit rows."""

    async def test_attempt_row_added_and_committed(self, db_session: AsyncMock) -> None:
        store = SqlCreditAccountStore(db_session)
        attempt = ChargeAttempt(
            user_id=USER_ID,
            action_kind="chatMessage",
            model_ids=("openai/gpt-4.1-mini",),
            cost=1,
            accepted=True,
            used_before=0,
            used_after=1,
            remaining_before=500,
            remaining_after=499,
        )

        await store.record_charge_attempt(attempt)

        row = db_session.add.call_args.args[0]
        assert isinstance(row, CreditChargeAttempt)
        assert row.model_ids == ["openai/gpt-4.1-mini"]
        assert row.accepted is True
        db_session.commit.assert_awaited_once()


class TestLockAndSave:
    """Tests for the reconciler's locked read-modify-write."""

    async def test_lock_by_user_id(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=result_with(scalar=orm_account()))
        store = SqlCreditAccountStore(db_session)

        account = await store.lock_account(USER_ID, "cus_1")

        assert account is not None
        assert account.user_id == USER_ID
        assert db_session.execute.await_count == 1
        assert "FOR UPDATE" in compiled(db_session)

    async def test_lock_falls_back_to_customer_id(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(
            side_effect=[
                result_with(scalar=None),
                result_with(scalar=orm_account(stripe_customer_id="cus_1")),
            ]
        )
        store = SqlCreditAccountStore(db_session)

        account = await store.lock_account("stale-user", "cus_1")

        assert account is not None
        assert account.stripe_customer_id == "cus_1"
        assert "credit_accounts.stripe_customer_id" in compiled(db_session, 1)

    async def test_lock_without_references(self, db_session: AsyncMock) -> None:
        store = SqlCreditAccountStore(db_session)

        assert await store.lock_account(None, None) is None
        db_session.execute.assert_not_awaited()

    async def test_save_writes_every_field(self, db_session: AsyncMock) -> None:
        row = orm_account(used_credits=120)
        db_session.get = AsyncMock(return_value=row)
        store = SqlCreditAccountStore(db_session)
        target = make_account(
            plan_tier=PlanTier.BASIC,
            billing_interval=BillingInterval.MONTHLY,
            allowance_total=3000,
            used_credits=0,
            period_start=NOW,
            period_end=NEXT_PERIOD_END,
            pending_plan_change=PendingPlanChange(PlanTier.FREE, NOW + timedelta(days=30)),
            stripe_customer_id="cus_1",
            stripe_subscription_id="sub_1",
        )

        saved = await store.save(target)

        assert row.plan_tier == "basic"
        assert row.billing_interval == "monthly"
        assert row.allowance_total == 3000
        assert row.used_credits == 0
        assert row.pending_plan == "free"
        assert row.stripe_subscription_id == "sub_1"
        assert saved.plan_tier == PlanTier.BASIC
        db_session.flush.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    async def test_save_missing_account(self, db_session: AsyncMock) -> None:
        store = SqlCreditAccountStore(db_session)

        with pytest.raises(AccountNotFoundError):
            await store.save(make_account())

    async def test_save_verification_mismatch(self, db_session: AsyncMock) -> None:
        db_session.get = AsyncMock(
            side_effect=[orm_account(), orm_account(plan_tier="pro", used_credits=0)]
        )
        store = SqlCreditAccountStore(db_session)

        with pytest.raises(DataIntegrityError, match="Plan mismatch"):
            await store.save(make_account(plan_tier=PlanTier.BASIC))

        db_session.commit.assert_not_awaited()

    async def test_save_verifies_against_fresh_row(self, db_session: AsyncMock) -> None:
        """The read-back reloads the row instead of reusing the identity map."""
        db_session.get = AsyncMock(return_value=orm_account())
        store = SqlCreditAccountStore(db_session)

        await store.save(make_account())

        first, second = db_session.get.await_args_list
        assert first.kwargs.get("populate_existing") is None
        assert second.kwargs == {"populate_existing": True}

    async def test_release_rolls_back(self, db_session: AsyncMock) -> None:
        store = SqlCreditAccountStore(db_session)
        await store.release()
        db_session.rollback.assert_awaited_once()


class TestTopUps:
    """Tests for idempotent bonus credits."""

    async def test_top_up_adds_bonus(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=result_with(account_row(bonus_credits=2000)))
        store = SqlCreditAccountStore(db_session)

        account = await store.add_bonus_credits(USER_ID, 2000, "pi_1")

        assert account is not None
        assert account.bonus_credits == 2000
        top_up = db_session.add.call_args.args[0]
        assert isinstance(top_up, CreditTopUp)
        assert top_up.payment_reference == "pi_1"
        assert "credit_accounts.bonus_credits +" in compiled(db_session)
        db_session.commit.assert_awaited_once()

    async def test_duplicate_reference_is_none(self, db_session: AsyncMock) -> None:
        db_session.flush = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("duplicate key"))
        )
        store = SqlCreditAccountStore(db_session)

        assert await store.add_bonus_credits(USER_ID, 2000, "pi_1") is None
        db_session.rollback.assert_awaited_once()
        db_session.execute.assert_not_awaited()

    async def test_missing_account_rolls_back(self, db_session: AsyncMock) -> None:
        store = SqlCreditAccountStore(db_session)

        with pytest.raises(AccountNotFoundError):
            await store.add_bonus_credits("ghost", 2000, "pi_2")

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()
