"""
Credit Account Store - Persistence for per-user credit accounts.

Every mutation the gate relies on for race safety is a single conditional
UPDATE, so concurrent requests for the same user cannot double-spend or
double-rollover. Reconciler writes go through row locks (SELECT FOR UPDATE).

NO DICTIONARIES - Rows are converted to CreditAccountData before leaving
this module.
"""

from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mycelia_billing.db.models import CreditAccount, CreditChargeAttempt, CreditTopUp
from mycelia_billing.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    WriteVerificationError,
)
from mycelia_billing.models.api import BillingInterval, PlanTier
from mycelia_billing.models.domain import (
    ChargeAttempt,
    CreditAccountData,
    PendingPlanChange,
    PlanAllowances,
)

_ACCOUNT_COLUMNS = (
    CreditAccount.user_id,
    CreditAccount.plan_tier,
    CreditAccount.allowance_total,
    CreditAccount.bonus_credits,
    CreditAccount.used_credits,
    CreditAccount.period_start,
    CreditAccount.period_end,
    CreditAccount.pending_plan,
    CreditAccount.pending_plan_effective_at,
    CreditAccount.billing_interval,
    CreditAccount.stripe_customer_id,
    CreditAccount.stripe_subscription_id,
)


class CreditAccountStore(Protocol):
    """
    Storage operations used by the credit gate and the billing reconciler.

    Implementations must make try_consume and rollover_if_expired atomic
    per user.
    """

    async def get(self, user_id: str) -> CreditAccountData | None:
        """Current account snapshot, or None."""
        ...

    async def get_or_create(
        self, user_id: str, allowance: int, period_start: datetime, period_end: datetime
    ) -> CreditAccountData:
        """Existing account, or a new free-tier account with zero usage."""
        ...

    async def rollover_if_expired(
        self,
        user_id: str,
        now: datetime,
        period_end: datetime,
        allowances: PlanAllowances,
    ) -> CreditAccountData | None:
        """Start a new period if the current one has elapsed; None when not expired."""
        ...

    async def try_consume(self, user_id: str, cost: int) -> CreditAccountData | None:
        """Add cost to used credits only if it fits; None when it does not."""
        ...

    async def record_charge_attempt(self, attempt: ChargeAttempt) -> None:
        """Persist an audit row for a gate evaluation."""
        ...

    async def lock_account(
        self, user_id: str | None, customer_id: str | None
    ) -> CreditAccountData | None:
        """Lock and return the account matching a user id or payment customer id."""
        ...

    async def save(self, account: CreditAccountData) -> CreditAccountData:
        """Write a full account state (after lock_account) and release the lock."""
        ...

    async def release(self) -> None:
        """Release a lock taken by lock_account without writing."""
        ...

    async def set_customer_id(self, user_id: str, customer_id: str) -> None:
        """Remember the payment customer created for a user."""
        ...

    async def add_bonus_credits(
        self, user_id: str, credits: int, payment_reference: str
    ) -> CreditAccountData | None:
        """Add top-up credits once per payment reference; None for a duplicate."""
        ...

    async def rollover_expired(
        self, now: datetime, period_end: datetime, allowances: PlanAllowances
    ) -> int:
        """Roll over every expired account; returns the number of rows changed."""
        ...


def _row_to_domain(row: Any) -> CreditAccountData:
    """Convert an ORM object or RETURNING row to the domain model."""
    pending = None
    if row.pending_plan and row.pending_plan_effective_at:
        pending = PendingPlanChange(
            to_plan=PlanTier(row.pending_plan),
            effective_at=row.pending_plan_effective_at,
        )
    return CreditAccountData(
        user_id=row.user_id,
        plan_tier=PlanTier(row.plan_tier),
        allowance_total=row.allowance_total,
        bonus_credits=row.bonus_credits,
        used_credits=row.used_credits,
        period_start=row.period_start,
        period_end=row.period_end,
        pending_plan_change=pending,
        billing_interval=BillingInterval(row.billing_interval) if row.billing_interval else None,
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
    )


def _rollover_values(
    now: datetime, period_end: datetime, allowances: PlanAllowances
) -> dict[str, Any]:
    """
    Column assignments that start a fresh period.

    Usage beyond the old allowance was paid from bonus credits; that part
    of the bonus is consumed here. All right-hand sides read pre-update values.
    """
    overflow = func.greatest(0, CreditAccount.used_credits - CreditAccount.allowance_total)
    return {
        "allowance_total": case(
            (CreditAccount.plan_tier == PlanTier.BASIC.value, allowances.basic),
            (CreditAccount.plan_tier == PlanTier.PRO.value, allowances.pro),
            else_=allowances.free,
        ),
        "bonus_credits": func.greatest(0, CreditAccount.bonus_credits - overflow),
        "used_credits": 0,
        "period_start": now,
        "period_end": period_end,
        "updated_at": now,
    }


def _expired(now: datetime) -> Any:
    return or_(CreditAccount.period_end.is_(None), CreditAccount.period_end < now)


class SqlCreditAccountStore:
    """
    PostgreSQL implementation of CreditAccountStore.

    Each public mutation commits its own transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize store with database session."""
        self.session = session

    async def get(self, user_id: str) -> CreditAccountData | None:
        result = await self.session.execute(
            select(*_ACCOUNT_COLUMNS).where(CreditAccount.user_id == user_id)
        )
        row = result.first()
        return _row_to_domain(row) if row else None

    async def get_or_create(
        self, user_id: str, allowance: int, period_start: datetime, period_end: datetime
    ) -> CreditAccountData:
        """
        Get the account, creating it on first sight.

        INSERT ... ON CONFLICT DO NOTHING keeps concurrent first requests
        from racing into an IntegrityError.
        """
        await self.session.execute(
            pg_insert(CreditAccount)
            .values(
                user_id=user_id,
                plan_tier=PlanTier.FREE.value,
                allowance_total=allowance,
                bonus_credits=0,
                used_credits=0,
                period_start=period_start,
                period_end=period_end,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await self.session.commit()

        account = await self.get(user_id)
        if account is None:
            raise WriteVerificationError(f"Credit account {user_id} not found after insert")
        return account

    async def rollover_if_expired(
        self,
        user_id: str,
        now: datetime,
        period_end: datetime,
        allowances: PlanAllowances,
    ) -> CreditAccountData | None:
        """
        Conditional rollover: the WHERE clause re-checks expiry, so of two
        concurrent callers only the first one changes the row.
        """
        result = await self.session.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id, _expired(now))
            .values(**_rollover_values(now, period_end, allowances))
            .returning(*_ACCOUNT_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        await self.session.commit()
        return _row_to_domain(row) if row else None

    async def try_consume(self, user_id: str, cost: int) -> CreditAccountData | None:
        """
        Atomic check-and-deduct.

        UPDATE credit_accounts SET used_credits = used_credits + :cost
        WHERE user_id = :user_id
          AND used_credits + :cost <= allowance_total + bonus_credits
        RETURNING ...
        """
        if cost <= 0:
            raise DataIntegrityError(f"Charge cost must be positive, got {cost}")

        result = await self.session.execute(
            update(CreditAccount)
            .where(
                CreditAccount.user_id == user_id,
                CreditAccount.used_credits + cost
                <= CreditAccount.allowance_total + CreditAccount.bonus_credits,
            )
            .values(
                used_credits=CreditAccount.used_credits + cost,
                updated_at=func.now(),
            )
            .returning(*_ACCOUNT_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        await self.session.commit()
        return _row_to_domain(row) if row else None

    async def record_charge_attempt(self, attempt: ChargeAttempt) -> None:
        self.session.add(
            CreditChargeAttempt(
                user_id=attempt.user_id,
                action_kind=attempt.action_kind,
                model_ids=list(attempt.model_ids),
                cost=attempt.cost,
                accepted=attempt.accepted,
                used_before=attempt.used_before,
                used_after=attempt.used_after,
                remaining_before=attempt.remaining_before,
                remaining_after=attempt.remaining_after,
            )
        )
        await self.session.commit()

    async def lock_account(
        self, user_id: str | None, customer_id: str | None
    ) -> CreditAccountData | None:
        """
        Lock account row for update (SELECT FOR UPDATE).

        Primary match: user id carried in event metadata.
        Fallback: the Stripe customer id stored on the account.
        """
        if user_id:
            account = await self._lock_by(CreditAccount.user_id == user_id)
            if account is not None:
                return _row_to_domain(account)
        if customer_id:
            account = await self._lock_by(CreditAccount.stripe_customer_id == customer_id)
            if account is not None:
                return _row_to_domain(account)
        return None

    async def save(self, account: CreditAccountData) -> CreditAccountData:
        """
        Write the full account state and commit.

        Follows the write-verification pattern: flush, re-select, compare.
        The re-select bypasses the identity map so it sees the flushed row.
        """
        row = await self.session.get(CreditAccount, account.user_id)
        if row is None:
            raise AccountNotFoundError(account.user_id)

        row.plan_tier = account.plan_tier.value
        row.allowance_total = account.allowance_total
        row.bonus_credits = account.bonus_credits
        row.used_credits = account.used_credits
        row.period_start = account.period_start
        row.period_end = account.period_end
        row.billing_interval = account.billing_interval.value if account.billing_interval else None
        row.stripe_customer_id = account.stripe_customer_id
        row.stripe_subscription_id = account.stripe_subscription_id
        pending = account.pending_plan_change
        row.pending_plan = pending.to_plan.value if pending else None
        row.pending_plan_effective_at = pending.effective_at if pending else None
        await self.session.flush()

        verified = await self.session.get(
            CreditAccount, account.user_id, populate_existing=True
        )
        if verified is None:
            raise WriteVerificationError(f"Credit account {account.user_id} disappeared")
        if verified.plan_tier != account.plan_tier.value:
            raise DataIntegrityError(
                f"Plan mismatch: expected {account.plan_tier.value}, got {verified.plan_tier}"
            )
        if verified.used_credits != account.used_credits:
            raise DataIntegrityError(
                f"Used credits mismatch: expected {account.used_credits}, "
                f"got {verified.used_credits}"
            )

        saved = _row_to_domain(verified)
        await self.session.commit()
        return saved

    async def release(self) -> None:
        await self.session.rollback()

    async def set_customer_id(self, user_id: str, customer_id: str) -> None:
        await self.session.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(stripe_customer_id=customer_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def add_bonus_credits(
        self, user_id: str, credits: int, payment_reference: str
    ) -> CreditAccountData | None:
        """
        Add top-up credits, idempotent per payment reference.

        The top-up row and the balance change share one transaction; the
        unique payment_reference turns a redelivered event into an
        IntegrityError, which is reported as a duplicate.
        """
        self.session.add(
            CreditTopUp(user_id=user_id, credits=credits, payment_reference=payment_reference)
        )
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            return None

        result = await self.session.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(bonus_credits=CreditAccount.bonus_credits + credits)
            .returning(*_ACCOUNT_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await self.session.rollback()
            raise AccountNotFoundError(user_id)

        await self.session.commit()
        return _row_to_domain(row)

    async def rollover_expired(
        self, now: datetime, period_end: datetime, allowances: PlanAllowances
    ) -> int:
        result = await self.session.execute(
            update(CreditAccount)
            .where(_expired(now))
            .values(**_rollover_values(now, period_end, allowances))
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount or 0

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _lock_by(self, criterion: Any) -> CreditAccount | None:
        result = await self.session.execute(
            select(CreditAccount).where(criterion).with_for_update()
        )
        return result.scalar_one_or_none()
