"""
Credit Ledger Gate - Atomic check-and-deduct before any AI action runs.

Flow per evaluation:
1. Load (or lazily create) the user's credit account
2. Roll the period over if it has elapsed
3. Price the action with the cost estimator
4. Deduct with a single conditional update, or reject without mutation
5. Write an audit row and a structured log record either way

A rejection is a normal outcome (ChargeRejected), not an exception.
require() converts it to CreditsExhaustedError for the route layer.
"""

import calendar
import time
from collections.abc import Callable
from datetime import UTC, datetime

from structlog import get_logger

from mycelia_billing.exceptions import CreditsExhaustedError, PlanNotPermittedError
from mycelia_billing.models.api import IMAGE_ACTIONS, PlanTier
from mycelia_billing.models.domain import (
    ActionCostRequest,
    ChargeAccepted,
    ChargeAttempt,
    ChargeRejected,
    CreditAccountData,
    GateOutcome,
    PlanAllowances,
    parse_action_kind,
)
from mycelia_billing.observability.metrics import metrics
from mycelia_billing.observability.tracing import add_span_attributes, get_tracer, set_span_error
from mycelia_billing.services.cost_estimator import CostEstimator
from mycelia_billing.services.credit_store import CreditAccountStore

logger = get_logger(__name__)
tracer = get_tracer(__name__)

Clock = Callable[[], datetime]

# Plans allowed to run image actions
IMAGE_PLANS: tuple[PlanTier, ...] = (PlanTier.BASIC, PlanTier.PRO)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def add_months(start: datetime, months: int) -> datetime:
    """Same day-of-month `months` later, clamped to the last day (Jan 31 + 1 = Feb 28/29)."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class CreditLedgerGate:
    """
    Per-user rolling credit allowance.

    Race safety comes from the store: try_consume and rollover_if_expired
    are single conditional updates, so no in-process locking is needed.
    """

    def __init__(
        self,
        store: CreditAccountStore,
        estimator: CostEstimator,
        allowances: PlanAllowances,
        period_months: int = 1,
        clock: Clock = _utc_now,
    ) -> None:
        """Initialize gate with its store, estimator and plan table."""
        self.store = store
        self.estimator = estimator
        self.allowances = allowances
        self.period_months = period_months
        self.clock = clock

    def next_period_end(self, start: datetime) -> datetime:
        return add_months(start, self.period_months)

    async def get_account(self, user_id: str) -> CreditAccountData:
        """
        Current account state with lazy rollover applied.

        Creates a free-tier account with zero usage on first sight.
        """
        now = self.clock()
        account = await self.store.get_or_create(
            user_id,
            allowance=self.allowances.free,
            period_start=now,
            period_end=self.next_period_end(now),
        )
        if not account.is_period_expired(now):
            return account

        rolled = await self.store.rollover_if_expired(
            user_id, now, self.next_period_end(now), self.allowances
        )
        if rolled is None:
            # A concurrent evaluation rolled the period over first
            return await self.store.get(user_id) or account

        metrics.period_rollovers_total.inc()
        logger.info(
            "credit_period_rolled_over",
            user_id=user_id,
            plan_tier=rolled.plan_tier.value,
            allowance_total=rolled.allowance_total,
            bonus_credits=rolled.bonus_credits,
            previous_used=account.used_credits,
            period_end=rolled.period_end.isoformat() if rolled.period_end else None,
        )
        return rolled

    async def ensure_plan_permits(self, user_id: str, action_kind: str) -> None:
        """
        Restrict image actions to paid plans.

        Raises:
            PlanNotPermittedError: action needs a plan the user does not have
        """
        if parse_action_kind(action_kind) not in IMAGE_ACTIONS:
            return
        account = await self.get_account(user_id)
        if account.plan_tier not in IMAGE_PLANS:
            logger.info(
                "credit_plan_forbidden",
                user_id=user_id,
                action_kind=action_kind,
                plan_tier=account.plan_tier.value,
            )
            raise PlanNotPermittedError(account.plan_tier, list(IMAGE_PLANS))

    async def charge(self, user_id: str, request: ActionCostRequest) -> GateOutcome:
        """
        Price the action and deduct it if allowance plus bonus covers it.

        Returns ChargeAccepted with the post-charge balance, or
        ChargeRejected with the unchanged balance and the required cost.
        """
        started = time.perf_counter()
        with tracer.start_as_current_span("credit_gate.charge") as span:
            add_span_attributes(span, user_id=user_id, action_kind=request.action_kind)
            try:
                account = await self.get_account(user_id)
                cost = self.estimator.estimate(request)
                model_ids = tuple(d.id for d in self.estimator.pricing_models(request))

                consumed = await self.store.try_consume(user_id, cost)
                if consumed is None:
                    latest = await self.store.get(user_id) or account
                    outcome: GateOutcome = self._rejected(user_id, request, model_ids, cost, latest)
                    attempt = ChargeAttempt(
                        user_id=user_id,
                        action_kind=request.action_kind,
                        model_ids=model_ids,
                        cost=cost,
                        accepted=False,
                        used_before=latest.used_credits,
                        used_after=latest.used_credits,
                        remaining_before=latest.credits_remaining,
                        remaining_after=latest.credits_remaining,
                    )
                else:
                    outcome = self._accepted(user_id, request, model_ids, cost, consumed)
                    used_before = consumed.used_credits - cost
                    attempt = ChargeAttempt(
                        user_id=user_id,
                        action_kind=request.action_kind,
                        model_ids=model_ids,
                        cost=cost,
                        accepted=True,
                        used_before=used_before,
                        used_after=consumed.used_credits,
                        remaining_before=max(consumed.credits_available - used_before, 0),
                        remaining_after=consumed.credits_remaining,
                    )

                await self.store.record_charge_attempt(attempt)
            except Exception as exc:
                set_span_error(span, exc)
                metrics.record_error(type(exc).__name__, "credit_gate.charge")
                raise

            add_span_attributes(
                span, cost=cost, accepted=outcome.accepted, remaining=outcome.credits_remaining
            )

        self._log_attempt(attempt, outcome)
        metrics.record_charge(
            request.action_kind, outcome.accepted, cost, time.perf_counter() - started
        )
        return outcome

    async def require(self, user_id: str, request: ActionCostRequest) -> ChargeAccepted:
        """
        Charge, raising on rejection.

        Raises:
            CreditsExhaustedError: allowance plus bonus cannot cover the action
        """
        outcome = await self.charge(user_id, request)
        if isinstance(outcome, ChargeRejected):
            raise CreditsExhaustedError(
                user_id=user_id,
                credits_required=outcome.credits_required,
                credits_remaining=outcome.credits_remaining,
                credits_total=outcome.credits_total,
                credits_bonus=outcome.credits_bonus,
                period_end=outcome.period_end,
            )
        return outcome

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _accepted(
        self,
        user_id: str,
        request: ActionCostRequest,
        model_ids: tuple[str, ...],
        cost: int,
        account: CreditAccountData,
    ) -> ChargeAccepted:
        return ChargeAccepted(
            user_id=user_id,
            action_kind=request.action_kind,
            model_ids=model_ids,
            charged_credits=cost,
            credits_remaining=account.credits_remaining,
            credits_total=account.allowance_total,
            credits_bonus=account.bonus_credits,
            period_end=account.period_end or self.next_period_end(self.clock()),
        )

    def _rejected(
        self,
        user_id: str,
        request: ActionCostRequest,
        model_ids: tuple[str, ...],
        cost: int,
        account: CreditAccountData,
    ) -> ChargeRejected:
        return ChargeRejected(
            user_id=user_id,
            action_kind=request.action_kind,
            model_ids=model_ids,
            credits_required=cost,
            credits_remaining=account.credits_remaining,
            credits_total=account.allowance_total,
            credits_bonus=account.bonus_credits,
            period_end=account.period_end or self.next_period_end(self.clock()),
        )

    def _log_attempt(self, attempt: ChargeAttempt, outcome: GateOutcome) -> None:
        event = "credit_charge_accepted" if attempt.accepted else "credit_charge_rejected"
        logger.info(
            event,
            user_id=attempt.user_id,
            action_kind=attempt.action_kind,
            model_ids=list(attempt.model_ids),
            cost=attempt.cost,
            used_before=attempt.used_before,
            used_after=attempt.used_after,
            remaining_before=attempt.remaining_before,
            remaining_after=attempt.remaining_after,
            credits_total=outcome.credits_total,
            credits_bonus=outcome.credits_bonus,
            period_end=outcome.period_end.isoformat(),
        )


async def rollover_expired_accounts(
    store: CreditAccountStore,
    allowances: PlanAllowances,
    period_months: int = 1,
    clock: Clock = _utc_now,
) -> int:
    """
    Bulk rollover for every account whose period has elapsed.

    Lazy rollover in the gate stays authoritative; this keeps idle accounts
    and balance views current. Returns the number of accounts rolled over.
    """
    now = clock()
    count = await store.rollover_expired(now, add_months(now, period_months), allowances)
    if count:
        metrics.period_rollovers_total.inc(count)
    logger.info("credit_sweep_completed", rolled_over=count, swept_at=now.isoformat())
    return count
