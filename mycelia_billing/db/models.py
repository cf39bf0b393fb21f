"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class CreditAccount(Base):
    """
    ORM model for credit_accounts table.

    One row per user. Holds the rolling-period allowance, bonus credits
    from top-ups, usage, and the subscription state mirrored from Stripe.
    """

    __tablename__ = "credit_accounts"

    # Primary Key - the identity provider's user id
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Plan
    plan_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    billing_interval: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Credits
    allowance_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bonus_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    used_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Rolling window
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Scheduled plan change (cancel at period end, scheduled downgrade)
    pending_plan: Mapped[str | None] = mapped_column(String(20), nullable=True)
    pending_plan_effective_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Stripe references
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("allowance_total >= 0", name="ck_allowance_non_negative"),
        CheckConstraint("bonus_credits >= 0", name="ck_bonus_non_negative"),
        CheckConstraint("used_credits >= 0", name="ck_used_non_negative"),
        CheckConstraint("plan_tier IN ('free', 'basic', 'pro')", name="ck_plan_tier"),
        CheckConstraint(
            "pending_plan IS NULL OR pending_plan IN ('free', 'basic', 'pro')",
            name="ck_pending_plan",
        ),
        Index("idx_credit_accounts_period_end", "period_end"),
        Index(
            "idx_credit_accounts_subscription",
            "stripe_subscription_id",
            postgresql_where=(stripe_subscription_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditAccount(user_id={self.user_id}, plan={self.plan_tier}, "
            f"used={self.used_credits}/{self.allowance_total}+{self.bonus_credits})>"
        )


class CreditChargeAttempt(Base):
    """
    ORM model for credit_charge_attempts table.

    Immutable audit log of every gate evaluation, accepted or rejected.
    """

    __tablename__ = "credit_charge_attempts"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    model_ids: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, default=list)

    cost: Mapped[int] = mapped_column(Integer, nullable=False)
    accepted: Mapped[bool] = mapped_column(Boolean, nullable=False)

    # Snapshots (denormalized for auditing)
    used_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    used_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    remaining_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    remaining_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("cost > 0", name="ck_attempt_cost_positive"),
        Index("idx_charge_attempts_user_created", "user_id", "created_at"),
        Index("idx_charge_attempts_created_at", "created_at", postgresql_using="brin"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditChargeAttempt(user_id={self.user_id}, action={self.action_kind}, "
            f"cost={self.cost}, accepted={self.accepted})>"
        )


class CreditTopUp(Base):
    """
    ORM model for credit_top_ups table.

    One row per completed credit-pack payment. The unique payment reference
    makes top-ups idempotent under webhook redelivery.
    """

    __tablename__ = "credit_top_ups"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (CheckConstraint("credits > 0", name="ck_top_up_credits_positive"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTopUp(user_id={self.user_id}, credits={self.credits}, "
            f"ref={self.payment_reference})>"
        )
