"""credit accounts

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit ledger schema."""

    # ========================================================================
    # Create credit_accounts table
    # ========================================================================
    op.create_table(
        'credit_accounts',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('plan_tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('billing_interval', sa.String(20), nullable=True),
        sa.Column('allowance_total', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('bonus_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('used_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pending_plan', sa.String(20), nullable=True),
        sa.Column('pending_plan_effective_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('allowance_total >= 0', name='ck_allowance_non_negative'),
        sa.CheckConstraint('bonus_credits >= 0', name='ck_bonus_non_negative'),
        sa.CheckConstraint('used_credits >= 0', name='ck_used_non_negative'),
        sa.CheckConstraint("plan_tier IN ('free', 'basic', 'pro')", name='ck_plan_tier'),
        sa.CheckConstraint(
            "pending_plan IS NULL OR pending_plan IN ('free', 'basic', 'pro')",
            name='ck_pending_plan',
        ),
        sa.UniqueConstraint('stripe_customer_id', name='uq_credit_accounts_stripe_customer'),
    )

    op.create_index('idx_credit_accounts_period_end', 'credit_accounts', ['period_end'])
    op.create_index(
        'idx_credit_accounts_subscription',
        'credit_accounts',
        ['stripe_subscription_id'],
        postgresql_where=sa.text('stripe_subscription_id IS NOT NULL'),
    )

    # ========================================================================
    # Create credit_charge_attempts table (audit log)
    # ========================================================================
    op.create_table(
        'credit_charge_attempts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('action_kind', sa.String(64), nullable=False),
        sa.Column('model_ids', ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('cost', sa.Integer(), nullable=False),
        sa.Column('accepted', sa.Boolean(), nullable=False),
        sa.Column('used_before', sa.BigInteger(), nullable=False),
        sa.Column('used_after', sa.BigInteger(), nullable=False),
        sa.Column('remaining_before', sa.BigInteger(), nullable=False),
        sa.Column('remaining_after', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('cost > 0', name='ck_attempt_cost_positive'),
    )

    op.create_index('idx_charge_attempts_user_created', 'credit_charge_attempts', ['user_id', 'created_at'])
    op.create_index(
        'idx_charge_attempts_created_at',
        'credit_charge_attempts',
        ['created_at'],
        postgresql_using='brin',
    )

    # ========================================================================
    # Create credit_top_ups table
    # ========================================================================
    op.create_table(
        'credit_top_ups',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('credits', sa.BigInteger(), nullable=False),
        sa.Column('payment_reference', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('credits > 0', name='ck_top_up_credits_positive'),
        sa.UniqueConstraint('payment_reference', name='uq_credit_top_ups_payment_reference'),
    )

    op.create_index('idx_credit_top_ups_user_id', 'credit_top_ups', ['user_id'])


def downgrade() -> None:
    """Drop credit ledger schema."""
    op.drop_table('credit_top_ups')
    op.drop_table('credit_charge_attempts')
    op.drop_table('credit_accounts')
