"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, credit_transactions and processed_webhook_events."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('identity_provider_id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('subscription_status', sa.String(20), nullable=False, server_default='free'),
        sa.Column('subscription_plan', sa.String(50), nullable=True),
        sa.Column('monthly_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('bonus_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('credits_reset_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('monthly_credits >= 0', name='ck_monthly_credits_non_negative'),
        sa.CheckConstraint('bonus_credits >= 0', name='ck_bonus_credits_non_negative'),
        sa.CheckConstraint(
            "subscription_status IN ('free', 'trialing', 'active', 'canceled', 'past_due')",
            name='ck_subscription_status',
        ),
        sa.UniqueConstraint('identity_provider_id', name='uq_users_identity_provider_id'),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sa.UniqueConstraint('stripe_customer_id', name='uq_users_stripe_customer_id'),
        sa.UniqueConstraint('stripe_subscription_id', name='uq_users_stripe_subscription_id'),
    )

    op.create_index('idx_users_subscription_status', 'users', ['subscription_status'])

    # ========================================================================
    # Create credit_transactions table (append-only)
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('external_reference', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount <> 0', name='ck_transaction_amount_non_zero'),
        sa.CheckConstraint(
            "type IN ('search_usage', 'report_generation', 'monthly_reset', "
            "'overage_purchase', 'admin_adjustment')",
            name='ck_transaction_type',
        ),
        sa.UniqueConstraint('external_reference', name='uq_credit_transactions_external_reference'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_credit_transactions_user', ondelete='CASCADE'),
    )

    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])
    op.create_index('idx_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'])

    # ========================================================================
    # Create processed_webhook_events table
    # ========================================================================
    op.create_table(
        'processed_webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('processed_webhook_events')
    op.drop_index('idx_credit_transactions_user_created', table_name='credit_transactions')
    op.drop_index('ix_credit_transactions_user_id', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_index('idx_users_subscription_status', table_name='users')
    op.drop_table('users')
