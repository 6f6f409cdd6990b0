"""minutes_billing_schema

Revision ID: 3f1c9a7d2e10
Revises:
Create Date: 2026-10-16 10:12:41.517203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2e10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('telegram_id', sa.BigInteger(), nullable=True),
        sa.Column('role', sa.String(), nullable=False, server_default='user'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('telegram_id'),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_account_id', 'users', ['account_id'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'admin_action_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('admin_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_admin_action_logs_id', 'admin_action_logs', ['id'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False, unique=True),
        sa.Column('display_name', sa.String(), nullable=False),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('minutes_per_cycle', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False),
    )
    op.create_index('ix_subscription_plans_id', 'subscription_plans', ['id'])

    op.create_table(
        'minute_packages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False, unique=True),
        sa.Column('display_name', sa.String(), nullable=False),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('minutes', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False),
    )
    op.create_index('ix_minute_packages_id', 'minute_packages', ['id'])

    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('cycle_start', sa.DateTime(), nullable=False),
        sa.Column('cycle_end', sa.DateTime(), nullable=False),
        sa.Column('minutes_included', sa.Integer(), nullable=False),
        sa.Column('minutes_used', sa.Integer(), nullable=False),
        sa.Column('bonus_minutes', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('bonus_minutes >= 0', name='ck_user_subscriptions_bonus_non_negative'),
    )
    op.create_index('ix_user_subscriptions_id', 'user_subscriptions', ['id'])

    op.create_table(
        'minute_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('user_subscriptions.id'), nullable=True),
        sa.Column('source_ref_id', sa.String(), nullable=True),
        sa.Column('package_id', sa.Integer(), sa.ForeignKey('minute_packages.id'), nullable=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('minutes_delta', sa.Integer(), nullable=False),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('plan_minutes_after', sa.Integer(), nullable=False),
        sa.Column('bonus_minutes_after', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_minute_transactions_id', 'minute_transactions', ['id'])
    op.create_index('ix_minute_transactions_user_id', 'minute_transactions', ['user_id'])
    op.create_index('ix_minute_transactions_source_ref_id', 'minute_transactions', ['source_ref_id'])
    op.create_index('ix_minute_transactions_created_at', 'minute_transactions', ['created_at'])

    op.create_table(
        'usage_charges',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('source_ref_id', sa.String(), nullable=False, unique=True),
        sa.Column('minutes_charged', sa.Integer(), nullable=False),
        sa.Column('refunded', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_usage_charges_id', 'usage_charges', ['id'])
    op.create_index('ix_usage_charges_user_id', 'usage_charges', ['user_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('subscription_plans.id'), nullable=True),
        sa.Column('package_id', sa.Integer(), sa.ForeignKey('minute_packages.id'), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('provider_tx_id', sa.String(), nullable=True),
        sa.Column('provider_response', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payments_id', 'payments', ['id'])
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index(
        'uq_payments_pending_plan', 'payments', ['user_id', 'plan_id'], unique=True,
        postgresql_where=sa.text("status = 'pending' AND plan_id IS NOT NULL"),
        sqlite_where=sa.text("status = 'pending' AND plan_id IS NOT NULL"),
    )
    op.create_index(
        'uq_payments_pending_package', 'payments', ['user_id', 'package_id'], unique=True,
        postgresql_where=sa.text("status = 'pending' AND package_id IS NOT NULL"),
        sqlite_where=sa.text("status = 'pending' AND package_id IS NOT NULL"),
    )

    op.create_table(
        'payme_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=False),
        sa.Column('time', sa.BigInteger(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('state', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Integer(), nullable=True),
        sa.Column('create_time', sa.BigInteger(), nullable=False),
        sa.Column('perform_time', sa.BigInteger(), nullable=False),
        sa.Column('cancel_time', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payme_transactions_id', 'payme_transactions', ['id'])
    op.create_index('ix_payme_transactions_external_id', 'payme_transactions', ['external_id'], unique=True)
    op.create_index('ix_payme_transactions_payment_id', 'payme_transactions', ['payment_id'])
    op.create_index('ix_payme_transactions_time', 'payme_transactions', ['time'])
    op.create_index(
        'uq_payme_transactions_created_payment', 'payme_transactions', ['payment_id'], unique=True,
        postgresql_where=sa.text('state = 1'),
        sqlite_where=sa.text('state = 1'),
    )


def downgrade() -> None:
    op.drop_table('payme_transactions')
    op.drop_table('payments')
    op.drop_table('usage_charges')
    op.drop_table('minute_transactions')
    op.drop_table('user_subscriptions')
    op.drop_table('minute_packages')
    op.drop_table('subscription_plans')
    op.drop_table('admin_action_logs')
    op.drop_table('users')
