"""Billing and identity schema

Revision ID: 0001_billing_schema
Revises:
Create Date: 2026-10-19

Creates the tables the webhook and subscription handlers write to:
profiles, storage_locations, subscriptions, payment_history and
stripe_webhooks_log. Profile ids are Clerk user ids (text), not UUIDs.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_billing_schema'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'profiles',
        sa.Column('id', sa.Text, primary_key=True),
        sa.Column('email', sa.Text, nullable=True),
        sa.Column('full_name', sa.Text),
        sa.Column('avatar_url', sa.Text),
        sa.Column('subscription_tier', sa.String(32), server_default='basic', nullable=False),
        sa.Column('subscription_status', sa.String(32), server_default='active', nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), index=True),
        sa.Column('onboarding_completed', sa.Boolean, server_default='false', nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('email', name='profiles_email_unique'),
        # The legacy 'free' tier must never come back
        sa.CheckConstraint(
            "subscription_tier IN ('basic', 'premium', 'household_premium')",
            name='profiles_subscription_tier_check',
        ),
    )

    op.create_table(
        'storage_locations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Text, sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('name', sa.Text, nullable=False),
        sa.Column('icon', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Text, sa.ForeignKey('profiles.id'), nullable=False, index=True),
        sa.Column('stripe_customer_id', sa.String(255), index=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=False),
        sa.Column('stripe_price_id', sa.String(255)),
        sa.Column('plan_tier', sa.String(32), server_default='premium', nullable=False),
        sa.Column('billing_interval', sa.String(16), server_default='month', nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),
        sa.Column('cancel_at_period_end', sa.Boolean, server_default='false', nullable=False),
        sa.Column('canceled_at', sa.DateTime(timezone=True)),
        sa.Column('trial_end', sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint('stripe_subscription_id', name='subscriptions_stripe_subscription_id_key'),
        sa.CheckConstraint(
            "plan_tier IN ('premium', 'household_premium')",
            name='subscriptions_plan_tier_check',
        ),
        sa.CheckConstraint(
            "billing_interval IN ('month', 'year')",
            name='subscriptions_billing_interval_check',
        ),
    )
    op.create_index(
        'ix_subscriptions_user_status_created',
        'subscriptions',
        ['user_id', 'status', 'created_at'],
    )

    op.create_table(
        'payment_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Text, sa.ForeignKey('profiles.id'), nullable=False, index=True),
        sa.Column('stripe_payment_intent_id', sa.String(255), nullable=False),
        sa.Column('stripe_invoice_id', sa.String(255)),
        sa.Column('stripe_charge_id', sa.String(255)),
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column('currency', sa.String(3)),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('receipt_url', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('stripe_payment_intent_id', name='payment_history_stripe_payment_intent_id_key'),
        sa.CheckConstraint("status IN ('succeeded', 'failed')", name='payment_history_status_check'),
    )

    op.create_table(
        'stripe_webhooks_log',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('payload', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('processed', sa.Boolean, server_default='false', nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('error', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('event_id', name='stripe_webhooks_log_event_id_key'),
    )
    # Index for cleanup queries (delete events older than X days)
    op.create_index(
        'ix_stripe_webhooks_log_created_at',
        'stripe_webhooks_log',
        ['created_at'],
    )

    # Enable RLS; the backend uses the service role, clients read their own rows
    for table in ('profiles', 'storage_locations', 'subscriptions', 'payment_history', 'stripe_webhooks_log'):
        op.execute(f'ALTER TABLE {table} ENABLE ROW LEVEL SECURITY')
        op.execute(f"""
            CREATE POLICY "Service role manages {table}"
            ON {table} FOR ALL
            TO service_role
            USING (true)
            WITH CHECK (true)
        """)

    # Clerk user id arrives as the JWT subject
    op.execute("""
        CREATE POLICY "Users can view own profile"
        ON profiles FOR SELECT
        TO authenticated
        USING (id = auth.jwt() ->> 'sub')
    """)
    for table in ('storage_locations', 'subscriptions', 'payment_history'):
        op.execute(f"""
            CREATE POLICY "Users can view own {table}"
            ON {table} FOR SELECT
            TO authenticated
            USING (user_id = auth.jwt() ->> 'sub')
        """)


def downgrade() -> None:
    op.drop_index('ix_stripe_webhooks_log_created_at', table_name='stripe_webhooks_log')
    op.drop_table('stripe_webhooks_log')
    op.drop_table('payment_history')
    op.drop_index('ix_subscriptions_user_status_created', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('storage_locations')
    op.drop_table('profiles')
