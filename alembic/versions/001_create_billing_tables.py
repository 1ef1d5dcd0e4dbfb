"""Create payment, subscription and billing tables

Revision ID: 001_create_billing_tables
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_billing_tables'
down_revision = None
branch_labels = None
depends_on = None

LIVE_STATUS_FILTER = sa.text("status IN ('active', 'past_due', 'charging')")


def upgrade() -> None:
    # One-time checkout ledger
    op.create_table('pending_payments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('transaction_reference', sa.String(), nullable=False),
        sa.Column('gig_id', sa.String(), nullable=False),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('service_type', sa.String(), nullable=False),
        sa.Column('frequency_per_week', sa.Integer(), nullable=False),
        sa.Column('base_price', sa.Numeric(14, 2), nullable=False),
        sa.Column('order_fee', sa.Numeric(14, 2), nullable=False),
        sa.Column('service_charge', sa.Numeric(14, 2), nullable=False),
        sa.Column('gateway_fee', sa.Numeric(14, 2), nullable=False),
        sa.Column('total_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('redirect_url', sa.String(), nullable=True),
        sa.Column('payment_link', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('gateway_transaction_id', sa.String(), nullable=True),
        sa.Column('client_order_id', sa.String(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_pending_payments_transaction_reference', 'pending_payments', ['transaction_reference'], unique=True)
    op.create_index('ix_pending_payments_client_id', 'pending_payments', ['client_id'])
    op.create_index('ix_pending_payments_gig_id', 'pending_payments', ['gig_id'])
    op.create_index('ix_pending_payments_status', 'pending_payments', ['status'])
    op.create_index('ix_pending_payments_gateway_transaction_id', 'pending_payments', ['gateway_transaction_id'])

    # Recurring subscriptions
    op.create_table('subscriptions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('caregiver_id', sa.String(), nullable=False),
        sa.Column('gig_id', sa.String(), nullable=False),
        sa.Column('original_order_id', sa.String(), nullable=False),
        sa.Column('contract_id', sa.String(), nullable=True),
        sa.Column('billing_cycle', sa.String(), nullable=False),
        sa.Column('frequency_per_week', sa.Integer(), nullable=False),
        sa.Column('price_per_visit', sa.Numeric(14, 2), nullable=False),
        sa.Column('recurring_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('price_breakdown', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('auto_renew', sa.Boolean(), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('next_charge_date', sa.DateTime(), nullable=True),
        sa.Column('billing_cycles_completed', sa.Integer(), nullable=False),
        sa.Column('failed_charge_attempts', sa.Integer(), nullable=False),
        sa.Column('max_retry_attempts', sa.Integer(), nullable=False),
        sa.Column('last_charge_error', sa.String(), nullable=True),
        sa.Column('last_charge_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('charge_reference', sa.String(), nullable=True),
        sa.Column('charge_started_at', sa.DateTime(), nullable=True),
        sa.Column('unresolved_charge_reference', sa.String(), nullable=True),
        sa.Column('payment_token', sa.String(), nullable=True),
        sa.Column('card_last_four', sa.String(), nullable=True),
        sa.Column('card_brand', sa.String(), nullable=True),
        sa.Column('card_expiry', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('pending_method_reference', sa.String(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False),
        sa.Column('cancellation_requested_at', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.String(), nullable=True),
        sa.Column('cancelled_by', sa.String(), nullable=True),
        sa.Column('terminated_at', sa.DateTime(), nullable=True),
        sa.Column('termination_reason', sa.String(), nullable=True),
        sa.Column('refund_amount', sa.Numeric(14, 2), nullable=True),
        sa.Column('refund_status', sa.String(), nullable=True),
        sa.Column('payment_history', sa.JSON(), nullable=False),
        sa.Column('plan_change_history', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_subscriptions_client_id', 'subscriptions', ['client_id'])
    op.create_index('ix_subscriptions_caregiver_id', 'subscriptions', ['caregiver_id'])
    op.create_index('ix_subscriptions_gig_id', 'subscriptions', ['gig_id'])
    op.create_index('ix_subscriptions_original_order_id', 'subscriptions', ['original_order_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_next_charge_date', 'subscriptions', ['next_charge_date'])
    # At most one live subscription per client and gig
    op.create_index(
        'uq_subscriptions_live_client_gig',
        'subscriptions',
        ['client_id', 'gig_id'],
        unique=True,
        sqlite_where=LIVE_STATUS_FILTER,
        postgresql_where=LIVE_STATUS_FILTER,
    )

    # Ledger export
    op.create_table('billing_records',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('order_id', sa.String(), nullable=True),
        sa.Column('subscription_id', sa.String(), nullable=True),
        sa.Column('contract_id', sa.String(), nullable=True),
        sa.Column('caregiver_id', sa.String(), nullable=True),
        sa.Column('client_id', sa.String(), nullable=False),
        sa.Column('gig_id', sa.String(), nullable=False),
        sa.Column('billing_cycle_number', sa.Integer(), nullable=False),
        sa.Column('service_type', sa.String(), nullable=False),
        sa.Column('frequency_per_week', sa.Integer(), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=True),
        sa.Column('period_end', sa.DateTime(), nullable=True),
        sa.Column('next_charge_date', sa.DateTime(), nullable=True),
        sa.Column('amount_paid', sa.Numeric(14, 2), nullable=False),
        sa.Column('order_fee', sa.Numeric(14, 2), nullable=False),
        sa.Column('service_charge', sa.Numeric(14, 2), nullable=False),
        sa.Column('gateway_fees', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(), nullable=False),
        sa.Column('payment_transaction_id', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_billing_records_order_id', 'billing_records', ['order_id'])
    op.create_index('ix_billing_records_subscription_id', 'billing_records', ['subscription_id'])
    op.create_index('ix_billing_records_client_id', 'billing_records', ['client_id'])

    op.create_table('notifications',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('recipient_id', sa.String(), nullable=False),
        sa.Column('recipient_role', sa.String(), nullable=False),
        sa.Column('notification_type', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('content', sa.String(), nullable=False),
        sa.Column('related_entity_id', sa.String(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_notifications_recipient_id', 'notifications', ['recipient_id'])
    op.create_index('ix_notifications_related_entity_id', 'notifications', ['related_entity_id'])


def downgrade() -> None:
    op.drop_index('ix_notifications_related_entity_id', 'notifications')
    op.drop_index('ix_notifications_recipient_id', 'notifications')
    op.drop_table('notifications')

    op.drop_index('ix_billing_records_client_id', 'billing_records')
    op.drop_index('ix_billing_records_subscription_id', 'billing_records')
    op.drop_index('ix_billing_records_order_id', 'billing_records')
    op.drop_table('billing_records')

    op.drop_index('uq_subscriptions_live_client_gig', 'subscriptions')
    op.drop_index('ix_subscriptions_next_charge_date', 'subscriptions')
    op.drop_index('ix_subscriptions_status', 'subscriptions')
    op.drop_index('ix_subscriptions_original_order_id', 'subscriptions')
    op.drop_index('ix_subscriptions_gig_id', 'subscriptions')
    op.drop_index('ix_subscriptions_caregiver_id', 'subscriptions')
    op.drop_index('ix_subscriptions_client_id', 'subscriptions')
    op.drop_table('subscriptions')

    op.drop_index('ix_pending_payments_gateway_transaction_id', 'pending_payments')
    op.drop_index('ix_pending_payments_status', 'pending_payments')
    op.drop_index('ix_pending_payments_gig_id', 'pending_payments')
    op.drop_index('ix_pending_payments_client_id', 'pending_payments')
    op.drop_index('ix_pending_payments_transaction_reference', 'pending_payments')
    op.drop_table('pending_payments')
