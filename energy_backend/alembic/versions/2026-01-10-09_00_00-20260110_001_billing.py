"""Add bill payment tables

Revision ID: 20260110_001_billing
Revises:
Create Date: 2026-01-10 09:00:00.000000

This migration adds the bill payment tables:
- bills: Electricity bills per service connection and month
- payments: Gateway payments, unique per Razorpay payment id
- webhook_events: Razorpay webhook idempotency log
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20260110_001_billing'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create bill payment tables."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = inspector.get_table_names()

    # -------------------------------------------------------------------------
    # 1. bills
    # -------------------------------------------------------------------------
    if 'bills' not in existing_tables:
        op.create_table(
            'bills',
            sa.Column('id', sa.String(length=36), nullable=False, comment='主键 id'),
            sa.Column('user_id', sa.String(length=64), nullable=False, comment='Owning user'),
            sa.Column('service_number', sa.String(length=64), nullable=False),
            sa.Column('bill_number', sa.String(length=64), nullable=False),
            sa.Column('bill_month', sa.String(length=7), nullable=False, comment='YYYY-MM'),
            sa.Column('bill_period_start', sa.Date(), nullable=False),
            sa.Column('bill_period_end', sa.Date(), nullable=False),
            sa.Column('due_date', sa.Date(), nullable=False),
            sa.Column('total_amount', sa.Numeric(precision=10, scale=2), nullable=False),

            # Meter readings
            sa.Column('previous_reading', sa.Numeric(precision=10, scale=2), nullable=True),
            sa.Column('current_reading', sa.Numeric(precision=10, scale=2), nullable=True),
            sa.Column('units_consumed', sa.Numeric(precision=10, scale=2), nullable=True, comment='kWh'),

            # Charge breakdown
            sa.Column('energy_charges', sa.Numeric(precision=10, scale=2), server_default='0.00', nullable=False),
            sa.Column('fixed_charges', sa.Numeric(precision=10, scale=2), server_default='0.00', nullable=False),
            sa.Column('tax_amount', sa.Numeric(precision=10, scale=2), server_default='0.00', nullable=False),
            sa.Column('other_charges', sa.Numeric(precision=10, scale=2), server_default='0.00', nullable=False),

            sa.Column('status', sa.String(length=20), server_default='unpaid', nullable=False),
            sa.Column('payment_id', sa.String(length=36), nullable=True, comment='Payment that settled this bill'),
            sa.Column('electricity_board', sa.String(length=128), nullable=True),
            sa.Column('tariff_category', sa.String(length=64), nullable=True),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('metadata', sa.JSON(), nullable=True),

            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),

            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('bill_number'),
            sa.UniqueConstraint('user_id', 'service_number', 'bill_month', name='uq_bills_user_service_month'),
            sa.CheckConstraint("status IN ('paid', 'unpaid', 'overdue', 'partial')", name='ck_bills_status'),
            sa.CheckConstraint('bill_period_start <= bill_period_end', name='ck_bills_period'),
            comment='Electricity bills',
        )

        op.create_index('ix_bills_id', 'bills', ['id'])
        op.create_index('ix_bills_user_id', 'bills', ['user_id'])
        op.create_index('ix_bills_bill_month', 'bills', ['bill_month'])
        op.create_index('ix_bills_due_date', 'bills', ['due_date'])
        op.create_index('ix_bills_status', 'bills', ['status'])
        op.create_index('ix_bills_payment_id', 'bills', ['payment_id'])

    # -------------------------------------------------------------------------
    # 2. payments
    # -------------------------------------------------------------------------
    if 'payments' not in existing_tables:
        op.create_table(
            'payments',
            sa.Column('id', sa.String(length=36), nullable=False, comment='主键 id'),
            sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=True),
            sa.Column('bill_id', sa.String(length=36), nullable=True),
            sa.Column('bill_number', sa.String(length=64), nullable=True),
            sa.Column('service_number', sa.String(length=64), nullable=True),
            sa.Column('bill_month', sa.String(length=7), nullable=True),
            sa.Column('currency', sa.String(length=3), server_default='INR', nullable=False),
            sa.Column('payment_date', sa.DateTime(timezone=True), nullable=False),
            sa.Column('status', sa.String(length=20), server_default='pending', nullable=False),
            sa.Column('payment_method', sa.String(length=32), server_default='online', nullable=False),

            # Razorpay references
            sa.Column('transaction_id', sa.String(length=255), nullable=True),
            sa.Column('razorpay_order_id', sa.String(length=255), nullable=True),
            sa.Column('razorpay_payment_id', sa.String(length=255), nullable=True),
            sa.Column('razorpay_signature', sa.String(length=255), nullable=True),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('metadata', sa.JSON(), nullable=True),

            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),

            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['bill_id'], ['bills.id'], ondelete='SET NULL'),
            sa.UniqueConstraint('razorpay_payment_id'),
            sa.CheckConstraint(
                "status IN ('success', 'failed', 'pending', 'refunded')", name='ck_payments_status'
            ),
            comment='Bill payments',
        )

        op.create_index('ix_payments_id', 'payments', ['id'])
        op.create_index('ix_payments_user_id', 'payments', ['user_id'])
        op.create_index('ix_payments_bill_id', 'payments', ['bill_id'])
        op.create_index('ix_payments_payment_date', 'payments', ['payment_date'])
        op.create_index('ix_payments_status', 'payments', ['status'])
        op.create_index('ix_payments_razorpay_order_id', 'payments', ['razorpay_order_id'])

    # -------------------------------------------------------------------------
    # 3. webhook_events
    # -------------------------------------------------------------------------
    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.String(length=255), nullable=False, comment='Gateway event id or body digest'),
            sa.Column('event_type', sa.String(length=64), nullable=False),
            sa.Column('status', sa.String(length=20), server_default='processing', nullable=False),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('attempts', sa.Integer(), server_default='1', nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            comment='Razorpay webhook 事件日志',
        )

        op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])


def downgrade() -> None:
    """Drop bill payment tables."""
    op.drop_table('webhook_events')
    op.drop_table('payments')
    op.drop_table('bills')
