"""create usage_records and processed_webhook_events

Revision ID: 0001_usage_tables
Revises: 
Create Date: 2026-01-10

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_usage_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'usage_records',
        sa.Column('user_id', sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column('free_captions_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subscription_status', sa.String(32), nullable=False, server_default='inactive'),
        sa.Column('plan_id', sa.String(255), nullable=True),
        sa.Column('billing_cycle', sa.String(16), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_method_id', sa.String(255), nullable=True),
        sa.Column('external_subscription_id', sa.String(255), nullable=True),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.CheckConstraint('free_captions_used >= 0', name='ck_usage_records_captions_non_negative'),
    )
    op.create_index('ix_usage_records_subscription_status', 'usage_records', ['subscription_status'])
    op.create_index('ix_usage_records_next_billing_date', 'usage_records', ['next_billing_date'])
    op.create_index(
        'ix_usage_records_external_subscription_id',
        'usage_records',
        ['external_subscription_id'],
    )

    op.create_table(
        'processed_webhook_events',
        sa.Column('event_key', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column(
            'processed_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
    )
    # Index for cleanup queries (delete events older than X days)
    op.create_index(
        'ix_processed_webhook_events_processed_at',
        'processed_webhook_events',
        ['processed_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_processed_webhook_events_processed_at', table_name='processed_webhook_events')
    op.drop_table('processed_webhook_events')
    op.drop_index('ix_usage_records_external_subscription_id', table_name='usage_records')
    op.drop_index('ix_usage_records_next_billing_date', table_name='usage_records')
    op.drop_index('ix_usage_records_subscription_status', table_name='usage_records')
    op.drop_table('usage_records')
