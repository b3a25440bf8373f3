"""initial entitlements schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, payments and fraud_records."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('username', sa.String(50), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('external_ref', sa.String(255), nullable=True),
        sa.Column('free_credits', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('premium_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_uses', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('free_credits >= 0', name='ck_users_free_credits_non_negative'),
        sa.CheckConstraint('total_uses >= 0', name='ck_users_total_uses_non_negative'),
        sa.CheckConstraint("tier IN ('free', 'premium')", name='ck_users_tier'),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sa.UniqueConstraint('username', name='uq_users_username'),
    )

    op.create_index('idx_users_tier_premium_until', 'users', ['tier', 'premium_until'])

    # ========================================================================
    # Create payments table
    # ========================================================================
    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='BRL'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_code', sa.String(512), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirmed_by', sa.String(20), nullable=True),
        sa.Column('premium_activated_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint('amount_minor > 0', name='ck_payments_amount_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'expired')", name='ck_payments_status'
        ),
    )

    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('idx_payments_status_created_at', 'payments', ['status', 'created_at'])

    # ========================================================================
    # Create fraud_records table
    # ========================================================================
    op.create_table(
        'fraud_records',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('ip', sa.String(64), nullable=False),
        sa.Column('fingerprint', sa.String(64), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_index('idx_fraud_records_ip_created_at', 'fraud_records', ['ip', 'created_at'])
    op.create_index('idx_fraud_records_fingerprint', 'fraud_records', ['fingerprint'])
    op.create_index('idx_fraud_records_email', 'fraud_records', ['email'])
    op.create_index('idx_fraud_records_created_at', 'fraud_records', ['created_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('fraud_records')
    op.drop_table('payments')
    op.drop_table('users')
