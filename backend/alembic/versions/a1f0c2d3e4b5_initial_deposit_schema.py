"""initial deposit schema

Revision ID: a1f0c2d3e4b5
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = 'a1f0c2d3e4b5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('username', sa.String(64), nullable=True),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('role', sa.Enum('user', 'admin', name='userrole'), nullable=False),
        sa.Column('affiliate', sa.String(128), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'currencies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('symbol', sa.String(20), nullable=False),
        sa.Column('name', sa.String(64), nullable=True),
        sa.Column('blockchain', sa.String(20), nullable=False),
        sa.Column('contract_address', sa.String(64), nullable=True),
        sa.Column('decimals', sa.Integer(), nullable=False),
        sa.Column('is_native', sa.Boolean(), nullable=False),
        sa.Column('deposit', sa.Boolean(), nullable=False),
        sa.Column('withdrawal', sa.Boolean(), nullable=False),
        sa.Column('status', sa.Boolean(), nullable=False),
    )

    op.create_table(
        'bonuses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(100), nullable=False),
        sa.Column('amount_type', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(20, 2), nullable=False),
        sa.Column('up_to_amount', sa.Numeric(20, 2), nullable=True),
        sa.Column('deposit_amount_from', sa.Numeric(20, 2), nullable=False),
        sa.Column('deposit_amount_to', sa.Numeric(20, 2), nullable=True),
        sa.Column('spend_amount', sa.Numeric(20, 2), nullable=False),
        sa.Column('wager', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.Boolean(), nullable=False),
    )

    op.create_table(
        'balances',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('currency_id', sa.Integer(), sa.ForeignKey('currencies.id'), nullable=False),
        sa.Column('balance', sa.Numeric(20, 2), nullable=False),
        sa.Column('bonus', sa.Numeric(20, 2), nullable=False),
        sa.Column('status', sa.Boolean(), nullable=False),
        sa.UniqueConstraint('user_id', 'currency_id', name='uq_balances_user_currency'),
    )
    op.create_index('ix_balances_user_id', 'balances', ['user_id'])

    op.create_table(
        'deposit_addresses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('blockchain', sa.String(20), nullable=False),
        sa.Column('index', sa.Integer(), nullable=False),
        sa.Column('address', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'blockchain', name='uq_deposit_addresses_user_chain'),
        sa.UniqueConstraint('blockchain', 'index', name='uq_deposit_addresses_chain_index'),
    )
    op.create_index('ix_deposit_addresses_user_id', 'deposit_addresses', ['user_id'])
    op.create_index('ix_deposit_addresses_address', 'deposit_addresses', ['address'])

    op.create_table(
        'counters',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(64), nullable=False, unique=True),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.CheckConstraint('value >= 0', name='ck_counters_value_non_negative'),
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('txn_id', sa.String(128), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('balance_id', sa.Integer(), sa.ForeignKey('balances.id'), nullable=True),
        sa.Column('currency_id', sa.Integer(), sa.ForeignKey('currencies.id'), nullable=False),
        sa.Column('ipn_type', sa.String(20), nullable=False),
        sa.Column('method', sa.String(20), nullable=True),
        sa.Column('amount', sa.Numeric(30, 9), nullable=False),
        sa.Column('fiat_amount', sa.Numeric(20, 2), nullable=False),
        sa.Column('status', sa.Integer(), nullable=False),
        sa.Column('status_text', sa.String(32), nullable=True),
        sa.Column('address', sa.String(64), nullable=True),
        sa.Column('from_address', sa.String(64), nullable=True),
        sa.Column('bonus_id', sa.Integer(), sa.ForeignKey('bonuses.id'), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_payments_txn_id', 'payments', ['txn_id'], unique=True)
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])

    op.create_table(
        'balance_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('balance_id', sa.Integer(), sa.ForeignKey('balances.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', sa.Numeric(20, 2), nullable=False),
        sa.Column('balance_before', sa.Numeric(20, 2), nullable=False),
        sa.Column('balance_after', sa.Numeric(20, 2), nullable=False),
        sa.Column('reason', sa.String(64), nullable=False),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_balance_history_balance_id', 'balance_history', ['balance_id'])

    op.create_table(
        'bonus_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('bonus_id', sa.Integer(), sa.ForeignKey('bonuses.id'), nullable=False),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('amount', sa.Numeric(20, 2), nullable=False),
        sa.Column('deposit_amount', sa.Numeric(20, 2), nullable=False),
        sa.Column('wager_amount', sa.Numeric(20, 2), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_bonus_history_user_id', 'bonus_history', ['user_id'])

    op.create_table(
        'sweeps',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('blockchain', sa.String(20), nullable=False),
        sa.Column('admin_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('address_id', sa.Integer(), sa.ForeignKey('deposit_addresses.id'), nullable=True),
        sa.Column('index', sa.Integer(), nullable=False),
        sa.Column('from_address', sa.String(64), nullable=False),
        sa.Column('to_address', sa.String(64), nullable=False),
        sa.Column('asset', sa.String(64), nullable=False),
        sa.Column('contract_address', sa.String(64), nullable=True),
        sa.Column('amount_ui', sa.Numeric(30, 9), nullable=False),
        sa.Column('txid', sa.String(128), nullable=False),
        sa.Column('status', sa.Enum('pending', 'confirmed', 'failed', name='sweepstatus'), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_sweeps_txid', 'sweeps', ['txid'], unique=True)
    op.create_index('ix_sweeps_user_id', 'sweeps', ['user_id'])


def downgrade() -> None:
    op.drop_table('sweeps')
    op.drop_table('bonus_history')
    op.drop_table('balance_history')
    op.drop_table('payments')
    op.drop_table('counters')
    op.drop_table('deposit_addresses')
    op.drop_table('balances')
    op.drop_table('bonuses')
    op.drop_table('currencies')
    op.drop_table('users')
    sa.Enum(name='sweepstatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='userrole').drop(op.get_bind(), checkfirst=True)
