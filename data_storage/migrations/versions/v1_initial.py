"""
Initial database schema

Revision ID: 3c1f7a2b9d40
Revises:
Create Date: 2025-01-20 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '3c1f7a2b9d40'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False)


def _timestamps():
    return [
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def _jsonb(name):
    return sa.Column(name, postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False)


def _fk_uuid(name, target, nullable=False, ondelete='CASCADE'):
    return sa.Column(name, postgresql.UUID(as_uuid=True), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


ACTIVE = sa.text('deleted_at IS NULL')

UPDATE_SUB_ACCOUNT_BALANCE = """
CREATE OR REPLACE FUNCTION update_sub_account_balance(
    p_sub_account_id UUID,
    p_new_balance DECIMAL(20,8),
    p_amount DECIMAL(20,8),
    p_direction VARCHAR(10),
    p_reason VARCHAR(50),
    p_info JSONB DEFAULT '{}'
) RETURNS UUID AS $$
DECLARE
    v_transaction_id UUID;
    v_user_id UUID;
    v_trading_id UUID;
BEGIN
    SELECT user_id, trading_id INTO v_user_id, v_trading_id
    FROM sub_accounts
    WHERE id = p_sub_account_id AND deleted_at IS NULL
    FOR UPDATE;

    IF NOT FOUND THEN
        RAISE EXCEPTION 'Sub-account not found: %', p_sub_account_id;
    END IF;

    UPDATE sub_accounts
    SET balance = p_new_balance, updated_at = NOW()
    WHERE id = p_sub_account_id;

    INSERT INTO transactions (
        user_id, trading_id, sub_account_id, direction, reason,
        amount, closing_balance, info
    ) VALUES (
        v_user_id, v_trading_id, p_sub_account_id, p_direction, p_reason,
        p_amount, p_new_balance, p_info
    ) RETURNING id INTO v_transaction_id;

    RETURN v_transaction_id;
END;
$$ LANGUAGE plpgsql;
"""


def upgrade() -> None:
    """Create initial database schema."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')

    # Users and their linked identities
    op.create_table(
        'users',
        _id(),
        sa.Column('username', sa.String(length=50), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('avatar', sa.Text(), nullable=True),
        _jsonb('settings'),
        _jsonb('info'),
        *_timestamps(),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_users'),
        sa.CheckConstraint('length(username) >= 3', name='ck_users_username_length'),
    )
    op.create_index('uq_users_username_active', 'users', ['username'], unique=True, postgresql_where=ACTIVE)
    op.create_index('uq_users_email_active', 'users', ['email'], unique=True, postgresql_where=ACTIVE)

    op.create_table(
        'oauth_tokens',
        _id(),
        _fk_uuid('user_id', 'users.id'),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('provider_user_id', sa.String(length=255), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        _jsonb('info'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_oauth_tokens'),
        sa.UniqueConstraint('provider', 'provider_user_id', name='uq_oauth_tokens_provider_user'),
        sa.CheckConstraint("provider IN ('google', 'wechat')", name='ck_oauth_tokens_provider'),
        sa.Index('ix_oauth_tokens_user_id', 'user_id'),
    )

    # Exchange bindings, tradings and sub-accounts
    op.create_table(
        'exchange_bindings',
        _id(),
        _fk_uuid('user_id', 'users.id', nullable=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('exchange', sa.String(length=50), nullable=False),
        sa.Column('type', sa.String(length=20), server_default='private', nullable=False),
        sa.Column('api_key', sa.Text(), nullable=True),
        sa.Column('api_secret', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), server_default='active', nullable=False),
        _jsonb('info'),
        *_timestamps(),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_exchange_bindings'),
        sa.CheckConstraint("type IN ('private', 'public')", name='ck_exchange_bindings_type'),
        sa.Index('ix_exchange_bindings_user_id', 'user_id'),
        sa.Index('ix_exchange_bindings_type', 'type'),
    )
    op.create_index('uq_exchange_bindings_user_name_active', 'exchange_bindings',
                    ['user_id', 'name'], unique=True, postgresql_where=ACTIVE)
    op.create_index('uq_exchange_bindings_user_api_key_active', 'exchange_bindings',
                    ['user_id', 'api_key'], unique=True, postgresql_where=ACTIVE)
    op.create_index('uq_exchange_bindings_user_api_secret_active', 'exchange_bindings',
                    ['user_id', 'api_secret'], unique=True, postgresql_where=ACTIVE)

    op.create_table(
        'tradings',
        _id(),
        _fk_uuid('user_id', 'users.id'),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        _fk_uuid('exchange_binding_id', 'exchange_bindings.id', ondelete=None),
        sa.Column('status', sa.String(length=20), server_default='active', nullable=False),
        _jsonb('info'),
        *_timestamps(),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_tradings'),
        sa.CheckConstraint("status IN ('active', 'inactive')", name='ck_tradings_status'),
        sa.Index('ix_tradings_user_id', 'user_id'),
        sa.Index('ix_tradings_exchange_binding_id', 'exchange_binding_id'),
    )
    op.create_index('uq_tradings_user_name_active', 'tradings', ['user_id', 'name'],
                    unique=True, postgresql_where=ACTIVE)

    op.create_table(
        'sub_accounts',
        _id(),
        _fk_uuid('user_id', 'users.id'),
        _fk_uuid('trading_id', 'tradings.id'),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('symbol', sa.String(length=20), nullable=False),
        sa.Column('balance', sa.Numeric(20, 8), server_default='0', nullable=False),
        _jsonb('info'),
        *_timestamps(),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_sub_accounts'),
        sa.CheckConstraint('balance >= 0', name='ck_sub_accounts_balance_non_negative'),
        sa.Index('ix_sub_accounts_user_id', 'user_id'),
        sa.Index('ix_sub_accounts_trading_id', 'trading_id'),
        sa.Index('ix_sub_accounts_symbol', 'symbol'),
    )
    op.create_index('uq_sub_accounts_trading_name_active', 'sub_accounts', ['trading_id', 'name'],
                    unique=True, postgresql_where=ACTIVE)

    # Ledger
    op.create_table(
        'transactions',
        _id(),
        _fk_uuid('user_id', 'users.id'),
        _fk_uuid('trading_id', 'tradings.id'),
        _fk_uuid('sub_account_id', 'sub_accounts.id'),
        sa.Column('timestamp', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('direction', sa.String(length=10), nullable=False),
        sa.Column('reason', sa.String(length=50), nullable=False),
        sa.Column('amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('closing_balance', sa.Numeric(20, 8), nullable=False),
        sa.Column('price', sa.Numeric(20, 8), nullable=True),
        sa.Column('quote_symbol', sa.String(length=20), nullable=True),
        _jsonb('info'),
        sa.PrimaryKeyConstraint('id', name='pk_transactions'),
        sa.CheckConstraint('amount > 0', name='ck_transactions_amount_positive'),
        sa.CheckConstraint("direction IN ('credit', 'debit')", name='ck_transactions_direction'),
        sa.Index('ix_transactions_user_id_timestamp', 'user_id', 'timestamp'),
        sa.Index('ix_transactions_sub_account_id_timestamp', 'sub_account_id', 'timestamp'),
        sa.Index('ix_transactions_trading_id_timestamp', 'trading_id', 'timestamp'),
    )

    op.create_table(
        'trading_logs',
        _id(),
        _fk_uuid('user_id', 'users.id'),
        _fk_uuid('trading_id', 'tradings.id'),
        _fk_uuid('sub_account_id', 'sub_accounts.id', nullable=True, ondelete='SET NULL'),
        _fk_uuid('transaction_id', 'transactions.id', nullable=True, ondelete='SET NULL'),
        sa.Column('timestamp', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('event_time', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        _jsonb('info'),
        sa.PrimaryKeyConstraint('id', name='pk_trading_logs'),
        sa.Index('ix_trading_logs_user_id_timestamp', 'user_id', 'timestamp'),
        sa.Index('ix_trading_logs_trading_id_timestamp', 'trading_id', 'timestamp'),
        sa.Index('ix_trading_logs_sub_account_id', 'sub_account_id'),
        sa.Index('ix_trading_logs_type', 'type'),
    )

    # API keys and audit trail
    op.create_table(
        'user_api_keys',
        _id(),
        _fk_uuid('user_id', 'users.id'),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('encrypted_key', sa.Text(), nullable=False),
        sa.Column('key_hash', sa.String(length=64), nullable=False),
        sa.Column('permissions', postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('last_used_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_user_api_keys'),
        sa.UniqueConstraint('key_hash', name='uq_user_api_keys_key_hash'),
        sa.Index('ix_user_api_keys_user_id', 'user_id'),
        sa.Index('ix_user_api_keys_is_active', 'is_active'),
    )

    op.create_table(
        'audit_events',
        _id(),
        sa.Column('timestamp', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('level', sa.String(length=10), server_default='info', nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('session_id', sa.String(length=100), nullable=True),
        sa.Column('ip_address', sa.String(length=45), server_default='', nullable=False),
        sa.Column('user_agent', sa.Text(), server_default='', nullable=False),
        sa.Column('resource', sa.String(length=255), server_default='', nullable=False),
        _jsonb('details'),
        sa.Column('success', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('duration', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_audit_events'),
        sa.CheckConstraint("level IN ('info', 'warn', 'error', 'critical')", name='ck_audit_events_level'),
        sa.Index('ix_audit_events_timestamp', 'timestamp'),
        sa.Index('ix_audit_events_user_id_timestamp', 'user_id', 'timestamp'),
        sa.Index('ix_audit_events_action', 'action'),
        sa.Index('ix_audit_events_ip_address', 'ip_address'),
        sa.Index('ix_audit_events_level', 'level'),
    )

    # Balance-update entry point
    op.execute(UPDATE_SUB_ACCOUNT_BALANCE)


def downgrade() -> None:
    """Drop initial database schema."""
    op.execute('DROP FUNCTION IF EXISTS update_sub_account_balance(UUID, DECIMAL, DECIMAL, VARCHAR, VARCHAR, JSONB)')
    op.drop_table('audit_events')
    op.drop_table('user_api_keys')
    op.drop_table('trading_logs')
    op.drop_table('transactions')
    op.drop_table('sub_accounts')
    op.drop_table('tradings')
    op.drop_table('exchange_bindings')
    op.drop_table('oauth_tokens')
    op.drop_table('users')
