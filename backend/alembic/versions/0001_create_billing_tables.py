"""create billing tables

Revision ID: 0001_create_billing_tables
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_create_billing_tables'
down_revision = None
branch_labels = None
depends_on = None

BILLING_PERIOD = sa.Enum('daily', 'weekly', 'monthly', 'annual', name='billing_period')


def upgrade() -> None:
    # users (作成は認証サービス側。本サービスはプラン・残高列を更新)
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('current_plan', sa.String(64), nullable=True, comment='現在のプラン名'),
        sa.Column('token_balance', sa.BigInteger(), nullable=False, server_default='0', comment='利用可能トークン残高'),
        sa.Column('last_balance_reset_at', sa.DateTime(), nullable=True, comment='最終残高リセット日時'),
        sa.Column('is_tester', sa.Boolean(), nullable=False, server_default=sa.false(), comment='テスター (トライアル先行利用)'),
        sa.Column('trial_used_at', sa.DateTime(), nullable=True, comment='トライアル使用日時'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # subscription_plans (カタログのDB写し)
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(64), nullable=False, comment='プラン名 (カタログキー)'),
        sa.Column('display_name', sa.String(128), nullable=True),
        sa.Column('billing_period', BILLING_PERIOD, nullable=False),
        sa.Column('billing_period_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('token_quota', sa.BigInteger(), nullable=False),
        sa.Column('features', sa.JSON(), nullable=True, comment='機能フラグ (不透明)'),
        sa.Column('price', sa.Numeric(10, 2), nullable=True, comment='参考価格 (USD)'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_tester_plan', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscription_plans_name', 'subscription_plans', ['name'], unique=True)

    # user_subscriptions (物理削除しない)
    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('plan_id', sa.Integer(), nullable=False),
        sa.Column('billing_period', BILLING_PERIOD, nullable=False),
        sa.Column('billing_period_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True),
        sa.Column('status', sa.Enum('active', 'past_due', 'cancelled', name='subscription_status'), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('is_trial', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_ends_at', sa.DateTime(), nullable=True),
        sa.Column('external_subscription_id', sa.String(128), nullable=True),
        sa.Column('card_token', sa.String(255), nullable=True),
        sa.Column('card_mask', sa.String(64), nullable=True, comment='例: Visa ****4242'),
        sa.Column('last_payment_date', sa.DateTime(), nullable=True),
        sa.Column('last_payment_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_subscription_id'),
    )
    op.create_index('ix_user_subscriptions_user_id', 'user_subscriptions', ['user_id'])
    op.create_index('ix_user_subscriptions_plan_id', 'user_subscriptions', ['plan_id'])
    op.create_index('ix_user_subscriptions_status', 'user_subscriptions', ['status'])

    # payment_intents (30日で削除)
    op.create_table(
        'payment_intents',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('session_id', sa.String(64), nullable=False, comment='クライアント公開ID'),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('plan_name', sa.String(64), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='RUB'),
        sa.Column(
            'status',
            sa.Enum('pending', 'succeeded', 'failed', 'expired', name='payment_intent_status'),
            nullable=False,
        ),
        sa.Column('is_trial', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('external_subscription_id', sa.String(128), nullable=True),
        sa.Column('external_transaction_id', sa.String(64), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='クライアントIP・UA・表示名'),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_intents_session_id', 'payment_intents', ['session_id'], unique=True)
    op.create_index('ix_payment_intents_user_id', 'payment_intents', ['user_id'])
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'])
    op.create_index('ix_payment_intents_external_transaction_id', 'payment_intents', ['external_transaction_id'])
    op.create_index('ix_payment_intents_expires_at', 'payment_intents', ['expires_at'])
    op.create_index('ix_payment_intents_created_at', 'payment_intents', ['created_at'])

    # token_balance_transactions (追記のみ)
    op.create_table(
        'token_balance_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column(
            'type',
            sa.Enum('credit', 'debit', 'reset', 'adjustment', name='token_balance_transaction_type'),
            nullable=False,
        ),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='符号付き差分'),
        sa.Column('balance_after', sa.BigInteger(), nullable=False, comment='適用直後の残高'),
        sa.Column('reference_type', sa.String(32), nullable=True),
        sa.Column('reference_id', sa.String(128), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_token_balance_transactions_user_id', 'token_balance_transactions', ['user_id'])
    op.create_index('ix_token_balance_transactions_type', 'token_balance_transactions', ['type'])
    op.create_index('ix_token_balance_transactions_created_at', 'token_balance_transactions', ['created_at'])
    op.create_index(
        'ix_token_balance_transactions_user_created', 'token_balance_transactions', ['user_id', 'created_at'],
    )

    # processed_webhook_events (Webhook冪等性)
    op.create_table(
        'processed_webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_type', sa.String(32), nullable=False),
        sa.Column('event_key', sa.String(255), nullable=False, comment='TransactionId 等'),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_type', 'event_key', name='uq_processed_webhook_events_type_key'),
    )


def downgrade() -> None:
    op.drop_table('processed_webhook_events')
    op.drop_index('ix_token_balance_transactions_user_created', table_name='token_balance_transactions')
    op.drop_index('ix_token_balance_transactions_created_at', table_name='token_balance_transactions')
    op.drop_index('ix_token_balance_transactions_type', table_name='token_balance_transactions')
    op.drop_index('ix_token_balance_transactions_user_id', table_name='token_balance_transactions')
    op.drop_table('token_balance_transactions')
    op.drop_table('payment_intents')
    op.drop_table('user_subscriptions')
    op.drop_table('subscription_plans')
    op.drop_table('users')
