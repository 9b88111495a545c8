"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

JSONB = postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    # Seller integrations
    op.create_table(
        'seller_integrations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('environment', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('status_message', sa.Text(), nullable=True),
        sa.Column('credentials', JSONB, nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_type', sa.String(length=32), nullable=True),
        sa.Column('scopes', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('account_metadata', JSONB, nullable=True),
        sa.Column('webhook_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('webhook_url', sa.Text(), nullable=True),
        sa.Column('webhook_secret', sa.Text(), nullable=True),
        sa.Column('webhook_events', JSONB, nullable=True),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('connected_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('seller_id', 'provider', 'environment', name='uq_integration_seller_provider_env')
    )
    op.create_index('ix_seller_integrations_seller_id', 'seller_integrations', ['seller_id'])

    op.create_table(
        'integration_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('integration_id', sa.Integer(), nullable=False),
        sa.Column('event', sa.String(length=32), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['integration_id'], ['seller_integrations.id'])
    )
    op.create_index('ix_integration_history_integration_id', 'integration_history', ['integration_id'])

    # OAuth state tokens
    op.create_table(
        'oauth_states',
        sa.Column('token', sa.String(length=128), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('environment', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('token')
    )
    op.create_index('ix_oauth_states_created_at', 'oauth_states', ['created_at'])

    # Sync jobs
    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('environment', sa.String(length=16), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('succeeded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_sync_jobs_seller_status', 'sync_jobs', ['seller_id', 'status'])

    # Webhooks
    op.create_table(
        'seller_webhooks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('events', JSONB, nullable=True),
        sa.Column('secret', sa.Text(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_sent_at', sa.DateTime(), nullable=True),
        sa.Column('send_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_seller_webhooks_seller_id', 'seller_webhooks', ['seller_id'])

    op.create_table(
        'webhook_deliveries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('delivery_id', sa.String(length=32), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('event', sa.String(length=64), nullable=False),
        sa.Column('target_url', sa.Text(), nullable=False),
        sa.Column('source', sa.String(length=32), nullable=False),
        sa.Column('source_id', sa.Integer(), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('signature', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_webhook_deliveries_delivery_id', 'webhook_deliveries', ['delivery_id'])
    op.create_index('ix_webhook_deliveries_seller_id', 'webhook_deliveries', ['seller_id'])
    op.create_index('ix_webhook_deliveries_created_at', 'webhook_deliveries', ['created_at'])

    # API keys and plans
    op.create_table(
        'api_keys',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('secret', sa.Text(), nullable=False),
        sa.Column('permissions', JSONB, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key')
    )
    op.create_index('ix_api_keys_seller_id', 'api_keys', ['seller_id'])

    op.create_table(
        'seller_subscriptions',
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('plan', sa.String(length=32), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('seller_id')
    )

    # Synced provider data
    op.create_table(
        'product_inventory',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('environment', sa.String(length=16), nullable=False),
        sa.Column('sku', sa.String(length=128), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('location', sa.String(length=128), nullable=True),
        sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('seller_id', 'provider', 'environment', 'sku', name='uq_inventory_sku')
    )

    op.create_table(
        'external_orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('environment', sa.String(length=16), nullable=False),
        sa.Column('external_id', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('total', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('tracking_number', sa.String(length=128), nullable=True),
        sa.Column('raw', JSONB, nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('seller_id', 'provider', 'environment', 'external_id', name='uq_external_order')
    )


def downgrade() -> None:
    op.drop_table('external_orders')
    op.drop_table('product_inventory')
    op.drop_table('seller_subscriptions')
    op.drop_index('ix_api_keys_seller_id', table_name='api_keys')
    op.drop_table('api_keys')
    op.drop_index('ix_webhook_deliveries_created_at', table_name='webhook_deliveries')
    op.drop_index('ix_webhook_deliveries_seller_id', table_name='webhook_deliveries')
    op.drop_index('ix_webhook_deliveries_delivery_id', table_name='webhook_deliveries')
    op.drop_table('webhook_deliveries')
    op.drop_index('ix_seller_webhooks_seller_id', table_name='seller_webhooks')
    op.drop_table('seller_webhooks')
    op.drop_index('ix_sync_jobs_seller_status', table_name='sync_jobs')
    op.drop_table('sync_jobs')
    op.drop_index('ix_oauth_states_created_at', table_name='oauth_states')
    op.drop_table('oauth_states')
    op.drop_index('ix_integration_history_integration_id', table_name='integration_history')
    op.drop_table('integration_history')
    op.drop_index('ix_seller_integrations_seller_id', table_name='seller_integrations')
    op.drop_table('seller_integrations')
