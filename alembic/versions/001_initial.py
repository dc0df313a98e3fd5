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

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    # Products table
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('manufacturer', sa.String(length=255), nullable=False),
        sa.Column('category', sa.String(length=128), nullable=False),
        sa.Column('website', sa.Text(), nullable=False),
        sa.Column('version_source_url', sa.Text(), nullable=True),
        sa.Column('version_source_type', sa.String(length=32), nullable=True),
        sa.Column('source_config', JSONType, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Version history table
    op.create_table(
        'version_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('version', sa.String(length=128), nullable=False),
        sa.Column('previous_version', sa.String(length=128), nullable=True),
        sa.Column('release_date', sa.DateTime(), nullable=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.Column('notes', JSONType, nullable=True),
        sa.Column('raw_notes', sa.Text(), nullable=True),
        sa.Column('update_type', sa.String(length=16), nullable=True),
        sa.Column('source', sa.String(length=64), nullable=True),
        sa.Column('verified', sa.Boolean(), nullable=False),
        sa.Column('is_current_override', sa.Boolean(), nullable=False),
        sa.Column('verified_by', sa.String(length=255), nullable=True),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('product_id', 'version', name='uq_version_product_version'),
        sa.CheckConstraint(
            "update_type IS NULL OR update_type IN ('major', 'minor', 'patch')",
            name='ck_version_update_type'
        )
    )
    op.create_index(
        'ix_version_records_product_verified', 'version_records', ['product_id', 'verified']
    )

    # Subscribers table
    op.create_table(
        'subscribers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False),
        sa.Column('email_notifications', sa.Boolean(), nullable=False),
        sa.Column('notification_frequency', sa.String(length=16), nullable=False),
        sa.Column('all_quiet_preference', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    # Subscriptions table
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('last_notified_version', sa.String(length=128), nullable=True),
        sa.Column('last_notified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['subscribers.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('user_id', 'product_id', name='uq_subscription_user_product')
    )

    # Notification queue table
    op.create_table(
        'notification_queue',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('email_type', sa.String(length=32), nullable=False),
        sa.Column('payload', JSONType, nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('provider_message_id', sa.String(length=128), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'sent', 'failed', 'cancelled')",
            name='ck_queue_status'
        )
    )
    op.create_index('ix_notification_queue_user_id', 'notification_queue', ['user_id'])
    op.create_index('ix_queue_status_scheduled', 'notification_queue', ['status', 'scheduled_for'])

    # Notification log table
    op.create_table(
        'notification_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('queue_item_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('email_type', sa.String(length=32), nullable=False),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('updates', JSONType, nullable=True),
        sa.Column('provider_message_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('opened_at', sa.DateTime(), nullable=True),
        sa.Column('clicked_at', sa.DateTime(), nullable=True),
        sa.Column('bounced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_notification_logs_user_id', 'notification_logs', ['user_id'])
    op.create_index(
        'ix_notification_logs_provider_message_id', 'notification_logs', ['provider_message_id']
    )

    # Bounce records table
    op.create_table(
        'bounce_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=False),
        sa.Column('bounce_type', sa.String(length=8), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('provider_message_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("bounce_type IN ('hard', 'soft')", name='ck_bounce_type')
    )
    op.create_index(
        'ix_bounce_user_type_created', 'bounce_records', ['user_id', 'bounce_type', 'created_at']
    )

    # Sponsors table
    op.create_table(
        'sponsors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('tagline', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('cta_url', sa.Text(), nullable=False),
        sa.Column('cta_text', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('impression_count', sa.Integer(), nullable=False),
        sa.Column('click_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )


def downgrade() -> None:
    op.drop_table('sponsors')
    op.drop_index('ix_bounce_user_type_created', table_name='bounce_records')
    op.drop_table('bounce_records')
    op.drop_index('ix_notification_logs_provider_message_id', table_name='notification_logs')
    op.drop_index('ix_notification_logs_user_id', table_name='notification_logs')
    op.drop_table('notification_logs')
    op.drop_index('ix_queue_status_scheduled', table_name='notification_queue')
    op.drop_index('ix_notification_queue_user_id', table_name='notification_queue')
    op.drop_table('notification_queue')
    op.drop_table('subscriptions')
    op.drop_table('subscribers')
    op.drop_index('ix_version_records_product_verified', table_name='version_records')
    op.drop_table('version_records')
    op.drop_table('products')
