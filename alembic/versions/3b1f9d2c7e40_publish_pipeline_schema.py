"""publish_pipeline_schema

Revision ID: 3b1f9d2c7e40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3b1f9d2c7e40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Helper for cross-dialect JSON
JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB, "postgresql")


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    ]


def upgrade() -> None:
    """Create the publish pipeline tables."""

    # 1. Locations and screens
    op.create_table('locations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('playlist_id', sa.Integer(), nullable=True),
        sa.Column('playlist_name', sa.String(255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('screens',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('player_id', sa.Integer(), nullable=True),
        sa.Column('location_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(50), server_default='unknown', nullable=False),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('player_id')
    )

    # 2. Placements
    op.create_table('placements',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('screen_id', sa.Integer(), nullable=False),
        sa.Column('advertiser_id', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['screen_id'], ['screens.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_placements_advertiser_active', 'placements', ['advertiser_id', 'is_active'], unique=False)
    op.create_index('idx_placements_screen_active', 'placements', ['screen_id', 'is_active'], unique=False)

    # 3. Ad assets
    op.create_table('ad_assets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('advertiser_id', sa.Integer(), nullable=False),
        sa.Column('original_name', sa.String(255), nullable=True),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('storage_path', sa.String(1024), nullable=False),
        sa.Column('converted_storage_path', sa.String(1024), nullable=True),
        sa.Column('normalized_storage_path', sa.String(1024), nullable=True),
        sa.Column('readiness_status', sa.String(50), server_default='PENDING', nullable=False),
        sa.Column('reject_reason', sa.Text(), nullable=True),
        sa.Column('media_metadata', JSON_TYPE, nullable=True),
        sa.Column('normalization_provider', sa.String(50), nullable=True),
        sa.Column('normalization_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('normalization_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('normalization_error', sa.Text(), nullable=True),
        sa.Column('external_media_id', sa.Integer(), nullable=True),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_superseded', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('superseded_by_id', sa.Integer(), nullable=True),
        sa.Column('publish_status', sa.String(50), nullable=True),
        sa.Column('publish_error', sa.Text(), nullable=True),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['superseded_by_id'], ['ad_assets.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_ad_assets_advertiser_status', 'ad_assets', ['advertiser_id', 'readiness_status', 'is_superseded'], unique=False)

    # 4. Upload jobs (active_key enforces one in-flight upload per key)
    op.create_table('upload_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('correlation_id', sa.String(64), nullable=False),
        sa.Column('advertiser_id', sa.Integer(), nullable=False),
        sa.Column('asset_id', sa.Integer(), nullable=True),
        sa.Column('asset_path', sa.String(1024), nullable=False),
        sa.Column('desired_name', sa.String(255), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.String(1100), nullable=False),
        sa.Column('active_key', sa.String(1100), nullable=True),
        sa.Column('external_media_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(50), server_default='UPLOADING', nullable=False),
        sa.Column('final_state', sa.String(50), nullable=True),
        sa.Column('attempt', sa.Integer(), server_default='1', nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default='5', nullable=False),
        sa.Column('poll_attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_error_code', sa.String(100), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('last_error_raw', sa.Text(), nullable=True),
        sa.Column('phase_log', JSON_TYPE, nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['asset_id'], ['ad_assets.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('active_key')
    )
    op.create_index('idx_upload_jobs_key_status', 'upload_jobs', ['idempotency_key', 'status'], unique=False)
    op.create_index('idx_upload_jobs_advertiser', 'upload_jobs', ['advertiser_id', 'created_at'], unique=False)

    # 5. Publish queue
    op.create_table('publish_queue',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('asset_id', sa.Integer(), nullable=False),
        sa.Column('advertiser_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(50), server_default='PENDING', nullable=False),
        sa.Column('priority', sa.Integer(), server_default='0', nullable=False),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_retries', sa.Integer(), server_default='5', nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('active_key', sa.String(64), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('result', JSON_TYPE, nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('active_key')
    )
    op.create_index('idx_publish_queue_pick', 'publish_queue', ['status', 'priority', 'created_at'], unique=False)
    op.create_index('idx_publish_queue_asset', 'publish_queue', ['asset_id'], unique=False)

    # 6. Audit: publish traces and pipeline events
    op.create_table('publish_traces',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('correlation_id', sa.String(64), nullable=False),
        sa.Column('advertiser_id', sa.Integer(), nullable=False),
        sa.Column('screen_id', sa.Integer(), nullable=True),
        sa.Column('player_id', sa.Integer(), nullable=True),
        sa.Column('source_type_before', sa.String(50), nullable=True),
        sa.Column('source_type_after', sa.String(50), nullable=True),
        sa.Column('was_in_layout_mode', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('enforced_playlist_id', sa.Integer(), nullable=True),
        sa.Column('playlist_mutation', JSON_TYPE, nullable=True),
        sa.Column('verification_snapshot', JSON_TYPE, nullable=True),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('logs', JSON_TYPE, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_publish_traces_correlation', 'publish_traces', ['correlation_id'], unique=False)
    op.create_index('idx_publish_traces_screen', 'publish_traces', ['screen_id', 'created_at'], unique=False)

    op.create_table('pipeline_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('correlation_id', sa.String(64), nullable=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('old_status', sa.String(50), nullable=True),
        sa.Column('new_status', sa.String(50), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('payload', JSON_TYPE, nullable=True),
        sa.Column('worker_id', sa.String(100), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_pipeline_events_entity', 'pipeline_events', ['entity_type', 'entity_id', 'created_at'], unique=False)
    op.create_index('idx_pipeline_events_correlation', 'pipeline_events', ['correlation_id'], unique=False)

    # 7. Distributed locks
    op.create_table('sync_locks',
        sa.Column('id', sa.String(100), nullable=False),
        sa.Column('locked', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_by', sa.String(255), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_success_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_sync_locks_expires_at', 'sync_locks', ['expires_at'], unique=False)


def downgrade() -> None:
    """Drop the publish pipeline tables."""
    op.drop_index('idx_sync_locks_expires_at', table_name='sync_locks')
    op.drop_table('sync_locks')
    op.drop_index('idx_pipeline_events_correlation', table_name='pipeline_events')
    op.drop_index('idx_pipeline_events_entity', table_name='pipeline_events')
    op.drop_table('pipeline_events')
    op.drop_index('idx_publish_traces_screen', table_name='publish_traces')
    op.drop_index('idx_publish_traces_correlation', table_name='publish_traces')
    op.drop_table('publish_traces')
    op.drop_index('idx_publish_queue_asset', table_name='publish_queue')
    op.drop_index('idx_publish_queue_pick', table_name='publish_queue')
    op.drop_table('publish_queue')
    op.drop_index('idx_upload_jobs_advertiser', table_name='upload_jobs')
    op.drop_index('idx_upload_jobs_key_status', table_name='upload_jobs')
    op.drop_table('upload_jobs')
    op.drop_index('idx_ad_assets_advertiser_status', table_name='ad_assets')
    op.drop_table('ad_assets')
    op.drop_index('idx_placements_screen_active', table_name='placements')
    op.drop_index('idx_placements_advertiser_active', table_name='placements')
    op.drop_table('placements')
    op.drop_table('screens')
    op.drop_table('locations')
