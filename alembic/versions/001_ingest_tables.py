"""Ingest tables: assets, renditions, ingest_jobs.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create assets table
    op.create_table(
        'assets',
        sa.Column('asset_id', sa.String(255), nullable=False),
        sa.Column('source_handle', sa.String(2048), nullable=False),
        sa.Column('requested_ladder', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='QUEUED'),
        sa.Column('error_kind', sa.String(32), nullable=True),
        sa.Column('error_detail', sa.Text(), nullable=True),
        sa.Column('probe', sa.JSON(), nullable=True),
        sa.Column('master_manifest_key', sa.String(1024), nullable=True),
        sa.Column('thumbnail_key', sa.String(1024), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('asset_id'),
    )
    op.create_index('ix_assets_status', 'assets', ['status'])

    # Create renditions table
    op.create_table(
        'renditions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('asset_id', sa.String(255), nullable=False),
        sa.Column('label', sa.String(16), nullable=False),
        sa.Column('width', sa.Integer(), nullable=False),
        sa.Column('height', sa.Integer(), nullable=False),
        sa.Column('video_bitrate_bps', sa.Integer(), nullable=False),
        sa.Column('audio_bitrate_bps', sa.Integer(), nullable=False),
        sa.Column('bandwidth', sa.Integer(), nullable=False),
        sa.Column('codec_v', sa.String(16), nullable=False, server_default='h264'),
        sa.Column('codec_a', sa.String(16), nullable=False, server_default='aac'),
        sa.Column('status', sa.String(16), nullable=False, server_default='PENDING'),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('playlist_key', sa.String(1024), nullable=True),
        sa.Column('segment_count', sa.Integer(), nullable=True),
        sa.Column('avg_segment_seconds', sa.Float(), nullable=True),
        sa.Column('error_kind', sa.String(32), nullable=True),
        sa.Column('error_detail', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['asset_id'], ['assets.asset_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('asset_id', 'label', name='uq_renditions_asset_label'),
    )
    op.create_index('ix_renditions_asset_id', 'renditions', ['asset_id'])

    # Create ingest_jobs table
    op.create_table(
        'ingest_jobs',
        sa.Column('asset_id', sa.String(255), nullable=False),
        sa.Column('worker_id', sa.String(255), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('scratch_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['asset_id'], ['assets.asset_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('asset_id'),
    )
    op.create_index('ix_ingest_jobs_lease_expires_at', 'ingest_jobs', ['lease_expires_at'])


def downgrade() -> None:
    op.drop_index('ix_ingest_jobs_lease_expires_at', table_name='ingest_jobs')
    op.drop_table('ingest_jobs')
    op.drop_index('ix_renditions_asset_id', table_name='renditions')
    op.drop_table('renditions')
    op.drop_index('ix_assets_status', table_name='assets')
    op.drop_table('assets')
