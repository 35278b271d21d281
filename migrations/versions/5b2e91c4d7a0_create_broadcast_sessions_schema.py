"""create_broadcast_sessions_schema

Revision ID: 5b2e91c4d7a0
Revises:
Create Date: 2025-12-20 10:00:00.000000

Creates the session reconstruction tables:
- broadcast_sessions: merged broadcasts with rollups and AI summary
- broadcast_segments: explicit/implicit broadcast intervals
- event_logs: platform events with segment/session linkage
- app_settings: merge gap and summary delay overrides
- job_state: persisted finalize job state

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5b2e91c4d7a0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'broadcast_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finalize_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('total_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('followers_gained', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('peak_viewers', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('avg_viewers', sa.Float(), nullable=False, server_default='0'),
        sa.Column('unique_visitors', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ai_summary', sa.Text(), nullable=True),
        sa.Column('ai_summary_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('ai_summary_generated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ai_summary_tokens_used', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_sessions_started_at', 'broadcast_sessions', ['started_at'])
    op.create_index('idx_sessions_status_finalize_at', 'broadcast_sessions', ['status', 'finalize_at'])

    op.create_table(
        'broadcast_segments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('session_id', sa.Integer(), nullable=True),
        sa.Column('source', sa.String(length=20), nullable=False, server_default='explicit'),
        sa.Column('start_event_id', sa.Integer(), nullable=True),
        sa.Column('end_event_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['session_id'], ['broadcast_sessions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_segments_started_at', 'broadcast_segments', ['started_at'])
    op.create_index('idx_segments_session_id', 'broadcast_segments', ['session_id'])

    op.create_table(
        'event_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('method', sa.String(length=50), nullable=False),
        sa.Column('username', sa.String(length=255), nullable=True),
        sa.Column('raw_event', sa.JSON(), nullable=False),
        sa.Column('segment_id', sa.Integer(), nullable=True),
        sa.Column('session_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['segment_id'], ['broadcast_segments.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['session_id'], ['broadcast_sessions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_event_logs_timestamp', 'event_logs', ['timestamp', 'id'])
    op.create_index('idx_event_logs_method', 'event_logs', ['method'])
    op.create_index('idx_event_logs_segment_id', 'event_logs', ['segment_id'])
    op.create_index('idx_event_logs_session_method', 'event_logs', ['session_id', 'method'])

    op.create_table(
        'app_settings',
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('value', sa.JSON(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('key')
    )

    op.create_table(
        'job_state',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_name', sa.String(length=50), nullable=False),
        sa.Column('is_running', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_paused', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('config', sa.JSON(), nullable=True),
        sa.Column('stats', sa.JSON(), nullable=True),
        sa.Column('last_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_stopped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('job_name')
    )


def downgrade() -> None:
    op.drop_table('job_state')
    op.drop_table('app_settings')
    op.drop_index('idx_event_logs_session_method', table_name='event_logs')
    op.drop_index('idx_event_logs_segment_id', table_name='event_logs')
    op.drop_index('idx_event_logs_method', table_name='event_logs')
    op.drop_index('idx_event_logs_timestamp', table_name='event_logs')
    op.drop_table('event_logs')
    op.drop_index('idx_segments_session_id', table_name='broadcast_segments')
    op.drop_index('idx_segments_started_at', table_name='broadcast_segments')
    op.drop_table('broadcast_segments')
    op.drop_index('idx_sessions_status_finalize_at', table_name='broadcast_sessions')
    op.drop_index('idx_sessions_started_at', table_name='broadcast_sessions')
    op.drop_table('broadcast_sessions')
