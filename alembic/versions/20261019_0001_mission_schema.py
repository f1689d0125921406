"""Mission engine schema - progress snapshots, reward ledger, event log

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Mission progress snapshots (one per user and mission)
    op.create_table(
        'mission_progress',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False, index=True),
        sa.Column('mission_id', sa.String(100), nullable=False, index=True),
        sa.Column('status', sa.String(20), nullable=False, index=True),
        sa.Column('current_difficulty', sa.String(10), nullable=False),
        sa.Column('deadline_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('snapshot', sa.JSON(), nullable=False, default={}),
        sa.Column('version', sa.Integer(), nullable=False, default=0),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('user_id', 'mission_id', name='uq_mission_progress_user_mission'),
    )
    op.create_index('ix_mission_progress_status_deadline', 'mission_progress', ['status', 'deadline_at'])

    # Reward ledger (idempotency key is unique)
    op.create_table(
        'reward_ledger',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('idempotency_key', sa.String(200), nullable=False),
        sa.Column('progress_id', sa.Uuid(), nullable=False, index=True),
        sa.Column('user_id', sa.Uuid(), nullable=False, index=True),
        sa.Column('mission_id', sa.String(100), nullable=False),
        sa.Column('step_id', sa.String(100), nullable=True),
        sa.Column('reward_type', sa.String(20), nullable=False),
        sa.Column('tier', sa.String(10), nullable=True),
        sa.Column('xp', sa.Integer(), nullable=False, default=0),
        sa.Column('payload', sa.JSON(), nullable=False, default={}),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('idempotency_key', name='uq_reward_ledger_idempotency_key'),
    )

    # Append-only transition log
    op.create_table(
        'event_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False, index=True),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.Uuid(), nullable=False, index=True),
        sa.Column('user_id', sa.Uuid(), nullable=True, index=True),
        sa.Column('payload', sa.JSON(), nullable=False, default={}),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True),
    )
    op.create_index('ix_event_logs_entity', 'event_logs', ['entity_type', 'entity_id'])
    op.create_index('ix_event_logs_type_time', 'event_logs', ['event_type', 'created_at'])


def downgrade() -> None:
    op.drop_table('event_logs')
    op.drop_table('reward_ledger')
    op.drop_table('mission_progress')
