"""create_automation_tables

Revision ID: 3f9c1d2a7b40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '3f9c1d2a7b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

automation_type_enum = postgresql.ENUM(
    'dropoff_rescue', 'milestone_celebration', 'reminder',
    name='automation_type_enum', create_type=False,
)
automation_action_type_enum = postgresql.ENUM(
    'soft_checkin', 'coach_alert', 'recovery_attempt', 'ai_message',
    name='automation_action_type_enum', create_type=False,
)
automation_log_status_enum = postgresql.ENUM(
    'sent', 'degraded', 'failed',
    name='automation_log_status_enum', create_type=False,
)


def upgrade() -> None:
    """Upgrade schema - Add automation settings, client cursor and log tables."""
    bind = op.get_bind()
    automation_type_enum.create(bind, checkfirst=True)
    automation_action_type_enum.create(bind, checkfirst=True)
    automation_log_status_enum.create(bind, checkfirst=True)

    # Create coach_automation_settings table
    op.create_table(
        'coach_automation_settings',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('coach_id', UUID(as_uuid=True), nullable=False),
        sa.Column('automation_type', automation_type_enum, nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('config', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('coach_id', 'automation_type', name='uq_coach_automation_type'),
    )
    op.create_index('ix_coach_automation_settings_coach_id', 'coach_automation_settings', ['coach_id'])

    # Create client_automation_status table
    op.create_table(
        'client_automation_status',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('coach_id', UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', UUID(as_uuid=True), nullable=False),
        sa.Column('automation_type', automation_type_enum, nullable=False),
        sa.Column('is_at_risk', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_stage_triggered', sa.Integer(), nullable=True),
        sa.Column('last_triggered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_signal_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_stage', sa.Integer(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('muted_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_soft_checkin_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_coach_alert_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_recovery_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'coach_id', 'client_id', 'automation_type', name='uq_client_automation_status'
        ),
    )
    op.create_index('ix_client_automation_status_coach_id', 'client_automation_status', ['coach_id'])
    op.create_index('ix_client_automation_status_client_id', 'client_automation_status', ['client_id'])

    # Create automation_logs table
    op.create_table(
        'automation_logs',
        sa.Column('id', UUID(as_uuid=True), nullable=False),
        sa.Column('coach_id', UUID(as_uuid=True), nullable=False),
        sa.Column('client_id', UUID(as_uuid=True), nullable=True),
        sa.Column('automation_type', automation_type_enum, nullable=False),
        sa.Column('action_type', automation_action_type_enum, nullable=False),
        sa.Column('status', automation_log_status_enum, nullable=False),
        sa.Column('message_sent', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_automation_logs_coach_id', 'automation_logs', ['coach_id'])
    op.create_index('ix_automation_logs_client_id', 'automation_logs', ['client_id'])
    op.create_index('ix_automation_logs_created_at', 'automation_logs', ['created_at'])


def downgrade() -> None:
    """Downgrade schema - Drop automation tables."""
    op.drop_table('automation_logs')
    op.drop_table('client_automation_status')
    op.drop_table('coach_automation_settings')

    bind = op.get_bind()
    automation_log_status_enum.drop(bind, checkfirst=True)
    automation_action_type_enum.drop(bind, checkfirst=True)
    automation_type_enum.drop(bind, checkfirst=True)
