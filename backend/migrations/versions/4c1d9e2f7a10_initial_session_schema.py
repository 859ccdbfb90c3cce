"""initial schema: games, sessions, participants, submissions, session points

Revision ID: 4c1d9e2f7a10
Revises:
Create Date: 2025-09-14 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1d9e2f7a10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'admin_user',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        'game',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('code', sa.String(length=6), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_game_code', 'game', ['code'], unique=True)

    op.create_table(
        'game_session',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('game_id', sa.String(length=36), sa.ForeignKey('game.id', ondelete='CASCADE'), nullable=False),
        sa.Column('question', sa.Text(), nullable=False),
        sa.Column('timer_seconds', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='draft'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('results_computed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_game_session_game_id', 'game_session', ['game_id'])

    op.create_table(
        'participant',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('game_id', sa.String(length=36), sa.ForeignKey('game.id', ondelete='CASCADE'), nullable=False),
        sa.Column('display_name', sa.String(length=50), nullable=False),
        sa.Column('owner_admin_user_id', sa.String(length=36), sa.ForeignKey('admin_user.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('game_id', 'display_name', name='uq_participant_game_name'),
    )
    op.create_index('ix_participant_game_id', 'participant', ['game_id'])

    op.create_table(
        'submission',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.String(length=36), sa.ForeignKey('game_session.id', ondelete='CASCADE'), nullable=False),
        sa.Column('participant_id', sa.String(length=36), sa.ForeignKey('participant.id', ondelete='CASCADE'), nullable=False),
        sa.Column('vote', sa.String(length=3), nullable=True),
        sa.Column('guess_yes_count', sa.Integer(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('session_id', 'participant_id', name='uq_submission_session_participant'),
    )
    op.create_index('ix_submission_session_id', 'submission', ['session_id'])

    op.create_table(
        'session_points',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.String(length=36), sa.ForeignKey('game_session.id', ondelete='CASCADE'), nullable=False),
        sa.Column('participant_id', sa.String(length=36), sa.ForeignKey('participant.id', ondelete='CASCADE'), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('session_id', 'participant_id', name='uq_session_points_session_participant'),
    )
    op.create_index('ix_session_points_session_id', 'session_points', ['session_id'])


def downgrade():
    op.drop_index('ix_session_points_session_id', table_name='session_points')
    op.drop_table('session_points')
    op.drop_index('ix_submission_session_id', table_name='submission')
    op.drop_table('submission')
    op.drop_index('ix_participant_game_id', table_name='participant')
    op.drop_table('participant')
    op.drop_index('ix_game_session_game_id', table_name='game_session')
    op.drop_table('game_session')
    op.drop_index('ix_game_code', table_name='game')
    op.drop_table('game')
    op.drop_table('admin_user')
