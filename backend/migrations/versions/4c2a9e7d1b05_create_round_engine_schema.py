"""create game, question, game_round and participant tables

Revision ID: 4c2a9e7d1b05
Revises:
Create Date: 2026-10-18 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c2a9e7d1b05'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'game',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('slug', sa.String(length=128), nullable=True),
        sa.Column('max_players', sa.Integer(), nullable=False),
        sa.Column('total_questions', sa.Integer(), nullable=False),
        sa.Column('free_questions', sa.Integer(), nullable=False),
        sa.Column('question_timeout_seconds', sa.Float(), nullable=False),
        sa.Column('auto_restart', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_game_slug', 'game', ['slug'], unique=True)

    op.create_table(
        'question',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('game_id', sa.Integer(), sa.ForeignKey('game.id'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('option_a', sa.String(length=255), nullable=False),
        sa.Column('option_b', sa.String(length=255), nullable=False),
        sa.Column('option_c', sa.String(length=255), nullable=False),
        sa.Column('correct_answer', sa.String(length=1), nullable=False),
        sa.UniqueConstraint('game_id', 'position', name='uq_question_game_position'),
    )
    op.create_index('ix_question_game_id', 'question', ['game_id'])

    op.create_table(
        'game_round',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('game_id', sa.Integer(), sa.ForeignKey('game.id'), nullable=False),
        sa.Column('round_number', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('participant_count', sa.Integer(), nullable=False),
        sa.Column('paid_participant_count', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('full_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('winner_participant_id', sa.Integer(), nullable=True),
        sa.Column('winner_selected_at', sa.DateTime(), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.UniqueConstraint('game_id', 'round_number', name='uq_round_game_number'),
        sa.CheckConstraint('paid_participant_count >= 0', name='ck_round_paid_non_negative'),
    )
    op.create_index('ix_game_round_game_id', 'game_round', ['game_id'])
    op.create_index('ix_game_round_status', 'game_round', ['status'])

    op.create_table(
        'participant',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('round_id', sa.Integer(), sa.ForeignKey('game_round.id'), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('session_id', sa.String(length=128), nullable=False),
        sa.Column('device_fingerprint', sa.String(length=128), nullable=False),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('payment_status', sa.String(length=16), nullable=False),
        sa.Column('game_status', sa.String(length=16), nullable=False),
        sa.Column('current_question', sa.Integer(), nullable=False),
        sa.Column('pre_payment_time', sa.Float(), nullable=False),
        sa.Column('post_payment_time', sa.Float(), nullable=False),
        sa.Column('total_time', sa.Float(), nullable=True),
        sa.Column('is_winner', sa.Boolean(), nullable=False),
        sa.Column('is_fraudulent', sa.Boolean(), nullable=False),
        sa.Column('fraud_score', sa.Float(), nullable=False),
        sa.Column('fraud_flags', sa.Text(), nullable=True),
        sa.Column('answers', sa.Text(), nullable=True),
        sa.Column('timing_state', sa.Text(), nullable=True),
        sa.Column('failure_reason', sa.String(length=64), nullable=True),
        sa.Column('admitted_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('last_activity_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('round_id', 'email', name='uq_participant_round_email'),
    )
    op.create_index('ix_participant_round_id', 'participant', ['round_id'])
    op.create_index('ix_participant_email', 'participant', ['email'])
    op.create_index('ix_participant_device_fingerprint', 'participant', ['device_fingerprint'])

    # game_round <-> participant is circular; add the winner FK once both exist
    bind = op.get_bind()
    insp = sa.inspect(bind)
    fks = {fk['name'] for fk in insp.get_foreign_keys('game_round')}
    if 'fk_round_winner_participant_id' not in fks:
        with op.batch_alter_table('game_round') as batch_op:
            batch_op.create_foreign_key(
                'fk_round_winner_participant_id', 'participant', ['winner_participant_id'], ['id']
            )


def downgrade():
    with op.batch_alter_table('game_round') as batch_op:
        batch_op.drop_constraint('fk_round_winner_participant_id', type_='foreignkey')
    op.drop_table('participant')
    op.drop_table('game_round')
    op.drop_table('question')
    op.drop_table('game')
