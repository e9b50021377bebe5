"""create timer_session and timer_command

Revision ID: 5c2e7a91d0b4
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2e7a91d0b4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'timer_session' not in existing_tables:
        op.create_table(
            'timer_session',
            sa.Column('code', sa.String(length=16), primary_key=True),
            sa.Column('title', sa.String(length=128), nullable=False, server_default=''),
            sa.Column('config', sa.Text(), nullable=False, server_default='{}'),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='idle'),
            sa.Column('preset_id', sa.String(length=64), nullable=True),
            sa.Column('lower_sec', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('mid_sec', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('upper_sec', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('started_at_ms', sa.BigInteger(), nullable=True),
            sa.Column('stopped_at_ms', sa.BigInteger(), nullable=True),
            sa.Column('beeped', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('beep_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('seq', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('controller_client_id', sa.String(length=64), nullable=True),
            sa.Column('controller_last_seen_at', sa.BigInteger(), nullable=True),
            sa.Column('created_at', sa.BigInteger(), nullable=True),
            sa.Column('updated_at', sa.BigInteger(), nullable=True),
        )
        op.create_index('ix_timer_session_updated_at', 'timer_session', ['updated_at'])

    if 'timer_command' not in existing_tables:
        op.create_table(
            'timer_command',
            sa.Column('id', sa.String(length=32), primary_key=True),
            sa.Column('session_code', sa.String(length=16), sa.ForeignKey('timer_session.code'), nullable=False),
            sa.Column('type', sa.String(length=32), nullable=True),
            sa.Column('payload', sa.Text(), nullable=True),
            sa.Column('sent_at_ms', sa.BigInteger(), nullable=True),
            sa.Column('origin_id', sa.String(length=64), nullable=True),
        )
        op.create_index('ix_timer_command_session_code', 'timer_command', ['session_code'])


def downgrade():
    op.drop_index('ix_timer_command_session_code', table_name='timer_command')
    op.drop_table('timer_command')
    op.drop_index('ix_timer_session_updated_at', table_name='timer_session')
    op.drop_table('timer_session')
