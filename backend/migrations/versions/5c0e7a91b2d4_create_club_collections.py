"""create club, pricing, tables, live sessions, match history and club collections

Revision ID: 5c0e7a91b2d4
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c0e7a91b2d4'
down_revision = None
branch_labels = None
depends_on = None


def _club_fk():
    return sa.Column('club_id', sa.Integer(), sa.ForeignKey('club.id'), nullable=False, index=True)


def upgrade():
    op.create_table(
        'club',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('settings', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'table_pricing',
        sa.Column('id', sa.Integer(), primary_key=True),
        _club_fk(),
        sa.Column('per_hour', sa.Numeric(10, 2), nullable=False),
        sa.Column('per_minute', sa.Numeric(10, 2), nullable=False),
        sa.Column('per_frame', sa.Numeric(10, 2), nullable=False),
        sa.Column('peak_rate', sa.Numeric(10, 2), nullable=False),
        sa.Column('off_peak_rate', sa.Numeric(10, 2), nullable=False),
        sa.Column('peak_start', sa.String(length=5), nullable=False),
        sa.Column('peak_end', sa.String(length=5), nullable=False),
        sa.Column('default_billing_mode', sa.String(length=16), nullable=False),
        sa.Column('peak_pricing_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('time_zone', sa.String(length=64), nullable=False, server_default='UTC'),
    )
    op.create_table(
        'pool_table',
        sa.Column('id', sa.Integer(), primary_key=True),
        _club_fk(),
        sa.Column('table_number', sa.Integer(), nullable=False),
        sa.Column('table_name', sa.String(length=64), nullable=True),
        sa.Column('table_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('billing_mode', sa.String(length=16), nullable=False),
        sa.Column('use_global_pricing', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('custom_pricing', sa.Text(), nullable=True),
        sa.UniqueConstraint('club_id', 'table_number', name='uq_pool_table_club_number'),
    )
    op.create_table(
        'live_session',
        sa.Column('id', sa.Integer(), primary_key=True),
        _club_fk(),
        sa.Column('table_id', sa.Integer(), sa.ForeignKey('pool_table.id'), nullable=False, unique=True),
        sa.Column('players', sa.Text(), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=True),
        sa.Column('paused_at', sa.DateTime(), nullable=True),
        sa.Column('paused_ms', sa.BigInteger(), nullable=False),
        sa.Column('billing_mode', sa.String(length=16), nullable=False),
        sa.Column('frame_count', sa.Integer(), nullable=False),
        sa.Column('items', sa.Text(), nullable=True),
        sa.Column('total_bill', sa.Numeric(10, 2), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'match_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        _club_fk(),
        sa.Column('local_id', sa.String(length=32), nullable=False, unique=True),
        sa.Column('table_number', sa.Integer(), nullable=False),
        sa.Column('players', sa.Text(), nullable=True),
        sa.Column('session_start', sa.DateTime(), nullable=True),
        sa.Column('session_end', sa.DateTime(), nullable=False),
        sa.Column('duration_ms', sa.BigInteger(), nullable=False),
        sa.Column('billing_mode', sa.String(length=16), nullable=False),
        sa.Column('total_bill', sa.Numeric(10, 2), nullable=False),
        sa.Column('payment_method', sa.String(length=8), nullable=False),
        sa.Column('split_count', sa.Integer(), nullable=False),
        sa.Column('qr_used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('gst_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('items', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'member',
        sa.Column('id', sa.Integer(), primary_key=True),
        _club_fk(),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('wins', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('losses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('games_played', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_visit', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'booking',
        sa.Column('id', sa.Integer(), primary_key=True),
        _club_fk(),
        sa.Column('table_id', sa.Integer(), sa.ForeignKey('pool_table.id'), nullable=True),
        sa.Column('customer_name', sa.String(length=64), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('booking_time', sa.DateTime(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
    )
    op.create_table(
        'tournament',
        sa.Column('id', sa.Integer(), primary_key=True),
        _club_fk(),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('entry_fee', sa.Numeric(10, 2), nullable=False),
        sa.Column('prize_pool', sa.Numeric(10, 2), nullable=False),
        sa.Column('max_players', sa.Integer(), nullable=True),
        sa.Column('players', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
    )
    op.create_table(
        'inventory_item',
        sa.Column('id', sa.Integer(), primary_key=True),
        _club_fk(),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('stock', sa.Integer(), nullable=False),
        sa.Column('category', sa.String(length=32), nullable=True),
    )


def downgrade():
    for table in ('inventory_item', 'tournament', 'booking', 'member', 'match_history',
                  'live_session', 'pool_table', 'table_pricing', 'club'):
        op.drop_table(table)
