"""create territory market schema

Revision ID: 3a7c9e1f2b40
Revises:
Create Date: 2026-10-12 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3a7c9e1f2b40'
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def upgrade():
    op.create_table(
        'territory',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('owner_id', sa.String(128), nullable=True),
        sa.Column('owner_name', sa.String(255), nullable=True),
        sa.Column('sovereignty', sa.String(32), nullable=False, server_default='unconquered'),
        sa.Column('protection_ends_at', sa.DateTime(), nullable=True),
        sa.Column('base_price', MONEY, nullable=True),
        sa.Column('market_base_price', MONEY, nullable=True),
        sa.Column('last_winning_amount', MONEY, nullable=True),
        sa.Column('current_auction_id', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_territory_owner_id', 'territory', ['owner_id'])

    op.create_table(
        'auction',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('territory_id', sa.String(255), sa.ForeignKey('territory.id'), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('min_bid', MONEY, nullable=False),
        sa.Column('current_bid', MONEY, nullable=True),
        sa.Column('current_bidder_id', sa.String(128), nullable=True),
        sa.Column('winning_amount', MONEY, nullable=True),
        sa.Column('winner_user_id', sa.String(128), nullable=True),
        sa.Column('winning_bid_id', sa.Integer(), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('transferred_at', sa.DateTime(), nullable=True),
        sa.Column('cancel_reason', sa.String(32), nullable=True),
        sa.Column('transfer_error', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_auction_territory_id', 'auction', ['territory_id'])
    # Settlement scans active auctions by end time
    op.create_index('ix_auction_status_end_time', 'auction', ['status', 'end_time'])

    # territory <-> auction is circular, so this key is added once both tables exist
    op.create_foreign_key(
        'fk_territory_current_auction_id', 'territory', 'auction', ['current_auction_id'], ['id']
    )

    op.create_table(
        'bid',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('auction_id', sa.Integer(), sa.ForeignKey('auction.id'), nullable=False),
        sa.Column('bidder_id', sa.String(128), nullable=False),
        sa.Column('bidder_name', sa.String(255), nullable=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_bid_bidder_id', 'bid', ['bidder_id'])
    op.create_index(
        'ix_bid_auction_amount', 'bid', ['auction_id', sa.text('amount DESC'), 'created_at']
    )

    op.create_table(
        'wallet',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('balance', MONEY, nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative'),
    )
    op.create_index('ix_wallet_user_id', 'wallet', ['user_id'], unique=True)

    op.create_table(
        'wallet_transaction',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('wallet_id', sa.Integer(), sa.ForeignKey('wallet.id'), nullable=False),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('type', sa.String(16), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('balance_after', MONEY, nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reference_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_wallet_transaction_wallet_id', 'wallet_transaction', ['wallet_id'])
    op.create_index('ix_wallet_transaction_user_id', 'wallet_transaction', ['user_id'])
    op.create_index('ix_wallet_transaction_reference_id', 'wallet_transaction', ['reference_id'])

    op.create_table(
        'ownership_transfer',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.String(255), nullable=False, unique=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True, unique=True),
        sa.Column('territory_id', sa.String(255), sa.ForeignKey('territory.id'), nullable=False),
        sa.Column('previous_owner_id', sa.String(128), nullable=True),
        sa.Column('new_owner_id', sa.String(128), nullable=False),
        sa.Column('new_owner_name', sa.String(255), nullable=False),
        sa.Column('price', MONEY, nullable=False),
        sa.Column('reason', sa.String(32), nullable=False),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('auction_id', sa.Integer(), sa.ForeignKey('auction.id'), nullable=True),
        sa.Column('protection_ends_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_ownership_transfer_territory_id', 'ownership_transfer', ['territory_id'])
    op.create_index('ix_ownership_transfer_auction_id', 'ownership_transfer', ['auction_id'])

    op.create_table(
        'payment',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payment_user_id', 'payment', ['user_id'])


def downgrade():
    op.drop_table('payment')
    op.drop_table('ownership_transfer')
    op.drop_table('wallet_transaction')
    op.drop_table('wallet')
    op.drop_table('bid')
    op.drop_constraint('fk_territory_current_auction_id', 'territory', type_='foreignkey')
    op.drop_table('auction')
    op.drop_table('territory')
