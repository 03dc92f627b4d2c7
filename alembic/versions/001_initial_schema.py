"""Initial schema: settlements and subscription cursors.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Settlements table (one row per TokensLocked log)
    op.create_table(
        'settlements',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('fingerprint', sa.String(64), nullable=False),
        sa.Column('source_tx_hash', sa.String(66), nullable=True),
        sa.Column('source_log_index', sa.Integer(), nullable=True),
        sa.Column('source_block_number', sa.BigInteger(), nullable=True),
        sa.Column('origin_address', sa.String(42), nullable=False),
        sa.Column('destination_address', sa.String(44), nullable=False),
        sa.Column('amount', sa.String(40), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('issue_signature', sa.String(100), nullable=True),
        sa.Column('finalize_tx_hash', sa.String(66), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('finalize_attempts', sa.Integer(), nullable=False, default=0),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_settlements_fingerprint', 'settlements', ['fingerprint'], unique=True)
    op.create_index('ix_settlements_status', 'settlements', ['status'])
    op.create_index('ix_settlements_origin_address', 'settlements', ['origin_address'])
    op.create_index('ix_settlements_destination_address', 'settlements', ['destination_address'])

    # Subscription cursors table
    op.create_table(
        'subscription_cursors',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('chain', sa.String(20), nullable=False),
        sa.Column('contract_address', sa.String(42), nullable=False),
        sa.Column('last_block_number', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_cursor_chain_contract',
        'subscription_cursors',
        ['chain', 'contract_address'],
        unique=True,
    )


def downgrade() -> None:
    op.drop_table('subscription_cursors')
    op.drop_table('settlements')
