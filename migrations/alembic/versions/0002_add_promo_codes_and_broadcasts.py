"""add promo codes and broadcast history

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine import Connection


revision: str = '0002'
down_revision: Union[str, None] = '0001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(conn: Connection, table_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_name = :table_name)"
        ),
        {'table_name': table_name},
    )
    return bool(result.scalar())



def _has_index(conn: Connection, index_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM pg_indexes "
            "WHERE schemaname = 'public' AND indexname = :index_name)"
        ),
        {'index_name': index_name},
    )
    return bool(result.scalar())


def upgrade() -> None:
    conn = op.get_bind()

    if not _has_table(conn, 'promo_code'):
        op.create_table(
            'promo_code',
            sa.Column('id', sa.BigInteger(), primary_key=True),
            sa.Column('code', sa.String(length=50), nullable=False),
            sa.Column('bonus_days', sa.Integer(), nullable=False),
            sa.Column('max_activations', sa.Integer(), nullable=False),
            sa.Column('current_activations', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
            sa.Column('created_by_admin_id', sa.BigInteger(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint('code', name='uq_promo_code_code'),
        )

    if not _has_table(conn, 'promo_code_activation'):
        op.create_table(
            'promo_code_activation',
            sa.Column('id', sa.BigInteger(), primary_key=True),
            sa.Column(
                'promo_code_id',
                sa.BigInteger(),
                sa.ForeignKey('promo_code.id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column(
                'customer_id',
                sa.BigInteger(),
                sa.ForeignKey('customer.id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column('activated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.UniqueConstraint('promo_code_id', 'customer_id', name='uq_promo_code_activation_code_customer'),
        )

    if not _has_index(conn, 'ix_promo_code_activation_customer_id'):
        op.create_index('ix_promo_code_activation_customer_id', 'promo_code_activation', ['customer_id'])

    if not _has_table(conn, 'broadcast_history'):
        op.create_table(
            'broadcast_history',
            sa.Column('id', sa.BigInteger(), primary_key=True),
            sa.Column('target_type', sa.String(length=50), nullable=False),
            sa.Column('message_text', sa.Text(), nullable=False),
            sa.Column('total_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('sent_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('failed_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        )


def downgrade() -> None:
    conn = op.get_bind()

    if _has_table(conn, 'broadcast_history'):
        op.drop_table('broadcast_history')
    if _has_table(conn, 'promo_code_activation'):
        op.drop_table('promo_code_activation')
    if _has_table(conn, 'promo_code'):
        op.drop_table('promo_code')
