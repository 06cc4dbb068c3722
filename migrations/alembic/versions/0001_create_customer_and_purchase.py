"""create customer and purchase tables

Revision ID: 0001
Revises: None
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine import Connection


revision: str = '0001'
down_revision: Union[str, None] = None
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

    if not _has_table(conn, 'customer'):
        op.create_table(
            'customer',
            sa.Column('id', sa.BigInteger(), primary_key=True),
            sa.Column('telegram_id', sa.BigInteger(), nullable=False),
            sa.Column('expire_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('subscription_link', sa.Text(), nullable=True),
            sa.Column('language', sa.String(length=10), nullable=False, server_default='ru'),
            sa.UniqueConstraint('telegram_id', name='uq_customer_telegram_id'),
        )

    if not _has_index(conn, 'ix_customer_telegram_id'):
        op.create_index('ix_customer_telegram_id', 'customer', ['telegram_id'])

    if not _has_table(conn, 'purchase'):
        op.create_table(
            'purchase',
            sa.Column('id', sa.BigInteger(), primary_key=True),
            sa.Column('amount', sa.Float(), nullable=False),
            sa.Column('currency', sa.String(length=10), nullable=False, server_default='RUB'),
            sa.Column(
                'customer_id',
                sa.BigInteger(),
                sa.ForeignKey('customer.id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('month', sa.Integer(), nullable=False),
            sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('expire_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='new'),
            sa.Column('invoice_type', sa.String(length=20), nullable=False),
            sa.Column('crypto_invoice_id', sa.BigInteger(), nullable=True),
            sa.Column('crypto_invoice_url', sa.Text(), nullable=True),
            sa.Column('yookasa_id', sa.String(length=64), nullable=True),
            sa.Column('yookasa_url', sa.Text(), nullable=True),
        )

    if not _has_index(conn, 'ix_purchase_customer_id'):
        op.create_index('ix_purchase_customer_id', 'purchase', ['customer_id'])
    if not _has_index(conn, 'ix_purchase_yookasa_id'):
        op.create_index('ix_purchase_yookasa_id', 'purchase', ['yookasa_id'])
    if not _has_index(conn, 'ix_purchase_invoice_type_status'):
        op.create_index('ix_purchase_invoice_type_status', 'purchase', ['invoice_type', 'status'])


def downgrade() -> None:
    conn = op.get_bind()

    if _has_table(conn, 'purchase'):
        op.drop_table('purchase')
    if _has_table(conn, 'customer'):
        op.drop_table('customer')
