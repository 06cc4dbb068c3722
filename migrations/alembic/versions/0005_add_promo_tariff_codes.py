"""add promo tariff codes and offer snapshot fields

Revision ID: 0005
Revises: 0004
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine import Connection


revision: str = '0005'
down_revision: Union[str, None] = '0004'
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



def _has_column(conn: Connection, table_name: str, column_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM information_schema.columns "
            "WHERE table_schema = 'public' AND table_name = :table_name AND column_name = :column_name)"
        ),
        {'table_name': table_name, 'column_name': column_name},
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

    if not _has_table(conn, 'promo_tariff_code'):
        op.create_table(
            'promo_tariff_code',
            sa.Column('id', sa.BigInteger(), primary_key=True),
            sa.Column('code', sa.String(length=50), nullable=False),
            sa.Column('price', sa.Integer(), nullable=False),
            sa.Column('devices', sa.Integer(), nullable=False),
            sa.Column('months', sa.Integer(), nullable=False),
            sa.Column('max_activations', sa.Integer(), nullable=False),
            sa.Column('current_activations', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('valid_hours', sa.Integer(), nullable=False, server_default=sa.text('24')),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
            sa.Column('created_by_admin_id', sa.BigInteger(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint('code', name='uq_promo_tariff_code_code'),
        )

    if not _has_table(conn, 'promo_tariff_activation'):
        op.create_table(
            'promo_tariff_activation',
            sa.Column('id', sa.BigInteger(), primary_key=True),
            sa.Column(
                'promo_tariff_id',
                sa.BigInteger(),
                sa.ForeignKey('promo_tariff_code.id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column(
                'customer_id',
                sa.BigInteger(),
                sa.ForeignKey('customer.id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column('activated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.UniqueConstraint('promo_tariff_id', 'customer_id', name='uq_promo_tariff_activation_code_customer'),
        )

    if not _has_index(conn, 'ix_promo_tariff_activation_customer_id'):
        op.create_index('ix_promo_tariff_activation_customer_id', 'promo_tariff_activation', ['customer_id'])

    for name, column_type in (
        ('promo_offer_price', sa.Integer()),
        ('promo_offer_devices', sa.Integer()),
        ('promo_offer_months', sa.Integer()),
        ('promo_offer_expires_at', sa.DateTime(timezone=True)),
    ):
        if not _has_column(conn, 'customer', name):
            op.add_column('customer', sa.Column(name, column_type, nullable=True))

    if not _has_column(conn, 'customer', 'promo_offer_code_id'):
        op.add_column(
            'customer',
            sa.Column(
                'promo_offer_code_id',
                sa.BigInteger(),
                sa.ForeignKey('promo_tariff_code.id', ondelete='SET NULL'),
                nullable=True,
            ),
        )

    for name, column_type in (
        ('tariff_name', sa.String(length=100)),
        ('device_limit', sa.Integer()),
        ('offer_kind', sa.String(length=20)),
    ):
        if not _has_column(conn, 'purchase', name):
            op.add_column('purchase', sa.Column(name, column_type, nullable=True))


def downgrade() -> None:
    conn = op.get_bind()

    for name in ('offer_kind', 'device_limit', 'tariff_name'):
        if _has_column(conn, 'purchase', name):
            op.drop_column('purchase', name)

    for name in (
        'promo_offer_code_id',
        'promo_offer_expires_at',
        'promo_offer_months',
        'promo_offer_devices',
        'promo_offer_price',
    ):
        if _has_column(conn, 'customer', name):
            op.drop_column('customer', name)

    if _has_table(conn, 'promo_tariff_activation'):
        op.drop_table('promo_tariff_activation')
    if _has_table(conn, 'promo_tariff_code'):
        op.drop_table('promo_tariff_code')
