"""add recurring payment fields to customer

Revision ID: 0004
Revises: 0003
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine import Connection


revision: str = '0004'
down_revision: Union[str, None] = '0003'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_column(conn: Connection, table_name: str, column_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM information_schema.columns "
            "WHERE table_schema = 'public' AND table_name = :table_name AND column_name = :column_name)"
        ),
        {'table_name': table_name, 'column_name': column_name},
    )
    return bool(result.scalar())


_NULLABLE_COLUMNS = (
    ('payment_method_id', sa.String(length=255)),
    ('recurring_tariff_name', sa.String(length=100)),
    ('recurring_months', sa.Integer()),
    ('recurring_amount', sa.Integer()),
    ('recurring_notified_at', sa.DateTime(timezone=True)),
)


def upgrade() -> None:
    conn = op.get_bind()

    if not _has_column(conn, 'customer', 'recurring_enabled'):
        op.add_column(
            'customer',
            sa.Column('recurring_enabled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        )

    for name, column_type in _NULLABLE_COLUMNS:
        if not _has_column(conn, 'customer', name):
            op.add_column('customer', sa.Column(name, column_type, nullable=True))


def downgrade() -> None:
    conn = op.get_bind()

    for name, _ in reversed(_NULLABLE_COLUMNS):
        if _has_column(conn, 'customer', name):
            op.drop_column('customer', name)
    if _has_column(conn, 'customer', 'recurring_enabled'):
        op.drop_column('customer', 'recurring_enabled')
