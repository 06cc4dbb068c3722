"""add trial and winback fields to customer

Revision ID: 0003
Revises: 0002
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine import Connection


revision: str = '0003'
down_revision: Union[str, None] = '0002'
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


_COLUMNS = (
    ('trial_inactive_notified_at', sa.DateTime(timezone=True)),
    ('winback_offer_sent_at', sa.DateTime(timezone=True)),
    ('winback_offer_expires_at', sa.DateTime(timezone=True)),
    ('winback_offer_price', sa.Integer()),
    ('winback_offer_devices', sa.Integer()),
    ('winback_offer_months', sa.Integer()),
)


def upgrade() -> None:
    conn = op.get_bind()

    for name, column_type in _COLUMNS:
        if not _has_column(conn, 'customer', name):
            op.add_column('customer', sa.Column(name, column_type, nullable=True))


def downgrade() -> None:
    conn = op.get_bind()

    for name, _ in reversed(_COLUMNS):
        if _has_column(conn, 'customer', name):
            op.drop_column('customer', name)
