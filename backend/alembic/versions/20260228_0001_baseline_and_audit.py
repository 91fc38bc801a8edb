"""baseline schema: intake, counting, inspection, outbound, finance, audit

Revision ID: 20260228_0001
Revises:
Create Date: 2026-02-28 12:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from parcel_wms.db import Base
from parcel_wms import models  # noqa: F401


# revision identifiers, used by Alembic.
revision: str = "20260228_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _has_column(inspector: sa.Inspector, table_name: str, column_name: str) -> bool:
    if not _has_table(inspector, table_name):
        return False
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)

    # databases created before counting tracked timestamps and abnormal flags
    inspector = sa.inspect(bind)
    if not _has_column(inspector, "packages", "counted_at"):
        op.add_column("packages", sa.Column("counted_at", sa.DateTime(), nullable=True))
    if not _has_column(inspector, "packages", "is_abnormal"):
        op.add_column("packages", sa.Column("is_abnormal", sa.Boolean(), server_default=sa.false(), nullable=False))
    if not _has_column(inspector, "inbound_items", "passed_qty"):
        op.add_column("inbound_items", sa.Column("passed_qty", sa.Integer(), server_default="0", nullable=False))
    if not _has_column(inspector, "inbound_items", "failed_qty"):
        op.add_column("inbound_items", sa.Column("failed_qty", sa.Integer(), server_default="0", nullable=False))
    if not _has_column(inspector, "items", "counted"):
        op.add_column("items", sa.Column("counted", sa.Boolean(), server_default=sa.false(), nullable=False))
    if not _has_column(inspector, "outbound_orders", "shipped_at"):
        op.add_column("outbound_orders", sa.Column("shipped_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
