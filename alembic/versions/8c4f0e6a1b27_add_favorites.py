"""Add customer favorites

Revision ID: 8c4f0e6a1b27
Revises: 3b1e9c2d7a40
Create Date: 2026-10-20 10:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "8c4f0e6a1b27"
down_revision: Union[str, None] = "3b1e9c2d7a40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "favorites",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("customer_id", "product_id", name="uq_favorites_customer_product"),
    )
    op.create_index("ix_favorites_tenant_id", "favorites", ["tenant_id"])
    op.create_index("ix_favorites_customer_id", "favorites", ["customer_id"])


def downgrade() -> None:
    op.drop_index("ix_favorites_customer_id", table_name="favorites")
    op.drop_index("ix_favorites_tenant_id", table_name="favorites")
    op.drop_table("favorites")
