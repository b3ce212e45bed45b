"""create usage_records and subscriptions

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "0a1b2c3d4e5f"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # =========================================================
    # 1. Plan assignment per identity
    # =========================================================
    op.create_table(
        "subscriptions",
        sa.Column("identity", sa.String(255), primary_key=True),
        sa.Column("plan_tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # =========================================================
    # 2. Monthly AI request counters
    # =========================================================
    op.create_table(
        "usage_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("identity", sa.String(255), nullable=False, index=True),
        sa.Column("period_key", sa.String(7), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.UniqueConstraint("identity", "period_key", name="uq_usage_identity_period"),
    )


def downgrade() -> None:
    op.drop_table("usage_records")
    op.drop_table("subscriptions")
