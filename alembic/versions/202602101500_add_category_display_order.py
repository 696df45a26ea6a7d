"""add display_order to pnl_categories

Revision ID: 202602101500
Revises: 202601050900
Create Date: 2026-02-10 15:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202602101500"
down_revision = "202601050900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("pnl_categories") as batch:
        batch.add_column(sa.Column("display_order", sa.Integer(), nullable=True))

    # Seed per-direction positions in alphabetical order.
    conn = op.get_bind()
    rows = conn.execute(
        sa.text(
            "SELECT id, direction FROM pnl_categories "
            "ORDER BY direction, lower(name), id"
        )
    ).fetchall()
    positions: dict[str, int] = {}
    for category_id, direction in rows:
        position = positions.get(direction, 0)
        conn.execute(
            sa.text("UPDATE pnl_categories SET display_order = :pos WHERE id = :id"),
            {"pos": position, "id": category_id},
        )
        positions[direction] = position + 1


def downgrade() -> None:
    with op.batch_alter_table("pnl_categories") as batch:
        batch.drop_column("display_order")
