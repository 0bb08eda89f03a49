"""Add refund claim columns to orders.

Revision ID: 002
Revises: 001
Create Date: 2026-10-20

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add refund_claimed_by and refund_claimed_at."""
    op.add_column("orders", sa.Column("refund_claimed_by", sa.String(100), nullable=True))
    op.add_column(
        "orders", sa.Column("refund_claimed_at", sa.DateTime(timezone=True), nullable=True)
    )


def downgrade() -> None:
    """Drop the refund claim columns."""
    op.drop_column("orders", "refund_claimed_at")
    op.drop_column("orders", "refund_claimed_by")
