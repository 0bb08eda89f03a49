"""Create cards, orders, order_status_history and product_sales tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create card and order tables."""
    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_no", sa.String(32), nullable=False, unique=True),
        sa.Column("product_id", sa.String(36), nullable=True, index=True),
        # Snapshot of the product at checkout
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("unit_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        # Payment
        sa.Column("payment_method", sa.String(20), nullable=False, server_default="ldc"),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="pending",
            index=True,
        ),
        sa.Column("trade_no", sa.String(64), nullable=True, index=True),
        # Buyer
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("username", sa.String(255), nullable=True),
        # Lifecycle
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        # Refund
        sa.Column("refund_reason", sa.Text, nullable=True),
        sa.Column("refund_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_remark", sa.Text, nullable=True),
        # Timestamps
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    # Sweeper predicate
    op.create_index(
        "orders_status_expired_at_idx",
        "orders",
        ["status", "expired_at"],
    )

    op.create_table(
        "cards",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("product_id", sa.String(36), nullable=False, index=True),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="available",
            index=True,
        ),
        sa.Column(
            "order_id",
            sa.String(36),
            sa.ForeignKey("orders.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sold_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        # A card holds an order exactly while it is locked or sold
        sa.CheckConstraint(
            "(status = 'available' AND order_id IS NULL) "
            "OR (status IN ('locked', 'sold') AND order_id IS NOT NULL)",
            name="cards_order_matches_status",
        ),
    )

    op.create_index(
        "cards_product_available_idx",
        "cards",
        ["product_id", "status"],
    )

    op.create_table(
        "order_status_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "order_id",
            sa.String(36),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("from_status", sa.String(20), nullable=True),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("event", sa.String(40), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("actor", sa.String(100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "product_sales",
        sa.Column("product_id", sa.String(36), primary_key=True),
        sa.Column("sales_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    """Drop card and order tables."""
    op.drop_table("product_sales")
    op.drop_table("order_status_history")
    op.drop_index("cards_product_available_idx", table_name="cards")
    op.drop_table("cards")
    op.drop_index("orders_status_expired_at_idx", table_name="orders")
    op.drop_table("orders")
