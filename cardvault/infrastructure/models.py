"""SQLAlchemy models for database tables.

Provides ORM models for cards, orders, order status history and
per-product sales counters.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from cardvault.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ============================================================================
# Card Models
# ============================================================================


class CardModel(Base):
    """Card model for database persistence.

    One redeemable secret belonging to a product. The card's status moves
    between available, locked (reserved by a pending order) and sold.
    """

    __tablename__ = "cards"
    __table_args__ = (
        Index("cards_product_available_idx", "product_id", "status"),
        CheckConstraint(
            "(status = 'available' AND order_id IS NULL) "
            "OR (status IN ('locked', 'sold') AND order_id IS NOT NULL)",
            name="cards_order_matches_status",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    product_id = Column(String(36), nullable=False, index=True)
    content = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="available", index=True)
    order_id = Column(
        String(36),
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    locked_at = Column(DateTime(timezone=True), nullable=True)
    sold_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # Relationships
    order = relationship("OrderModel", back_populates="cards")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (never includes the secret content)."""
        return {
            "id": self.id,
            "product_id": self.product_id,
            "status": self.status,
            "order_id": self.order_id,
            "locked_at": _iso(self.locked_at),
            "sold_at": _iso(self.sold_at),
        }


# ============================================================================
# Order Models
# ============================================================================


class OrderModel(Base):
    """Order model for database persistence.

    Purchase of a fixed quantity of cards at a snapshot price. Tracks the
    order lifecycle from reservation through payment to refund.
    """

    __tablename__ = "orders"
    __table_args__ = (
        Index("orders_status_expired_at_idx", "status", "expired_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    order_no = Column(String(32), nullable=False, unique=True)
    product_id = Column(String(36), nullable=True, index=True)
    product_name = Column(String(255), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)

    # Payment info
    payment_method = Column(String(20), nullable=False, default="ldc")
    status = Column(String(20), nullable=False, default="pending", index=True)
    trade_no = Column(String(64), nullable=True, index=True)

    # Buyer
    user_id = Column(String(64), nullable=False, index=True)
    username = Column(String(255), nullable=True)

    # Timestamps
    expired_at = Column(DateTime(timezone=True), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    # Refund
    refund_reason = Column(Text, nullable=True)
    refund_requested_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    admin_remark = Column(Text, nullable=True)

    # Held while a refund is being executed against the gateway
    refund_claimed_by = Column(String(100), nullable=True)
    refund_claimed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    cards = relationship("CardModel", back_populates="order")
    status_history = relationship(
        "OrderStatusHistoryModel",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistoryModel.created_at",
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "order_no": self.order_no,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "total_amount": f"{self.total_amount:.2f}",
            "payment_method": self.payment_method,
            "status": self.status,
            "trade_no": self.trade_no,
            "user_id": self.user_id,
            "expired_at": _iso(self.expired_at),
            "paid_at": _iso(self.paid_at),
            "refund_reason": self.refund_reason,
            "refund_requested_at": _iso(self.refund_requested_at),
            "refunded_at": _iso(self.refunded_at),
            "created_at": _iso(self.created_at),
        }


class OrderStatusHistoryModel(Base):
    """Order status history model for audit trail.

    Tracks all status transitions for an order.
    """

    __tablename__ = "order_status_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    order_id = Column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    event = Column(String(40), nullable=False)
    reason = Column(Text, nullable=True)
    actor = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # Relationships
    order = relationship("OrderModel", back_populates="status_history")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "order_id": self.order_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "event": self.event,
            "reason": self.reason,
            "actor": self.actor,
            "created_at": _iso(self.created_at),
        }


# ============================================================================
# Sales Counter
# ============================================================================


class ProductSalesModel(Base):
    """Per-product count of cards sold through completed orders."""

    __tablename__ = "product_sales"

    product_id = Column(String(36), primary_key=True)
    sales_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )
