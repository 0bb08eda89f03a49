"""Test data helpers and constants shared across test modules."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardvault.application.inventory_ledger import InventoryLedger
from cardvault.application.order_state_machine import OrderStateMachine
from cardvault.domain.state_machines import OrderEvent
from cardvault.infrastructure.clock import ManualClock
from cardvault.infrastructure.database import transaction
from cardvault.infrastructure.gateway_client import generate_sign
from cardvault.infrastructure.models import CardModel, OrderModel

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
PRODUCT_ID = "prod-steam-10"
MERCHANT_PID = "1001"
MERCHANT_SECRET = "test-merchant-secret"

# ============================================================================
# Data helpers
# ============================================================================


async def add_cards(
    session_factory: async_sessionmaker[AsyncSession],
    count: int,
    product_id: str = PRODUCT_ID,
) -> list[str]:
    """Insert available cards and return their IDs."""
    async with transaction(session_factory) as session:
        cards = [
            CardModel(product_id=product_id, content=f"CODE-{i:03d}", status="available")
            for i in range(count)
        ]
        session.add_all(cards)
        await session.flush()
        return [card.id for card in cards]


async def card_statuses(
    session_factory: async_sessionmaker[AsyncSession],
    product_id: str = PRODUCT_ID,
) -> dict[str, int]:
    """Count cards of a product by status."""
    async with session_factory() as session:
        result = await session.execute(
            select(CardModel.status).where(CardModel.product_id == product_id)
        )
        counts: dict[str, int] = {}
        for status in result.scalars():
            counts[status] = counts.get(status, 0) + 1
        return counts


async def load_order(
    session_factory: async_sessionmaker[AsyncSession], order_id: str
) -> OrderModel:
    async with session_factory() as session:
        return await session.get(OrderModel, order_id, populate_existing=True)


def expiry_after(clock: ManualClock, minutes: int = 30) -> datetime:
    return clock.now() + timedelta(minutes=minutes)


async def place_order(
    session_factory: async_sessionmaker[AsyncSession],
    clock: ManualClock,
    quantity: int = 1,
    user_id: str = "user-1",
    unit_price: Decimal = Decimal("10.00"),
    product_id: str = PRODUCT_ID,
) -> OrderModel:
    """Create a pending order holding ``quantity`` reserved cards."""
    async with transaction(session_factory) as session:
        order = await OrderStateMachine(session, clock).create(
            product_id=product_id,
            product_name="Steam Wallet 10",
            unit_price=unit_price,
            quantity=quantity,
            user_id=user_id,
            expired_at=expiry_after(clock),
        )
        await InventoryLedger(session, clock).reserve(product_id, quantity, order.id)
        return order


async def pay_order(
    session_factory: async_sessionmaker[AsyncSession],
    clock: ManualClock,
    order_id: str,
    trade_no: str = "T202603010001",
) -> None:
    """Apply a confirmed payment directly, as the webhook would."""
    async with transaction(session_factory) as session:
        result = await OrderStateMachine(session, clock).transition(
            order_id,
            OrderEvent.PAYMENT_CONFIRMED,
            values={"trade_no": trade_no, "paid_at": clock.now()},
        )
        assert result.applied
        await InventoryLedger(session, clock).fulfill(order_id)


# ============================================================================
# HTTP helpers
# ============================================================================


def principal_headers(principal_id: str = "user-1", role: str = "buyer") -> dict[str, str]:
    """Headers the upstream auth layer sets for an authenticated caller."""
    return {"X-Principal-Id": principal_id, "X-Principal-Role": role}


BUYER_HEADERS = principal_headers()
OTHER_BUYER_HEADERS = principal_headers("user-2")
ADMIN_HEADERS = principal_headers("admin-1", "admin")


def signed_notification(
    order_no: str,
    money: str,
    trade_no: str = "T202603010001",
    secret: str = MERCHANT_SECRET,
    **overrides: str,
) -> dict[str, str]:
    """Gateway notification parameters for an order, signed with ``secret``."""
    params = {
        "pid": MERCHANT_PID,
        "trade_no": trade_no,
        "out_trade_no": order_no,
        "type": "epay",
        "name": "Steam Wallet 10",
        "money": money,
        "trade_status": "TRADE_SUCCESS",
        **overrides,
    }
    return {**params, "sign": generate_sign(params, secret), "sign_type": "MD5"}
