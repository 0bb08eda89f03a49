"""Inventory ledger.

Owns every card status change: reservation against a pending order,
fulfillment, release and return to the pool. All methods run inside the
caller's transaction; the caller decides when to commit.
"""

from collections.abc import Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.domain.exceptions import InsufficientStockError, ValidationError
from cardvault.domain.state_machines import CardStatus
from cardvault.infrastructure.clock import Clock, SystemClock
from cardvault.infrastructure.models import CardModel, ProductSalesModel

logger = structlog.get_logger()

# Dialect-specific INSERT supporting ON CONFLICT
_UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class InventoryLedger:
    """Card status transitions with row-level locking.

    Example usage:
        async with transaction(session_factory) as session:
            ledger = InventoryLedger(session)
            card_ids = await ledger.reserve(product_id, 3, order.id)
    """

    def __init__(self, session: AsyncSession, clock: Clock | None = None) -> None:
        """Initialize ledger with database session.

        Args:
            session: Async SQLAlchemy session with an open transaction.
            clock: Time source for lock and sale timestamps.
        """
        self.session = session
        self.clock = clock or SystemClock()

    async def reserve(self, product_id: str, quantity: int, order_id: str) -> list[str]:
        """Lock ``quantity`` available cards of a product for an order.

        Selects candidate rows with ``FOR UPDATE SKIP LOCKED`` so the
        locks cover exactly the rows this transaction will flip. Rows
        held by a concurrent reservation are skipped, never waited on.

        Args:
            product_id: Product to reserve against.
            quantity: Number of cards required.
            order_id: Pending order that will own the cards.

        Returns:
            IDs of the locked cards.

        Raises:
            ValidationError: If quantity is not positive.
            InsufficientStockError: If fewer cards could be locked. The
                caller's transaction must roll back.
        """
        if quantity < 1:
            raise ValidationError("Quantity must be positive", details={"quantity": quantity})

        query = (
            select(CardModel.id)
            .where(
                CardModel.product_id == product_id,
                CardModel.status == CardStatus.AVAILABLE.value,
            )
            .limit(quantity)
            .with_for_update(skip_locked=True)
        )
        result = await self.session.execute(query)
        card_ids = list(result.scalars().all())

        if len(card_ids) < quantity:
            logger.info(
                "Reservation aborted, insufficient stock",
                product_id=product_id,
                requested=quantity,
                available=len(card_ids),
            )
            raise InsufficientStockError(product_id, quantity, len(card_ids))

        flipped = await self._update(
            update(CardModel)
            .where(
                CardModel.id.in_(card_ids),
                CardModel.status == CardStatus.AVAILABLE.value,
            )
            .values(
                status=CardStatus.LOCKED.value,
                order_id=order_id,
                locked_at=self.clock.now(),
            )
        )
        if flipped != quantity:
            raise InsufficientStockError(product_id, quantity, flipped)

        logger.info(
            "Cards reserved",
            product_id=product_id,
            order_id=order_id,
            quantity=quantity,
        )
        return card_ids

    async def fulfill(self, order_id: str) -> int:
        """Mark every card locked for an order as sold.

        Returns:
            Number of cards sold; 0 when nothing was locked.
        """
        sold = await self._update(
            update(CardModel)
            .where(
                CardModel.order_id == order_id,
                CardModel.status == CardStatus.LOCKED.value,
            )
            .values(status=CardStatus.SOLD.value, sold_at=self.clock.now())
        )
        logger.info("Cards fulfilled", order_id=order_id, count=sold)
        return sold

    async def release(self, order_id: str) -> int:
        """Return cards locked for an order to the available pool.

        Returns:
            Number of cards released.
        """
        return await self.release_many([order_id])

    async def release_many(self, order_ids: Sequence[str]) -> int:
        """Return cards locked for any of the orders to the available pool.

        Args:
            order_ids: Orders whose reservations are abandoned.

        Returns:
            Number of cards released.
        """
        if not order_ids:
            return 0
        released = await self._update(
            update(CardModel)
            .where(
                CardModel.order_id.in_(list(order_ids)),
                CardModel.status == CardStatus.LOCKED.value,
            )
            .values(status=CardStatus.AVAILABLE.value, order_id=None, locked_at=None)
        )
        if released:
            logger.info("Cards released", order_count=len(order_ids), count=released)
        return released

    async def return_to_pool(self, order_id: str) -> int:
        """Put the sold cards of a refunded order back on sale.

        The buyer has already seen these secrets, so a returned card can
        be resold with content that is no longer private.

        Returns:
            Number of cards returned.
        """
        returned = await self._update(
            update(CardModel)
            .where(
                CardModel.order_id == order_id,
                CardModel.status == CardStatus.SOLD.value,
            )
            .values(
                status=CardStatus.AVAILABLE.value,
                order_id=None,
                locked_at=None,
                sold_at=None,
            )
        )
        if returned:
            logger.warning(
                "Disclosed cards returned to the sellable pool",
                order_id=order_id,
                count=returned,
            )
        return returned

    async def available_count(self, product_id: str) -> int:
        """Count available cards of a product."""
        result = await self.session.execute(
            select(func.count())
            .select_from(CardModel)
            .where(
                CardModel.product_id == product_id,
                CardModel.status == CardStatus.AVAILABLE.value,
            )
        )
        return int(result.scalar_one())

    async def cards_for_order(
        self, order_id: str, status: CardStatus | None = None
    ) -> list[CardModel]:
        """List cards referencing an order.

        Args:
            order_id: Order ID.
            status: Optional status filter.

        Returns:
            Cards ordered by creation time.
        """
        query = select(CardModel).where(CardModel.order_id == order_id)
        if status is not None:
            query = query.where(CardModel.status == status.value)
        result = await self.session.execute(query.order_by(CardModel.created_at, CardModel.id))
        return list(result.scalars().all())

    async def record_sales(self, product_id: str | None, quantity: int) -> None:
        """Add to a product's sales counter.

        A single ``INSERT ... ON CONFLICT DO UPDATE``, so the first two
        sales of a product can be recorded concurrently.
        """
        if not product_id:
            return
        now = self.clock.now()
        dialect = self.session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Unsupported database dialect for sales counter: {dialect}")

        statement = insert(ProductSalesModel).values(
            product_id=product_id, sales_count=quantity, updated_at=now
        )
        await self.session.execute(
            statement.on_conflict_do_update(
                index_elements=[ProductSalesModel.product_id],
                set_={
                    "sales_count": ProductSalesModel.sales_count + statement.excluded.sales_count,
                    "updated_at": statement.excluded.updated_at,
                },
            )
        )

    async def sales_count(self, product_id: str) -> int:
        """Get a product's sales counter."""
        result = await self.session.execute(
            select(ProductSalesModel.sales_count).where(
                ProductSalesModel.product_id == product_id
            )
        )
        return int(result.scalar_one_or_none() or 0)

    async def _update(self, statement) -> int:
        result = await self.session.execute(
            statement.execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
