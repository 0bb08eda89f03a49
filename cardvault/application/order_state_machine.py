"""Order state machine.

Applies order transitions as conditional updates::

    UPDATE orders SET status = <to> WHERE id = ? AND status = <from>

Illegal transitions are rejected before anything is written. A legal
transition that affects zero rows lost a race against a concurrent
writer; that is reported back as ``applied=False`` and the caller
re-reads the order to decide what it means.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.domain.exceptions import InvalidStateTransitionError, OrderNotFoundError
from cardvault.domain.state_machines import (
    ORDER_EDGES,
    OrderEvent,
    OrderStatus,
    resolve_order_event,
)
from cardvault.domain.value_objects import generate_order_no, to_decimal_amount
from cardvault.infrastructure.clock import Clock, SystemClock
from cardvault.infrastructure.models import OrderModel, OrderStatusHistoryModel

logger = structlog.get_logger()

TransitionGuard = Callable[[OrderModel], None]


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a conditional transition.

    Attributes:
        order_id: The order.
        event: Event that was applied.
        from_status: Status the update was conditioned on.
        to_status: Target status.
        applied: False when a concurrent writer changed the order first.
    """

    order_id: str
    event: OrderEvent
    from_status: OrderStatus
    to_status: OrderStatus
    applied: bool


class OrderStateMachine:
    """Order creation and guarded status transitions.

    Runs inside the caller's transaction.
    """

    def __init__(self, session: AsyncSession, clock: Clock | None = None) -> None:
        """Initialize state machine with database session.

        Args:
            session: Async SQLAlchemy session with an open transaction.
            clock: Time source.
        """
        self.session = session
        self.clock = clock or SystemClock()

    async def create(
        self,
        product_id: str,
        product_name: str,
        unit_price: Decimal,
        quantity: int,
        user_id: str,
        expired_at: datetime,
        payment_method: str = "ldc",
        username: str | None = None,
    ) -> OrderModel:
        """Insert a new pending order.

        ``total_amount`` is fixed here as unit price times quantity and is
        never recomputed.

        Returns:
            The flushed order, with its ID assigned.
        """
        price = to_decimal_amount(unit_price)
        now = self.clock.now()
        order = OrderModel(
            order_no=generate_order_no(int(now.timestamp() * 1000)),
            product_id=product_id,
            product_name=product_name,
            unit_price=price,
            quantity=quantity,
            total_amount=to_decimal_amount(price * quantity),
            payment_method=payment_method,
            status=OrderStatus.PENDING.value,
            user_id=user_id,
            username=username,
            expired_at=expired_at,
            created_at=now,
            updated_at=now,
        )
        self.session.add(order)
        await self.session.flush()

        logger.info(
            "Order created",
            order_id=order.id,
            order_no=order.order_no,
            product_id=product_id,
            quantity=quantity,
            total_amount=f"{order.total_amount:.2f}",
        )
        return order

    async def get(self, order_id: str) -> OrderModel | None:
        """Get order by ID."""
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_order_no(self, order_no: str) -> OrderModel | None:
        """Get order by merchant order number."""
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.order_no == order_no)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def current_status(self, order_id: str) -> OrderStatus | None:
        """Re-read the status column of an order from the database."""
        result = await self.session.execute(
            select(OrderModel.status).where(OrderModel.id == order_id)
        )
        status = result.scalar_one_or_none()
        return OrderStatus(status) if status is not None else None

    async def list_for_user(self, user_id: str) -> list[OrderModel]:
        """List a buyer's orders, newest first."""
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.user_id == user_id)
            .order_by(OrderModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def transition(
        self,
        order_id: str,
        event: OrderEvent,
        guard: TransitionGuard | None = None,
        values: dict[str, Any] | None = None,
        actor: str | None = None,
        reason: str | None = None,
    ) -> TransitionResult:
        """Apply an event to an order as a single conditional update.

        Args:
            order_id: Order to transition.
            event: Event to apply.
            guard: Precondition check receiving the current order; raises
                to veto the transition.
            values: Extra columns to set together with the status.
            actor: Who triggered the transition, for the history row.
            reason: Free-text reason, for the history row.

        Returns:
            TransitionResult; ``applied`` is False when the conditional
            update matched no row.

        Raises:
            OrderNotFoundError: If the order does not exist.
            InvalidStateTransitionError: If the event cannot fire from the
                order's current status.
        """
        order = await self.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        current = OrderStatus(order.status)
        edge = resolve_order_event(order_id, current, event)
        if guard is not None:
            guard(order)

        now = self.clock.now()
        result = await self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.status == current.value)
            .values(status=edge.target.value, updated_at=now, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        applied = (result.rowcount or 0) == 1

        if applied:
            self.session.add(
                OrderStatusHistoryModel(
                    order_id=order_id,
                    from_status=current.value,
                    to_status=edge.target.value,
                    event=event.value,
                    actor=actor,
                    reason=reason,
                    created_at=now,
                )
            )
            await self.session.flush()
            logger.info(
                "Order transitioned",
                order_id=order_id,
                order_event=event.value,
                from_status=current.value,
                to_status=edge.target.value,
                actor=actor,
            )
        else:
            logger.info(
                "Order transition lost race",
                order_id=order_id,
                order_event=event.value,
                expected_status=current.value,
            )

        return TransitionResult(
            order_id=order_id,
            event=event,
            from_status=current,
            to_status=edge.target,
            applied=applied,
        )

    async def claim_refund(self, order_id: str, claimant: str, stale_before: datetime) -> bool:
        """Take the refund claim on a ``refund_pending`` order.

        Only one refund attempt may talk to the gateway for an order at a
        time. The claim is a conditional update that matches only while
        no live claim is held; a claim taken before ``stale_before`` is
        treated as abandoned.

        Args:
            order_id: Order to claim.
            claimant: Identifier of this refund attempt.
            stale_before: Claims older than this may be taken over.

        Returns:
            True if this call now holds the claim.
        """
        result = await self.session.execute(
            update(OrderModel)
            .where(
                OrderModel.id == order_id,
                OrderModel.status == OrderStatus.REFUND_PENDING.value,
                or_(
                    OrderModel.refund_claimed_at.is_(None),
                    OrderModel.refund_claimed_at < stale_before,
                ),
            )
            .values(refund_claimed_by=claimant, refund_claimed_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        claimed = (result.rowcount or 0) == 1
        logger.info("Refund claim", order_id=order_id, claimant=claimant, claimed=claimed)
        return claimed

    async def release_refund_claim(self, order_id: str, claimant: str) -> None:
        """Drop a refund claim, if ``claimant`` still holds it."""
        await self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.refund_claimed_by == claimant)
            .values(refund_claimed_by=None, refund_claimed_at=None)
            .execution_options(synchronize_session=False)
        )

    async def expire_due(self, now: datetime | None = None) -> list[str]:
        """Expire every pending order whose ``expired_at`` has passed.

        A single ``UPDATE ... RETURNING``; orders another sweeper already
        expired no longer match and are not returned.

        Args:
            now: Cut-off time; defaults to the clock.

        Returns:
            IDs of the orders expired by this call.
        """
        now = now or self.clock.now()
        edge = ORDER_EDGES[OrderEvent.EXPIRED]
        (source,) = edge.sources
        result = await self.session.execute(
            update(OrderModel)
            .where(OrderModel.status == source.value, OrderModel.expired_at < now)
            .values(status=edge.target.value, updated_at=now)
            .returning(OrderModel.id)
            .execution_options(synchronize_session=False)
        )
        order_ids = list(result.scalars().all())

        for order_id in order_ids:
            self.session.add(
                OrderStatusHistoryModel(
                    order_id=order_id,
                    from_status=source.value,
                    to_status=edge.target.value,
                    event=OrderEvent.EXPIRED.value,
                    actor="system:sweeper",
                    created_at=now,
                )
            )
        if order_ids:
            await self.session.flush()
        return order_ids

    async def require_applied(self, result: TransitionResult) -> None:
        """Raise for a lost race as if the transition had been illegal.

        Used where the caller has no idempotent answer to fall back to.

        Raises:
            InvalidStateTransitionError: If ``result`` was not applied.
        """
        if result.applied:
            return
        current = await self.current_status(result.order_id)
        raise InvalidStateTransitionError(
            entity_type="Order",
            entity_id=result.order_id,
            current_state=current.value if current else "unknown",
            target_state=result.to_status.value,
            allowed_transitions=[s.value for s in current.allowed_transitions()] if current else [],
        )
