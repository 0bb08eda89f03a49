"""Expiry sweeper.

Reclaims cards held by pending orders whose payment window has passed.
The sweep is cheap and idempotent, so it runs inline before reservations
and stock queries (throttled), and may also be triggered by an external
timer through the admin maintenance endpoint.
"""

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardvault.application.inventory_ledger import InventoryLedger
from cardvault.application.order_state_machine import OrderStateMachine
from cardvault.infrastructure.cache import CacheInvalidator, CacheTag, LoggingCacheInvalidator
from cardvault.infrastructure.clock import Clock, SweepThrottle, SystemClock
from cardvault.infrastructure.database import transaction

logger = structlog.get_logger()


class ExpirySweeper:
    """Expires abandoned pending orders and releases their cards."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        throttle: SweepThrottle,
        clock: Clock | None = None,
        cache: CacheInvalidator | None = None,
    ) -> None:
        """Initialize sweeper.

        Args:
            session_factory: Factory producing database sessions.
            throttle: Lease limiting inline sweeps.
            clock: Time source for the expiry cut-off.
            cache: Receiver of the invalidation signal.
        """
        self.session_factory = session_factory
        self.throttle = throttle
        self.clock = clock or SystemClock()
        self.cache = cache or LoggingCacheInvalidator()

    async def sweep(self) -> int:
        """Expire due orders and release their cards in one transaction.

        Returns:
            Number of orders expired by this sweep.
        """
        now = self.clock.now()
        async with transaction(self.session_factory) as session:
            orders = OrderStateMachine(session, self.clock)
            ledger = InventoryLedger(session, self.clock)
            order_ids = await orders.expire_due(now)
            released = await ledger.release_many(order_ids)

        if order_ids:
            logger.info(
                "Expired pending orders",
                order_count=len(order_ids),
                cards_released=released,
            )
            self.cache.invalidate(CacheTag.ORDERS, CacheTag.ADMIN_ORDERS, CacheTag.STOCK)
        return len(order_ids)

    async def maybe_sweep(self) -> int | None:
        """Sweep if the throttle interval has elapsed.

        Failures are logged and swallowed; the caller's own operation
        should not fail because housekeeping did.

        Returns:
            Number of orders expired, or None if the sweep was skipped
            or failed.
        """
        if not self.throttle.try_acquire():
            return None
        try:
            return await self.sweep()
        except SQLAlchemyError as e:
            logger.error("Inline expiry sweep failed", error=str(e))
            return None
