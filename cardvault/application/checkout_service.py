"""Checkout application service.

Orchestrates the buyer side of an order:
- Creating an order and reserving its cards in one transaction
- Building (and rebuilding) the signed payment form
- Buyer order views with card disclosure
- Admin manual completion
"""

from dataclasses import dataclass, field
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardvault.application.expiry_sweeper import ExpirySweeper
from cardvault.application.inventory_ledger import InventoryLedger
from cardvault.application.order_state_machine import OrderStateMachine
from cardvault.domain.exceptions import (
    GatewayError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    ValidationError,
)
from cardvault.domain.principal import Capability, Principal
from cardvault.domain.state_machines import CardStatus, OrderEvent, OrderStatus
from cardvault.infrastructure.cache import CacheInvalidator, CacheTag, LoggingCacheInvalidator
from cardvault.infrastructure.catalog import Catalog
from cardvault.infrastructure.clock import Clock, SystemClock, ensure_utc
from cardvault.infrastructure.config import settings
from cardvault.infrastructure.database import transaction
from cardvault.infrastructure.gateway_client import PaymentForm, PaymentGatewayClient
from cardvault.infrastructure.models import OrderModel

logger = structlog.get_logger()

SUPPORTED_PAYMENT_METHODS = frozenset({"ldc"})


@dataclass
class DisclosedCard:
    """A sold card's secret, shown to the buyer who paid for it."""

    id: str
    content: str


@dataclass
class OrderView:
    """An order as its buyer sees it."""

    order: OrderModel
    cards: list[DisclosedCard] = field(default_factory=list)


@dataclass
class CheckoutResult:
    """Result of checkout.

    Attributes:
        order: The committed pending order.
        payment: Form to submit to the gateway; None on partial success.
        partial_success: True when the order and its reservation were
            committed but the payment form could not be built.
        next_step: Where the buyer resumes payment on partial success.
        error_code: Why the payment form could not be built.
    """

    order: OrderModel
    payment: PaymentForm | None = None
    partial_success: bool = False
    next_step: str | None = None
    error_code: str | None = None


class CheckoutService:
    """Buyer checkout, order views and manual completion."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: Catalog,
        gateway: PaymentGatewayClient,
        sweeper: ExpirySweeper,
        clock: Clock | None = None,
        cache: CacheInvalidator | None = None,
        order_ttl_minutes: int | None = None,
    ) -> None:
        """Initialize checkout service.

        Args:
            session_factory: Factory producing database sessions.
            catalog: Product lookup.
            gateway: Gateway client building payment forms.
            sweeper: Expiry sweeper run before reservations.
            clock: Time source.
            cache: Receiver of the invalidation signal.
            order_ttl_minutes: Payment window; defaults to
                ``settings.order_expire_minutes``.
        """
        self.session_factory = session_factory
        self.catalog = catalog
        self.gateway = gateway
        self.sweeper = sweeper
        self.clock = clock or SystemClock()
        self.cache = cache or LoggingCacheInvalidator()
        self.order_ttl = timedelta(
            minutes=order_ttl_minutes
            if order_ttl_minutes is not None
            else settings.order_expire_minutes
        )

    # ========================================================================
    # Checkout
    # ========================================================================

    async def create_order(
        self,
        principal: Principal,
        product_id: str,
        quantity: int,
        payment_method: str = "ldc",
    ) -> CheckoutResult:
        """Create a pending order holding ``quantity`` reserved cards.

        The order row and the card reservation commit together or not at
        all. The payment form is built after commit; if that fails the
        committed order is returned as a partial success and the buyer can
        resume payment until it expires.

        Args:
            principal: Buyer placing the order.
            product_id: Catalog product ID.
            quantity: Number of cards.
            payment_method: Payment method; only ``ldc`` is supported.

        Returns:
            CheckoutResult with the order and its payment form.

        Raises:
            PermissionDeniedError: If the principal may not purchase.
            ValidationError: If the product, quantity or payment method is invalid.
            InsufficientStockError: If too few cards are available.
        """
        principal.require(Capability.PURCHASE)
        if payment_method not in SUPPORTED_PAYMENT_METHODS:
            raise ValidationError(
                "Unsupported payment method", details={"payment_method": payment_method}
            )
        if quantity < 1:
            raise ValidationError("Quantity must be positive", details={"quantity": quantity})

        await self.sweeper.maybe_sweep()

        product = await self.catalog.get_product(product_id)
        if product is None or not product.is_active:
            raise ValidationError("Product is not available", details={"product_id": product_id})
        if not product.min_quantity <= quantity <= product.max_quantity:
            raise ValidationError(
                f"Quantity must be between {product.min_quantity} and {product.max_quantity}",
                details={
                    "quantity": quantity,
                    "min_quantity": product.min_quantity,
                    "max_quantity": product.max_quantity,
                },
            )

        async with transaction(self.session_factory) as session:
            order = await OrderStateMachine(session, self.clock).create(
                product_id=product.id,
                product_name=product.name,
                unit_price=product.price,
                quantity=quantity,
                user_id=principal.id,
                username=principal.username,
                payment_method=payment_method,
                expired_at=self.clock.now() + self.order_ttl,
            )
            await InventoryLedger(session, self.clock).reserve(product.id, quantity, order.id)

        self._signal(order)

        try:
            payment = self.gateway.build_payment_request(order)
        except GatewayError as e:
            logger.warning(
                "Order created but payment form failed",
                order_id=order.id,
                order_no=order.order_no,
                error_code=e.error_code,
            )
            return CheckoutResult(
                order=order,
                partial_success=True,
                next_step=f"/orders/{order.order_no}/payment",
                error_code=e.error_code,
            )

        return CheckoutResult(order=order, payment=payment)

    async def resume_payment(self, principal: Principal, order_no: str) -> CheckoutResult:
        """Rebuild the payment form for a pending order of the caller.

        Raises:
            OrderNotFoundError: If the order does not exist or is not the caller's.
            InvalidStateTransitionError: If the order is no longer pending.
            ValidationError: If the payment window has closed.
            GatewayError: If the form cannot be built.
        """
        principal.require(Capability.PURCHASE)
        await self.sweeper.maybe_sweep()

        order = await self._load_owned(principal, order_no)
        status = OrderStatus(order.status)
        if status is not OrderStatus.PENDING:
            raise InvalidStateTransitionError(
                entity_type="Order",
                entity_id=order.id,
                current_state=status.value,
                target_state=OrderStatus.COMPLETED.value,
                allowed_transitions=[s.value for s in status.allowed_transitions()],
            )
        if ensure_utc(order.expired_at) <= self.clock.now():
            raise ValidationError(
                "Payment window has closed", details={"order_no": order_no}
            )

        return CheckoutResult(order=order, payment=self.gateway.build_payment_request(order))

    async def available_stock(self, product_id: str) -> int:
        """Available cards of a product, after reclaiming expired reservations."""
        await self.sweeper.maybe_sweep()
        async with self.session_factory() as session:
            return await InventoryLedger(session, self.clock).available_count(product_id)

    # ========================================================================
    # Buyer views
    # ========================================================================

    async def get_order(self, principal: Principal, order_no: str) -> OrderView:
        """Get one of the caller's orders, with cards once it is fulfilled."""
        async with self.session_factory() as session:
            order = await OrderStateMachine(session, self.clock).get_by_order_no(order_no)
            if order is None or not self._may_view(principal, order):
                raise OrderNotFoundError(order_no)
            return await self._view(InventoryLedger(session, self.clock), order)

    async def list_orders(self, principal: Principal) -> list[OrderView]:
        """List the caller's orders, newest first."""
        async with self.session_factory() as session:
            orders = await OrderStateMachine(session, self.clock).list_for_user(principal.id)
            ledger = InventoryLedger(session, self.clock)
            return [await self._view(ledger, order) for order in orders]

    # ========================================================================
    # Admin
    # ========================================================================

    async def admin_complete(
        self, principal: Principal, order_id: str, remark: str | None = None
    ) -> OrderModel:
        """Mark a pending order paid by hand and hand over its cards.

        Raises:
            PermissionDeniedError: If the caller may not complete orders.
            OrderNotFoundError: If the order does not exist.
            InvalidStateTransitionError: If the order is not pending.
        """
        principal.require(Capability.COMPLETE_ORDER)
        remark = (remark or "").strip() or None

        async with transaction(self.session_factory) as session:
            orders = OrderStateMachine(session, self.clock)
            result = await orders.transition(
                order_id,
                OrderEvent.ADMIN_COMPLETED,
                values={"paid_at": self.clock.now(), "admin_remark": remark},
                actor=f"admin:{principal.id}",
                reason=remark,
            )
            await orders.require_applied(result)
            order = await orders.get(order_id)
            ledger = InventoryLedger(session, self.clock)
            await ledger.fulfill(order_id)
            await ledger.record_sales(order.product_id, order.quantity)

        logger.info("Order completed by admin", order_id=order_id, admin_id=principal.id)
        self._signal(order)
        return order

    # ========================================================================
    # Internals
    # ========================================================================

    async def _load_owned(self, principal: Principal, order_no: str) -> OrderModel:
        async with self.session_factory() as session:
            order = await OrderStateMachine(session, self.clock).get_by_order_no(order_no)
        if order is None or order.user_id != principal.id:
            raise OrderNotFoundError(order_no)
        return order

    @staticmethod
    def _may_view(principal: Principal, order: OrderModel) -> bool:
        return principal.is_admin or order.user_id == principal.id

    @staticmethod
    async def _view(ledger: InventoryLedger, order: OrderModel) -> OrderView:
        if not OrderStatus(order.status).is_fulfilled():
            return OrderView(order=order)
        cards = await ledger.cards_for_order(order.id, status=CardStatus.SOLD)
        return OrderView(
            order=order,
            cards=[DisclosedCard(id=card.id, content=card.content) for card in cards],
        )

    def _signal(self, order: OrderModel) -> None:
        self.cache.invalidate(
            CacheTag.ORDERS,
            CacheTag.ADMIN_ORDERS,
            CacheTag.STOCK,
            CacheTag.product(order.product_id or ""),
        )
