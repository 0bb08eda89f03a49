"""Payment notification processing.

Handles asynchronous payment notifications from the gateway with:
- MD5 parameter signature verification
- merchant, channel and amount reconciliation
- idempotent fulfillment under duplicate and concurrent delivery

The gateway only understands two answers, the literal tokens ``success``
(stop retrying) and ``fail`` (retry later). Rejection details are logged
server-side and never echoed back.
"""

import time
from collections.abc import Mapping
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardvault.application.inventory_ledger import InventoryLedger
from cardvault.application.order_state_machine import OrderStateMachine
from cardvault.domain.exceptions import (
    InvalidStateTransitionError,
    SignatureMismatchError,
    UntrustedSenderError,
    ValidationError,
    WebhookRejectedError,
)
from cardvault.domain.state_machines import OrderEvent, OrderStatus
from cardvault.domain.value_objects import to_minor_units
from cardvault.infrastructure.cache import CacheInvalidator, CacheTag, LoggingCacheInvalidator
from cardvault.infrastructure.clock import Clock, SystemClock
from cardvault.infrastructure.database import transaction
from cardvault.infrastructure.gateway_client import GatewayConfig, verify_sign
from cardvault.infrastructure.models import OrderModel

logger = structlog.get_logger()

TRADE_SUCCESS = "TRADE_SUCCESS"
SUPPORTED_SIGN_TYPE = "MD5"
REQUIRED_FIELDS = ("pid", "trade_no", "out_trade_no", "money", "sign")


class NotifyOutcome(str, Enum):
    """How a notification was resolved."""

    FULFILLED = "fulfilled"
    DUPLICATE = "duplicate"
    IGNORED_TRADE_STATUS = "ignored_trade_status"
    IGNORED_ORDER_STATUS = "ignored_order_status"
    RACE_RESOLVED = "race_resolved"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass
class NotifyParams:
    """Inbound notification parameters, exactly as received."""

    pid: str = ""
    trade_no: str = ""
    out_trade_no: str = ""
    type: str = ""
    name: str = ""
    money: str = ""
    trade_status: str = ""
    sign_type: str = ""
    sign: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "NotifyParams":
        """Build from query or form parameters; missing keys become empty."""
        return cls(**{f.name: str(data.get(f.name) or "") for f in fields(cls)})

    def as_dict(self) -> dict[str, str]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def safe_log_fields(self) -> dict[str, str]:
        """Whitelisted fields for logging; never includes ``sign``."""
        return {
            "pid": self.pid,
            "trade_no": self.trade_no,
            "order_no": self.out_trade_no,
            "payment_type": self.type,
            "name": self.name,
            "money": self.money,
            "trade_status": self.trade_status,
            "sign_type": self.sign_type,
        }


@dataclass
class NotifyResult:
    """Result of notification processing.

    Attributes:
        body: Wire token, ``success`` or ``fail``.
        status_code: HTTP status to answer with.
        outcome: What happened, for logs and tests.
        order_id: Order the notification resolved to, if any.
    """

    body: str
    status_code: int
    outcome: NotifyOutcome
    order_id: str | None = None

    @classmethod
    def success(cls, outcome: NotifyOutcome, order_id: str | None = None) -> "NotifyResult":
        return cls(body="success", status_code=200, outcome=outcome, order_id=order_id)

    @classmethod
    def rejected(cls, order_id: str | None = None) -> "NotifyResult":
        return cls(body="fail", status_code=400, outcome=NotifyOutcome.REJECTED, order_id=order_id)

    @classmethod
    def error(cls, order_id: str | None = None) -> "NotifyResult":
        return cls(body="fail", status_code=500, outcome=NotifyOutcome.ERROR, order_id=order_id)


# Payment methods settled through the gateway, by gateway channel type.
def gateway_channel_for(payment_method: str, config: GatewayConfig) -> str | None:
    """Gateway channel type an order's payment method is settled through."""
    return {"ldc": config.channel_type}.get(payment_method)


class WebhookVerifier:
    """Verifies payment notifications and applies them at most once."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: GatewayConfig | None = None,
        clock: Clock | None = None,
        cache: CacheInvalidator | None = None,
    ) -> None:
        """Initialize verifier.

        Args:
            session_factory: Factory producing database sessions.
            config: Gateway configuration holding merchant id and secret.
            clock: Time source for ``paid_at`` and sale timestamps.
            cache: Receiver of the invalidation signal.
        """
        self.session_factory = session_factory
        self.config = config or GatewayConfig.from_settings()
        self.clock = clock or SystemClock()
        self.cache = cache or LoggingCacheInvalidator()

    async def handle(
        self,
        params: NotifyParams,
        correlation_id: str | None = None,
    ) -> NotifyResult:
        """Run the verification pipeline for one delivery.

        Args:
            params: Received notification.
            correlation_id: Request correlation ID.

        Returns:
            NotifyResult carrying the wire token and HTTP status.
        """
        started = time.perf_counter()
        log = logger.bind(correlation_id=correlation_id, **params.safe_log_fields())

        if not self.config.is_configured:
            log.error("Payment notification received but merchant credentials are not configured")
            return NotifyResult.error()

        try:
            self._check_envelope(params)
        except WebhookRejectedError as e:
            log.warning(
                "Payment notification rejected",
                reason=e.message,
                error_code=e.error_code,
                duration_ms=_elapsed_ms(started),
            )
            return NotifyResult.rejected()

        try:
            return await self._apply(params, log, started)
        except Exception as e:
            log.exception(
                "Payment notification processing failed",
                error=str(e),
                duration_ms=_elapsed_ms(started),
            )
            return NotifyResult.error()

    def _check_envelope(self, params: NotifyParams) -> None:
        """Checks that need no database access.

        Raises:
            WebhookRejectedError: On the first failed check.
        """
        missing = [name for name in REQUIRED_FIELDS if not getattr(params, name)]
        if missing:
            raise WebhookRejectedError(
                "Missing required parameters", details={"missing": missing}
            )

        if params.sign_type and params.sign_type.upper() != SUPPORTED_SIGN_TYPE:
            raise WebhookRejectedError(
                "Unsupported sign_type", details={"sign_type": params.sign_type}
            )

        if not verify_sign(params.as_dict(), self.config.secret):
            raise SignatureMismatchError("Signature verification failed")

        if params.pid != self.config.pid:
            raise UntrustedSenderError(
                "Merchant id mismatch", details={"pid": params.pid}
            )

    def _check_order(self, order: OrderModel, params: NotifyParams) -> None:
        """Checks that reconcile the notification with the stored order.

        Raises:
            WebhookRejectedError: On the first failed check.
        """
        expected_channel = gateway_channel_for(order.payment_method, self.config)
        if expected_channel is None or expected_channel != params.type:
            raise UntrustedSenderError(
                "Payment channel mismatch",
                details={"payment_method": order.payment_method, "type": params.type},
            )

        expected_cents = to_minor_units(order.total_amount)
        received_cents = to_minor_units(params.money)
        if expected_cents is None or received_cents is None or expected_cents != received_cents:
            raise ValidationError(
                "Amount mismatch",
                details={"expected": f"{order.total_amount:.2f}", "received": params.money},
            )

    async def _apply(self, params: NotifyParams, log, started: float) -> NotifyResult:
        async with self.session_factory() as session:
            order = await OrderStateMachine(session, self.clock).get_by_order_no(
                params.out_trade_no
            )
        if order is None:
            log.warning("Payment notification for unknown order", duration_ms=_elapsed_ms(started))
            return NotifyResult.rejected()

        log = log.bind(order_id=order.id, order_status=order.status)

        try:
            self._check_order(order, params)
        except (WebhookRejectedError, ValidationError) as e:
            log.warning(
                "Payment notification rejected",
                reason=e.message,
                error_code=e.error_code,
                duration_ms=_elapsed_ms(started),
            )
            return NotifyResult.rejected(order.id)

        status = OrderStatus(order.status)
        if status.is_fulfilled():
            log.info("Duplicate payment notification, already processed")
            return NotifyResult.success(NotifyOutcome.DUPLICATE, order.id)

        if params.trade_status != TRADE_SUCCESS:
            log.info("Payment notification with non-success trade status, acknowledged")
            return NotifyResult.success(NotifyOutcome.IGNORED_TRADE_STATUS, order.id)

        if status is not OrderStatus.PENDING:
            log.warning("Payment notification for order that is no longer pending")
            return NotifyResult.success(NotifyOutcome.IGNORED_ORDER_STATUS, order.id)

        if await self._fulfill(order, params):
            log.info("Order paid and fulfilled", duration_ms=_elapsed_ms(started))
            self.cache.invalidate(
                CacheTag.ORDERS,
                CacheTag.ADMIN_ORDERS,
                CacheTag.STOCK,
                CacheTag.product(order.product_id or ""),
            )
            return NotifyResult.success(NotifyOutcome.FULFILLED, order.id)

        async with self.session_factory() as session:
            latest = await OrderStateMachine(session, self.clock).current_status(order.id)
        if latest is not None and latest.is_fulfilled():
            log.info("Concurrent delivery already fulfilled the order", latest_status=latest.value)
            return NotifyResult.success(NotifyOutcome.RACE_RESOLVED, order.id)

        log.error(
            "Order could not be fulfilled",
            latest_status=latest.value if latest else None,
            duration_ms=_elapsed_ms(started),
        )
        return NotifyResult.error(order.id)

    async def _fulfill(self, order: OrderModel, params: NotifyParams) -> bool:
        """Complete the order, sell its cards and count the sale atomically.

        Returns:
            False if another writer moved the order first.
        """
        now = self.clock.now()
        try:
            async with transaction(self.session_factory) as session:
                result = await OrderStateMachine(session, self.clock).transition(
                    order.id,
                    OrderEvent.PAYMENT_CONFIRMED,
                    values={"trade_no": params.trade_no, "paid_at": now},
                    actor="gateway",
                )
                if not result.applied:
                    return False
                ledger = InventoryLedger(session, self.clock)
                await ledger.fulfill(order.id)
                await ledger.record_sales(order.product_id, order.quantity)
        except InvalidStateTransitionError:
            return False
        return True


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
