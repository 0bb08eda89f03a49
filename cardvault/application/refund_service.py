"""Refund workflow.

A buyer asks for a refund of a completed order; an admin then either
rejects it, approves it (the server calls the gateway refund API), or,
when the gateway cannot be reached from the server, takes a signed
handoff, performs the refund from their own browser and attests the
outcome afterwards.

Inventory and order status only change once the gateway refund
succeeded (or was attested), in a single transaction.
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from uuid import uuid4

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardvault.application.inventory_ledger import InventoryLedger
from cardvault.application.order_state_machine import OrderStateMachine
from cardvault.domain.exceptions import (
    GatewayError,
    GatewayUnavailableError,
    OrderNotFoundError,
    PermissionDeniedError,
    RefundInProgressError,
    ValidationError,
)
from cardvault.domain.principal import Capability, Principal
from cardvault.domain.state_machines import OrderEvent, OrderStatus, resolve_order_event
from cardvault.infrastructure.cache import CacheInvalidator, CacheTag, LoggingCacheInvalidator
from cardvault.infrastructure.clock import Clock, SystemClock
from cardvault.infrastructure.config import settings
from cardvault.infrastructure.database import transaction
from cardvault.infrastructure.gateway_client import PaymentGatewayClient
from cardvault.infrastructure.models import OrderModel

logger = structlog.get_logger()


class RefundMode(str, Enum):
    """How refunds are executed."""

    DISABLED = "disabled"
    PROXY = "proxy"
    CLIENT = "client"


@dataclass
class ManualRefundHandoff:
    """Everything an operator needs to refund from their own browser.

    Attributes:
        order_id: Order being refunded.
        api_url: Gateway refund endpoint.
        fields: Parameters to post to ``api_url``.
        token: Capability token to present when attesting the outcome.
        expires_at: When the token stops being accepted.
    """

    order_id: str
    api_url: str
    fields: dict[str, str]
    token: str
    expires_at: datetime


class RefundWorkflow:
    """Buyer refund requests and admin refund decisions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGatewayClient,
        clock: Clock | None = None,
        cache: CacheInvalidator | None = None,
        mode: str | None = None,
        reason_min_length: int | None = None,
        handoff_secret: str | None = None,
        handoff_ttl_seconds: int | None = None,
        claim_ttl_seconds: int | None = None,
    ) -> None:
        """Initialize workflow.

        Args:
            session_factory: Factory producing database sessions.
            gateway: Gateway client used for server-side refunds.
            clock: Time source.
            cache: Receiver of the invalidation signal.
            mode: Refund mode; defaults to ``settings.refund_mode``.
            reason_min_length: Minimum stripped length of a refund reason.
            handoff_secret: Key for handoff tokens; defaults to the merchant
                secret, falling back to the API key.
            handoff_ttl_seconds: Lifetime of a handoff token.
            claim_ttl_seconds: Age after which an unfinished refund claim
                may be taken over.
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.cache = cache or LoggingCacheInvalidator()
        self.mode = RefundMode(mode or settings.refund_mode)
        self.reason_min_length = (
            reason_min_length
            if reason_min_length is not None
            else settings.refund_reason_min_length
        )
        self._handoff_secret = (
            handoff_secret or settings.ldc_secret or settings.api_key
        ).encode()
        self.handoff_ttl = timedelta(
            seconds=handoff_ttl_seconds
            if handoff_ttl_seconds is not None
            else settings.refund_handoff_ttl_seconds
        )
        self.claim_ttl = timedelta(
            seconds=claim_ttl_seconds
            if claim_ttl_seconds is not None
            else settings.refund_claim_ttl_seconds
        )

    # ========================================================================
    # Buyer
    # ========================================================================

    async def request(self, principal: Principal, order_no: str, reason: str) -> OrderModel:
        """Ask for a refund of one of the caller's completed orders.

        Args:
            principal: Buyer making the request.
            order_no: Merchant order number.
            reason: Free-text reason.

        Returns:
            The order, now ``refund_pending``.

        Raises:
            ValidationError: If refunds are disabled or the reason is too short.
            OrderNotFoundError: If the order does not exist or is not the caller's.
            InvalidStateTransitionError: If the order is not completed.
        """
        principal.require(Capability.REQUEST_REFUND)
        if self.mode == RefundMode.DISABLED:
            raise ValidationError("Refunds are currently disabled")

        reason = (reason or "").strip()
        if len(reason) < self.reason_min_length:
            raise ValidationError(
                f"Refund reason must be at least {self.reason_min_length} characters",
                details={"min_length": self.reason_min_length},
            )

        now = self.clock.now()
        async with transaction(self.session_factory) as session:
            orders = OrderStateMachine(session, self.clock)
            order = await orders.get_by_order_no(order_no)
            if order is None or order.user_id != principal.id:
                raise OrderNotFoundError(order_no)

            result = await orders.transition(
                order.id,
                OrderEvent.REFUND_REQUESTED,
                values={"refund_reason": reason, "refund_requested_at": now},
                actor=f"user:{principal.id}",
                reason=reason,
            )
            await orders.require_applied(result)
            order = await orders.get(order.id)

        logger.info("Refund requested", order_id=order.id, order_no=order_no, user_id=principal.id)
        self._signal(order)
        return order

    # ========================================================================
    # Admin
    # ========================================================================

    async def approve(self, principal: Principal, order_id: str) -> OrderModel:
        """Refund through the gateway, then mark the order refunded.

        The order is claimed before the gateway is called, so concurrent
        approvals send at most one refund. If the gateway call fails the
        order stays ``refund_pending`` and the gateway error is raised to
        the operator unchanged. The claim is released unless the gateway
        may have executed the refund; then it is kept until it goes stale
        so nobody resends the refund blindly.

        Raises:
            PermissionDeniedError: If the caller may not decide refunds.
            ValidationError: If server-side refunds are not enabled or the
                order has no gateway trade number.
            OrderNotFoundError: If the order does not exist.
            InvalidStateTransitionError: If the order is not refund_pending.
            RefundInProgressError: If another refund attempt holds the order.
            GatewayError: If the gateway refund did not succeed.
        """
        principal.require(Capability.DECIDE_REFUND)
        self._require_mode(RefundMode.PROXY)

        order = await self._load_refundable(order_id)
        claimant = self._claimant(principal)
        async with transaction(self.session_factory) as session:
            await self._claim(session, order_id, claimant, OrderEvent.REFUND_APPROVED)

        log = logger.bind(order_id=order_id, trade_no=order.trade_no, admin_id=principal.id)
        try:
            await self.gateway.refund(order.trade_no, order.total_amount)
        except GatewayError as e:
            if isinstance(e, GatewayUnavailableError) and e.outcome_unknown:
                log.error(
                    "Gateway refund outcome unknown, order stays claimed",
                    claimant=claimant,
                    claim_ttl_seconds=int(self.claim_ttl.total_seconds()),
                    error=e.message,
                )
            else:
                async with transaction(self.session_factory) as session:
                    await OrderStateMachine(session, self.clock).release_refund_claim(
                        order_id, claimant
                    )
                log.warning(
                    "Gateway refund failed, order left refund_pending",
                    error_code=e.error_code,
                    error=e.message,
                )
            raise

        log.info("Gateway refund succeeded")
        return await self._commit_refund(order_id, actor=f"admin:{principal.id}", reason=None)

    async def reject(
        self, principal: Principal, order_id: str, reason: str | None = None
    ) -> OrderModel:
        """Reject a refund request. Cards stay with the buyer.

        Refused while a refund attempt holds the order.
        """
        principal.require(Capability.DECIDE_REFUND)
        remark = (reason or "").strip() or None

        async with transaction(self.session_factory) as session:
            await self._claim(
                session, order_id, self._claimant(principal), OrderEvent.REFUND_REJECTED
            )
            orders = OrderStateMachine(session, self.clock)
            result = await orders.transition(
                order_id,
                OrderEvent.REFUND_REJECTED,
                values={
                    "admin_remark": remark,
                    "refund_claimed_by": None,
                    "refund_claimed_at": None,
                },
                actor=f"admin:{principal.id}",
                reason=remark,
            )
            await orders.require_applied(result)
            order = await orders.get(order_id)

        logger.info("Refund rejected", order_id=order_id, admin_id=principal.id)
        self._signal(order)
        return order

    async def issue_manual_handoff(
        self, principal: Principal, order_id: str
    ) -> ManualRefundHandoff:
        """Hand the refund call to the operator's browser.

        Returns:
            Gateway URL and parameters plus a short-lived token bound to
            the order, to be presented to ``attest_manual_refund``.
        """
        principal.require(Capability.ATTEST_MANUAL_REFUND)
        self._require_mode(RefundMode.CLIENT)

        order = await self._load_refundable(order_id)
        handoff = self.gateway.refund_handoff_parameters(order.trade_no, order.total_amount)
        expires_at = self.clock.now() + self.handoff_ttl
        token = self._sign_handoff(order_id, int(expires_at.timestamp()))

        logger.info(
            "Manual refund handoff issued",
            order_id=order_id,
            admin_id=principal.id,
            expires_at=expires_at.isoformat(),
        )
        return ManualRefundHandoff(
            order_id=order_id,
            api_url=handoff.api_url,
            fields=handoff.fields,
            token=token,
            expires_at=expires_at,
        )

    async def attest_manual_refund(
        self,
        principal: Principal,
        order_id: str,
        token: str,
        succeeded: bool,
        note: str | None = None,
    ) -> OrderModel:
        """Record the outcome of a refund the operator performed.

        The outcome is not checked against the gateway. It is accepted on
        the strength of the admin's authentication and a valid handoff
        token, and recorded in the status history.

        Raises:
            PermissionDeniedError: If the token is invalid or expired.
        """
        principal.require(Capability.ATTEST_MANUAL_REFUND)
        self._require_mode(RefundMode.CLIENT)
        if not self._verify_handoff(order_id, token):
            logger.warning(
                "Manual refund attestation with invalid token",
                order_id=order_id,
                admin_id=principal.id,
            )
            raise PermissionDeniedError(principal.id, Capability.ATTEST_MANUAL_REFUND.value)

        if not succeeded:
            logger.warning(
                "Operator reported failed manual refund, order left refund_pending",
                order_id=order_id,
                admin_id=principal.id,
                note=note,
            )
            return await self._load_refundable(order_id)

        logger.info("Manual refund attested", order_id=order_id, admin_id=principal.id, note=note)
        return await self._commit_refund(
            order_id,
            actor=f"admin:{principal.id}",
            reason=f"manual refund attested: {note}" if note else "manual refund attested",
            claimant=self._claimant(principal),
        )

    # ========================================================================
    # Internals
    # ========================================================================

    def _require_mode(self, mode: RefundMode) -> None:
        if self.mode != mode:
            raise ValidationError(
                f"Operation requires refund mode '{mode.value}'",
                details={"refund_mode": self.mode.value},
            )

    async def _load_refundable(self, order_id: str) -> OrderModel:
        async with self.session_factory() as session:
            order = await OrderStateMachine(session, self.clock).get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        resolve_order_event(order_id, OrderStatus(order.status), OrderEvent.REFUND_APPROVED)
        if not order.trade_no:
            raise ValidationError(
                "Order has no gateway trade number", details={"order_id": order_id}
            )
        return order

    @staticmethod
    def _claimant(principal: Principal) -> str:
        return f"admin:{principal.id}#{uuid4().hex[:8]}"

    async def _claim(
        self, session: AsyncSession, order_id: str, claimant: str, event: OrderEvent
    ) -> None:
        orders = OrderStateMachine(session, self.clock)
        if await orders.claim_refund(order_id, claimant, self.clock.now() - self.claim_ttl):
            return
        order = await orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        resolve_order_event(order_id, OrderStatus(order.status), event)
        raise RefundInProgressError(order_id, claimed_by=order.refund_claimed_by)

    async def _commit_refund(
        self, order_id: str, actor: str, reason: str | None, claimant: str | None = None
    ) -> OrderModel:
        async with transaction(self.session_factory) as session:
            if claimant is not None:
                await self._claim(session, order_id, claimant, OrderEvent.REFUND_APPROVED)
            orders = OrderStateMachine(session, self.clock)
            result = await orders.transition(
                order_id,
                OrderEvent.REFUND_APPROVED,
                values={
                    "refunded_at": self.clock.now(),
                    "refund_claimed_by": None,
                    "refund_claimed_at": None,
                },
                actor=actor,
                reason=reason,
            )
            await orders.require_applied(result)
            await InventoryLedger(session, self.clock).return_to_pool(order_id)
            order = await orders.get(order_id)

        logger.info("Order refunded", order_id=order_id, actor=actor)
        self._signal(order)
        return order

    def _sign_handoff(self, order_id: str, expires_ts: int) -> str:
        digest = hmac.new(
            self._handoff_secret,
            f"refund:{order_id}:{expires_ts}".encode(),
            hashlib.sha256,
        ).hexdigest()
        return f"{expires_ts}.{digest}"

    def _verify_handoff(self, order_id: str, token: str) -> bool:
        expires_part, _, _ = (token or "").partition(".")
        try:
            expires_ts = int(expires_part)
        except ValueError:
            return False
        if datetime.fromtimestamp(expires_ts, tz=timezone.utc) < self.clock.now():
            return False
        return hmac.compare_digest(self._sign_handoff(order_id, expires_ts), token)

    def _signal(self, order: OrderModel) -> None:
        self.cache.invalidate(
            CacheTag.ORDERS,
            CacheTag.ADMIN_ORDERS,
            CacheTag.STOCK,
            CacheTag.product(order.product_id or ""),
        )
