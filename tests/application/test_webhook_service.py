"""Tests for payment notification processing."""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from cardvault.application.inventory_ledger import InventoryLedger
from cardvault.application.order_state_machine import OrderStateMachine
from cardvault.application.webhook_service import (
    NotifyOutcome,
    NotifyParams,
    WebhookVerifier,
)
from cardvault.domain.state_machines import OrderEvent
from cardvault.infrastructure.database import transaction
from cardvault.infrastructure.gateway_client import generate_sign
from cardvault.infrastructure.models import OrderModel, OrderStatusHistoryModel

from helpers import (
    MERCHANT_PID,
    MERCHANT_SECRET,
    PRODUCT_ID,
    add_cards,
    card_statuses,
    load_order,
    pay_order,
    place_order,
)


def notification(order: OrderModel, secret: str = MERCHANT_SECRET, **overrides: str) -> NotifyParams:
    """Signed notification for an order; overrides are applied before signing."""
    params = {
        "pid": MERCHANT_PID,
        "trade_no": "T202603010001",
        "out_trade_no": order.order_no,
        "type": "epay",
        "name": order.product_name,
        "money": f"{order.total_amount:.2f}",
        "trade_status": "TRADE_SUCCESS",
        **overrides,
    }
    params["sign"] = generate_sign(params, secret)
    params["sign_type"] = "MD5"
    return NotifyParams.from_mapping(params)


@pytest.fixture
def verifier(session_factory, gateway_config, clock, cache) -> WebhookVerifier:
    return WebhookVerifier(session_factory, config=gateway_config, clock=clock, cache=cache)


@pytest_asyncio.fixture
async def pending_order(session_factory, clock) -> OrderModel:
    await add_cards(session_factory, 5)
    return await place_order(session_factory, clock, quantity=1)


class TestNotifyParams:
    """Tests for parameter parsing."""

    def test_missing_keys_become_empty(self) -> None:
        params = NotifyParams.from_mapping({"pid": "1001", "money": None})

        assert params.pid == "1001"
        assert params.money == ""
        assert params.sign == ""

    def test_safe_log_fields_omit_sign(self) -> None:
        params = NotifyParams.from_mapping({"sign": "secret-sign", "out_trade_no": "LD1"})

        assert "sign" not in params.safe_log_fields()
        assert "secret-sign" not in params.safe_log_fields().values()
        assert params.safe_log_fields()["order_no"] == "LD1"


class TestHappyPath:
    """Tests for accepted notifications."""

    @pytest.mark.asyncio
    async def test_valid_notification_fulfills_order(
        self, session_factory, verifier, cache, pending_order
    ) -> None:
        result = await verifier.handle(notification(pending_order))

        assert (result.body, result.status_code) == ("success", 200)
        assert result.outcome is NotifyOutcome.FULFILLED
        stored = await load_order(session_factory, pending_order.id)
        assert stored.status == "completed"
        assert stored.trade_no == "T202603010001"
        assert stored.paid_at is not None
        assert await card_statuses(session_factory) == {"available": 4, "sold": 1}
        async with session_factory() as session:
            assert await InventoryLedger(session).sales_count(PRODUCT_ID) == 1
        assert f"product:{PRODUCT_ID}" in cache.tags

    @pytest.mark.asyncio
    async def test_amount_without_trailing_zeros_matches(
        self, session_factory, verifier, pending_order
    ) -> None:
        result = await verifier.handle(notification(pending_order, money="10"))

        assert result.outcome is NotifyOutcome.FULFILLED

    @pytest.mark.asyncio
    async def test_lowercase_sign_type_is_accepted(self, verifier, pending_order) -> None:
        params = notification(pending_order)
        params.sign_type = "md5"

        result = await verifier.handle(params)

        assert result.outcome is NotifyOutcome.FULFILLED


class TestAmountReconciliation:
    """An order of 10.00 paid with 10.01 is not fulfilled."""

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_rejected(
        self, session_factory, verifier, pending_order
    ) -> None:
        result = await verifier.handle(notification(pending_order, money="10.01"))

        assert (result.body, result.status_code) == ("fail", 400)
        assert result.outcome is NotifyOutcome.REJECTED
        assert (await load_order(session_factory, pending_order.id)).status == "pending"
        assert await card_statuses(session_factory) == {"available": 4, "locked": 1}

    @pytest.mark.asyncio
    async def test_unparseable_amount_is_rejected(self, verifier, pending_order) -> None:
        result = await verifier.handle(notification(pending_order, money="ten"))

        assert result.status_code == 400


class TestDuplicateDelivery:
    """Replays and retries of the same notification."""

    @pytest.mark.asyncio
    async def test_redelivery_answers_success_without_side_effects(
        self, session_factory, verifier, pending_order
    ) -> None:
        first = await verifier.handle(notification(pending_order))
        second = await verifier.handle(notification(pending_order))

        assert first.outcome is NotifyOutcome.FULFILLED
        assert (second.body, second.status_code) == ("success", 200)
        assert second.outcome is NotifyOutcome.DUPLICATE
        async with session_factory() as session:
            assert await InventoryLedger(session).sales_count(PRODUCT_ID) == 1

    @pytest.mark.asyncio
    async def test_repeated_deliveries_transition_once(
        self, session_factory, verifier, pending_order
    ) -> None:
        outcomes = [
            (await verifier.handle(notification(pending_order))).outcome for _ in range(5)
        ]

        assert outcomes.count(NotifyOutcome.FULFILLED) == 1
        assert outcomes.count(NotifyOutcome.DUPLICATE) == 4
        assert (await load_order(session_factory, pending_order.id)).status == "completed"
        async with session_factory() as session:
            history = await session.execute(
                select(OrderStatusHistoryModel).where(
                    OrderStatusHistoryModel.order_id == pending_order.id
                )
            )
            assert len(history.scalars().all()) == 1
            assert await InventoryLedger(session).sales_count(PRODUCT_ID) == 1

    @pytest.mark.asyncio
    async def test_simultaneous_deliveries_sell_cards_once(
        self, session_factory, clock, verifier
    ) -> None:
        await add_cards(session_factory, 5)
        order = await place_order(session_factory, clock, quantity=2)

        results = await asyncio.gather(
            verifier.handle(notification(order)),
            verifier.handle(notification(order)),
        )

        assert [(r.body, r.status_code) for r in results] == [("success", 200)] * 2
        assert [r.outcome for r in results].count(NotifyOutcome.FULFILLED) == 1
        assert (await load_order(session_factory, order.id)).status == "completed"
        assert await card_statuses(session_factory) == {"available": 3, "sold": 2}
        async with session_factory() as session:
            assert await InventoryLedger(session).sales_count(PRODUCT_ID) == 2

    @pytest.mark.asyncio
    async def test_concurrent_delivery_that_won_is_acknowledged(
        self, session_factory, clock, verifier, pending_order, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """The conditional update lost to another delivery that completed the order."""

        async def lose_to_concurrent_delivery(order: OrderModel, params: NotifyParams) -> bool:
            await pay_order(session_factory, clock, order.id)
            return False

        monkeypatch.setattr(verifier, "_fulfill", lose_to_concurrent_delivery)

        result = await verifier.handle(notification(pending_order))

        assert (result.body, result.status_code) == ("success", 200)
        assert result.outcome is NotifyOutcome.RACE_RESOLVED

    @pytest.mark.asyncio
    async def test_lost_race_to_expiry_asks_for_retry(
        self, session_factory, clock, verifier, pending_order, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """The order expired between the read and the update."""

        async def lose_to_sweeper(order: OrderModel, params: NotifyParams) -> bool:
            async with transaction(session_factory) as session:
                await OrderStateMachine(session, clock).transition(order.id, OrderEvent.EXPIRED)
            return False

        monkeypatch.setattr(verifier, "_fulfill", lose_to_sweeper)

        result = await verifier.handle(notification(pending_order))

        assert (result.body, result.status_code) == ("fail", 500)
        assert result.outcome is NotifyOutcome.ERROR


class TestRejection:
    """Notifications that fail verification."""

    @pytest.mark.asyncio
    async def test_wrong_secret(self, session_factory, verifier, pending_order) -> None:
        result = await verifier.handle(notification(pending_order, secret="forged"))

        assert (result.body, result.status_code) == ("fail", 400)
        assert (await load_order(session_factory, pending_order.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_tampered_amount_after_signing(self, verifier, pending_order) -> None:
        params = notification(pending_order)
        params.money = "0.01"

        result = await verifier.handle(params)

        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_foreign_merchant_id(self, verifier, pending_order) -> None:
        result = await verifier.handle(notification(pending_order, pid="2002"))

        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_wrong_channel(self, verifier, pending_order) -> None:
        result = await verifier.handle(notification(pending_order, type="alipay"))

        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_unsupported_sign_type(self, verifier, pending_order) -> None:
        params = notification(pending_order)
        params.sign_type = "RSA"

        result = await verifier.handle(params)

        assert result.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["pid", "trade_no", "out_trade_no", "money", "sign"])
    async def test_missing_required_field(self, verifier, pending_order, field: str) -> None:
        params = notification(pending_order)
        setattr(params, field, "")

        result = await verifier.handle(params)

        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_order(self, session_factory, verifier) -> None:
        order = OrderModel(order_no="LDUNKNOWN000000", product_name="x", total_amount=Decimal("1"))

        result = await verifier.handle(notification(order))

        assert (result.body, result.status_code) == ("fail", 400)

    @pytest.mark.asyncio
    async def test_unconfigured_merchant(
        self, session_factory, gateway_config, clock, pending_order
    ) -> None:
        gateway_config.secret = ""
        verifier = WebhookVerifier(session_factory, config=gateway_config, clock=clock)

        result = await verifier.handle(notification(pending_order))

        assert (result.body, result.status_code) == ("fail", 500)


class TestAcknowledgedWithoutEffect:
    """Valid notifications that must not change anything."""

    @pytest.mark.asyncio
    async def test_non_success_trade_status(self, session_factory, verifier, pending_order) -> None:
        result = await verifier.handle(notification(pending_order, trade_status="WAIT_BUYER_PAY"))

        assert (result.body, result.status_code) == ("success", 200)
        assert result.outcome is NotifyOutcome.IGNORED_TRADE_STATUS
        assert (await load_order(session_factory, pending_order.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_payment_for_expired_order(
        self, session_factory, clock, verifier, pending_order
    ) -> None:
        """A late payment never revives an expired order."""
        async with transaction(session_factory) as session:
            await OrderStateMachine(session, clock).transition(
                pending_order.id, OrderEvent.EXPIRED
            )
            await InventoryLedger(session, clock).release(pending_order.id)

        result = await verifier.handle(notification(pending_order))

        assert (result.body, result.status_code) == ("success", 200)
        assert result.outcome is NotifyOutcome.IGNORED_ORDER_STATUS
        assert (await load_order(session_factory, pending_order.id)).status == "expired"
        assert await card_statuses(session_factory) == {"available": 5}
