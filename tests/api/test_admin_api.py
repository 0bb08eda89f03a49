"""Tests for admin endpoints."""

import httpx
import pytest

from helpers import (
    ADMIN_HEADERS,
    BUYER_HEADERS,
    add_cards,
    card_statuses,
    load_order,
    pay_order,
    place_order,
)


async def refund_pending(session_factory, clock, client: httpx.AsyncClient) -> str:
    """A paid order of one card with an open refund request; returns its ID."""
    order = await place_order(session_factory, clock)
    await pay_order(session_factory, clock, order.id)
    response = await client.post(
        f"/orders/{order.order_no}/refund",
        json={"reason": "Wrong region"},
        headers=BUYER_HEADERS,
    )
    assert response.status_code == 202
    return order.id


class TestCompleteOrder:
    """Tests for POST /admin/orders/{order_id}/complete."""

    @pytest.mark.asyncio
    async def test_admin_completes_order(
        self, api_client: httpx.AsyncClient, session_factory, clock
    ) -> None:
        await add_cards(session_factory, 1)
        order = await place_order(session_factory, clock)

        response = await api_client.post(
            f"/admin/orders/{order.id}/complete",
            json={"remark": "Paid by bank transfer"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["admin_remark"] == "Paid by bank transfer"
        assert data["user_id"] == "user-1"
        assert "cards" in data and data["cards"] == []
        assert await card_statuses(session_factory) == {"sold": 1}

    @pytest.mark.asyncio
    async def test_body_is_optional(
        self, api_client: httpx.AsyncClient, session_factory, clock
    ) -> None:
        await add_cards(session_factory, 1)
        order = await place_order(session_factory, clock)

        response = await api_client.post(
            f"/admin/orders/{order.id}/complete", headers=ADMIN_HEADERS
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_buyer_is_forbidden_with_details(
        self, api_client: httpx.AsyncClient, session_factory, clock
    ) -> None:
        await add_cards(session_factory, 1)
        order = await place_order(session_factory, clock)

        response = await api_client.post(
            f"/admin/orders/{order.id}/complete", headers=BUYER_HEADERS
        )

        assert response.status_code == 403
        data = response.json()
        assert data["error_code"] == "PERMISSION_DENIED"
        assert data["details"]["required_capability"] == "complete_order"

    @pytest.mark.asyncio
    async def test_unknown_order(self, api_client: httpx.AsyncClient) -> None:
        response = await api_client.post(
            "/admin/orders/missing/complete", headers=ADMIN_HEADERS
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_expired_order_reports_allowed_transitions(
        self, api_client: httpx.AsyncClient, session_factory, clock
    ) -> None:
        await add_cards(session_factory, 1)
        order = await place_order(session_factory, clock)
        clock.advance(minutes=31)
        await api_client.post("/admin/maintenance/sweep", headers=ADMIN_HEADERS)

        response = await api_client.post(
            f"/admin/orders/{order.id}/complete", headers=ADMIN_HEADERS
        )

        assert response.status_code == 409
        assert response.json()["details"]["current_state"] == "expired"


class TestRefundDecisions:
    """Tests for refund approval and rejection."""

    @pytest.mark.asyncio
    async def test_approve(
        self, api_client: httpx.AsyncClient, session_factory, clock, gateway_stub
    ) -> None:
        await add_cards(session_factory, 1)
        order_id = await refund_pending(session_factory, clock, api_client)
        gateway_stub.reply(httpx.Response(200, json={"code": 1, "msg": "ok"}))

        response = await api_client.post(
            f"/admin/orders/{order_id}/refund/approve", headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["status"] == "refunded"
        assert await card_statuses(session_factory) == {"available": 1}

    @pytest.mark.asyncio
    async def test_gateway_rejection_is_reported(
        self, api_client: httpx.AsyncClient, session_factory, clock, gateway_stub
    ) -> None:
        await add_cards(session_factory, 1)
        order_id = await refund_pending(session_factory, clock, api_client)
        gateway_stub.reply(httpx.Response(200, json={"code": 0, "msg": "balance too low"}))

        response = await api_client.post(
            f"/admin/orders/{order_id}/refund/approve", headers=ADMIN_HEADERS
        )

        assert response.status_code == 502
        data = response.json()
        assert data["error_code"] == "GATEWAY_REJECTED"
        assert data["message"] == "balance too low"
        assert (await load_order(session_factory, order_id)).status == "refund_pending"
        assert await card_statuses(session_factory) == {"sold": 1}

    @pytest.mark.asyncio
    async def test_gateway_outage_is_reported(
        self, api_client: httpx.AsyncClient, session_factory, clock, gateway_stub
    ) -> None:
        await add_cards(session_factory, 1)
        order_id = await refund_pending(session_factory, clock, api_client)
        gateway_stub.reply(
            *[httpx.Response(200, text="<html>challenge</html>") for _ in range(3)]
        )

        response = await api_client.post(
            f"/admin/orders/{order_id}/refund/approve", headers=ADMIN_HEADERS
        )

        assert response.status_code == 503
        assert response.json()["error_code"] == "GATEWAY_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_reject(self, api_client: httpx.AsyncClient, session_factory, clock) -> None:
        await add_cards(session_factory, 1)
        order_id = await refund_pending(session_factory, clock, api_client)

        response = await api_client.post(
            f"/admin/orders/{order_id}/refund/reject",
            json={"reason": "Card already redeemed"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "refund_rejected"
        assert data["admin_remark"] == "Card already redeemed"

    @pytest.mark.asyncio
    async def test_handoff_outside_client_mode(
        self, api_client: httpx.AsyncClient, session_factory, clock
    ) -> None:
        await add_cards(session_factory, 1)
        order_id = await refund_pending(session_factory, clock, api_client)

        response = await api_client.post(
            f"/admin/orders/{order_id}/refund/handoff", headers=ADMIN_HEADERS
        )

        assert response.status_code == 400
        assert response.json()["details"] == {"refund_mode": "proxy"}


class TestMaintenance:
    """Tests for POST /admin/maintenance/sweep."""

    @pytest.mark.asyncio
    async def test_sweep_expires_abandoned_orders(
        self, api_client: httpx.AsyncClient, session_factory, clock
    ) -> None:
        await add_cards(session_factory, 2)
        await place_order(session_factory, clock, quantity=2)
        clock.advance(minutes=31)

        response = await api_client.post("/admin/maintenance/sweep", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"expired_orders": 1}
        assert await card_statuses(session_factory) == {"available": 2}

    @pytest.mark.asyncio
    async def test_buyer_cannot_sweep(self, api_client: httpx.AsyncClient) -> None:
        response = await api_client.post("/admin/maintenance/sweep", headers=BUYER_HEADERS)

        assert response.status_code == 403
