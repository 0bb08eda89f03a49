"""Tests for the payment notification endpoint."""

import httpx
import pytest

from helpers import add_cards, card_statuses, load_order, place_order, signed_notification


class TestNotifyEndpoint:
    """Tests for /api/payment/notify."""

    @pytest.mark.asyncio
    async def test_form_post_fulfills_order(
        self, api_client: httpx.AsyncClient, session_factory, clock
    ) -> None:
        await add_cards(session_factory, 1)
        order = await place_order(session_factory, clock)

        response = await api_client.post(
            "/api/payment/notify", data=signed_notification(order.order_no, "10.00")
        )

        assert response.status_code == 200
        assert response.text == "success"
        assert response.headers["content-type"].startswith("text/plain")
        assert (await load_order(session_factory, order.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_query_string_delivery_and_replay(
        self, api_client: httpx.AsyncClient, session_factory, clock
    ) -> None:
        await add_cards(session_factory, 1)
        order = await place_order(session_factory, clock)
        params = signed_notification(order.order_no, "10.00")

        first = await api_client.get("/api/payment/notify", params=params)
        replay = await api_client.get("/api/payment/notify", params=params)

        assert (first.status_code, first.text) == (200, "success")
        assert (replay.status_code, replay.text) == (200, "success")
        assert await card_statuses(session_factory) == {"sold": 1}

    @pytest.mark.asyncio
    async def test_forged_signature(
        self, api_client: httpx.AsyncClient, session_factory, clock
    ) -> None:
        await add_cards(session_factory, 1)
        order = await place_order(session_factory, clock)

        response = await api_client.post(
            "/api/payment/notify",
            data=signed_notification(order.order_no, "10.00", secret="guessed"),
        )

        assert (response.status_code, response.text) == (400, "fail")
        assert (await load_order(session_factory, order.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_underpayment(self, api_client: httpx.AsyncClient, session_factory, clock) -> None:
        await add_cards(session_factory, 1)
        order = await place_order(session_factory, clock)

        response = await api_client.post(
            "/api/payment/notify", data=signed_notification(order.order_no, "9.99")
        )

        assert (response.status_code, response.text) == (400, "fail")

    @pytest.mark.asyncio
    async def test_unconfigured_merchant(
        self, api_client: httpx.AsyncClient, session_factory, clock, gateway_config
    ) -> None:
        await add_cards(session_factory, 1)
        order = await place_order(session_factory, clock)
        params = signed_notification(order.order_no, "10.00")
        gateway_config.pid = ""

        response = await api_client.post("/api/payment/notify", data=params)

        assert (response.status_code, response.text) == (500, "fail")
