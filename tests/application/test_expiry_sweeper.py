"""Tests for ExpirySweeper."""

import pytest
from sqlalchemy.exc import OperationalError

from cardvault.application.expiry_sweeper import ExpirySweeper

from helpers import add_cards, card_statuses, load_order, place_order


@pytest.fixture
def sweeper(session_factory, throttle, clock, cache) -> ExpirySweeper:
    return ExpirySweeper(session_factory, throttle, clock=clock, cache=cache)


class TestSweep:
    """Tests for the expiry sweep."""

    @pytest.mark.asyncio
    async def test_sweep_expires_and_releases(self, session_factory, clock, cache, sweeper) -> None:
        await add_cards(session_factory, 3)
        order = await place_order(session_factory, clock, quantity=2)
        clock.advance(minutes=31)

        assert await sweeper.sweep() == 1

        stored = await load_order(session_factory, order.id)
        assert stored.status == "expired"
        assert await card_statuses(session_factory) == {"available": 3}
        assert "stock" in cache.tags

    @pytest.mark.asyncio
    async def test_sweep_before_expiry_does_nothing(self, session_factory, clock, cache, sweeper) -> None:
        await add_cards(session_factory, 1)
        await place_order(session_factory, clock)
        clock.advance(minutes=29)

        assert await sweeper.sweep() == 0
        assert await card_statuses(session_factory) == {"locked": 1}
        assert cache.signals == []

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, session_factory, clock, sweeper) -> None:
        await add_cards(session_factory, 1)
        await place_order(session_factory, clock)
        clock.advance(minutes=31)

        assert await sweeper.sweep() == 1
        assert await sweeper.sweep() == 0
        assert await card_statuses(session_factory) == {"available": 1}


class TestMaybeSweep:
    """Tests for the throttled inline sweep."""

    @pytest.mark.asyncio
    async def test_throttled_within_interval(self, session_factory, clock, sweeper) -> None:
        await add_cards(session_factory, 1)
        assert await sweeper.maybe_sweep() == 0

        await place_order(session_factory, clock)
        clock.advance(minutes=31)
        sweeper.throttle.try_acquire()
        clock.advance(seconds=30)

        assert await sweeper.maybe_sweep() is None
        clock.advance(seconds=30)
        assert await sweeper.maybe_sweep() == 1

    @pytest.mark.asyncio
    async def test_database_failure_is_swallowed(
        self, sweeper, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken_sweep() -> int:
            raise OperationalError("UPDATE orders", {}, Exception("database is locked"))

        monkeypatch.setattr(sweeper, "sweep", broken_sweep)

        assert await sweeper.maybe_sweep() is None
