"""
Tests for trader/services/shutdown_manager.py

ShutdownManager counts order placements in flight so that a stop signal
waits for them instead of cutting one off between "sent" and "recorded".
"""

import asyncio

import pytest

from trader.services.shutdown_manager import ShutdownInProgressError, ShutdownManager


class TestShutdownManagerInit:
    """Tests for initial state and get_status."""

    def test_initial_state(self):
        """Happy path: new manager accepts orders and has nothing in flight."""
        mgr = ShutdownManager()
        assert mgr.is_shutting_down is False
        assert mgr.in_flight_count == 0

    def test_get_status_initial(self):
        mgr = ShutdownManager()
        assert mgr.get_status() == {
            "shutting_down": False,
            "in_flight_count": 0,
            "shutdown_requested_at": None,
        }


class TestOrderInFlight:
    """Tests for the order_in_flight() async context manager."""

    @pytest.mark.asyncio
    async def test_counts_for_the_block(self):
        """Happy path: entering increments, exiting decrements."""
        mgr = ShutdownManager()
        async with mgr.order_in_flight():
            assert mgr.in_flight_count == 1
        assert mgr.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_nested_blocks(self):
        mgr = ShutdownManager()
        async with mgr.order_in_flight():
            async with mgr.order_in_flight():
                assert mgr.in_flight_count == 2
            assert mgr.in_flight_count == 1

    @pytest.mark.asyncio
    async def test_exception_still_decrements(self):
        """Edge case: a failing order placement is not left counted."""
        mgr = ShutdownManager()
        with pytest.raises(ValueError):
            async with mgr.order_in_flight():
                raise ValueError("exchange said no")
        assert mgr.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_refused_during_shutdown(self):
        """Failure: no new orders once shutdown was requested."""
        mgr = ShutdownManager()
        await mgr.prepare_shutdown(timeout=0.1)
        with pytest.raises(ShutdownInProgressError, match="Cannot start new orders"):
            async with mgr.order_in_flight():
                pass


class TestPrepareShutdown:
    """Tests for prepare_shutdown() and cancel_shutdown()."""

    @pytest.mark.asyncio
    async def test_idle_is_ready_immediately(self):
        mgr = ShutdownManager()
        status = await mgr.prepare_shutdown(timeout=1)
        assert status.ready is True
        assert status.in_flight_count == 0
        assert mgr.is_shutting_down is True
        assert mgr.get_status()["shutdown_requested_at"] is not None

    @pytest.mark.asyncio
    async def test_waits_for_in_flight_order(self):
        """Happy path: shutdown completes once the placement finishes."""
        mgr = ShutdownManager()
        release = asyncio.Event()

        async def place():
            async with mgr.order_in_flight():
                await release.wait()

        task = asyncio.create_task(place())
        await asyncio.sleep(0)
        assert mgr.in_flight_count == 1

        waiter = asyncio.create_task(mgr.prepare_shutdown(timeout=2))
        await asyncio.sleep(0)
        assert not waiter.done()

        release.set()
        status = await waiter
        await task

        assert status.ready is True
        assert "All orders completed" in status.message

    @pytest.mark.asyncio
    async def test_timeout_reports_stragglers(self):
        """Failure: an order still in flight at the timeout is reported, not awaited forever."""
        mgr = ShutdownManager()
        release = asyncio.Event()

        async def place():
            async with mgr.order_in_flight():
                await release.wait()

        task = asyncio.create_task(place())
        await asyncio.sleep(0)

        status = await mgr.prepare_shutdown(timeout=0.05)

        assert status.ready is False
        assert status.in_flight_count == 1
        assert "Timeout" in status.message
        release.set()
        await task

    @pytest.mark.asyncio
    async def test_cancel_shutdown_accepts_orders_again(self):
        mgr = ShutdownManager()
        await mgr.prepare_shutdown(timeout=0.1)
        mgr.cancel_shutdown()

        assert mgr.is_shutting_down is False
        async with mgr.order_in_flight():
            assert mgr.in_flight_count == 1
