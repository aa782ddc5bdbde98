"""
Test Refund Coordinator
At-most-once refund credit per (user, order) across concurrent triggers and restarts
"""

import asyncio
import time

import pytest

from models import Order, OrderStatus
from services.advisory_locks import refund_key


async def seed_refunded_order(broker, order_id="9001", price=5000):
    order = Order(
        order_id=order_id, user_id=111, provider_key="fake", service_id="wa", country="indonesia",
        price=price, number="+6281200001", status=OrderStatus.REFUNDED, created_at=time.time(),
    )
    await broker.orders.insert(order)
    return order


class TestRefundCoordinator:

    @pytest.mark.asyncio
    async def test_refund_credits_and_clears_slot(self, broker):
        await seed_refunded_order(broker)

        result = await broker.refunds.refund(111, "9001", 5000)

        assert result.credited
        assert result.new_balance == 5000
        assert await broker.orders.get(111) is None
        assert broker.locks.is_held(refund_key(111, "9001")), "Claim is retained after the credit"

    @pytest.mark.asyncio
    async def test_concurrent_refunds_credit_once(self, broker):
        await seed_refunded_order(broker)

        results = await asyncio.gather(*(broker.refunds.refund(111, "9001", 5000) for _ in range(10)))

        assert sum(1 for r in results if r.credited) == 1
        assert sum(1 for r in results if r.already_handled) == 9
        assert await broker.accounts.get_balance(111) == 5000

    @pytest.mark.asyncio
    async def test_refund_after_retention_window_is_still_once(self, broker):
        """The ledger key blocks a second credit even after the advisory claim expired"""
        await seed_refunded_order(broker)
        await broker.refunds.refund(111, "9001", 5000)
        broker.locks.clear()

        again = await broker.refunds.refund(111, "9001", 5000)

        assert not again.credited
        assert again.already_handled
        assert await broker.accounts.get_balance(111) == 5000

    @pytest.mark.asyncio
    async def test_claim_and_abandon(self, broker):
        token = broker.refunds.claim(111, "9001")
        assert broker.refunds.claim(111, "9001") is None
        broker.refunds.abandon(token)
        assert broker.refunds.claim(111, "9001") is not None

    @pytest.mark.asyncio
    async def test_failed_settle_releases_claim(self, broker, monkeypatch):
        token = broker.refunds.claim(111, "9001")

        async def broken_credit(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(broker.accounts, "credit", broken_credit)
        with pytest.raises(OSError):
            await broker.refunds.settle(token, 111, "9001", 5000)
        assert not broker.locks.is_held(refund_key(111, "9001"))
