"""
Test SMS Poll Supervisor
Per-user poll jobs: arming, completion on a code, timeout refund and self-cancel
"""

import time

import pytest

from models import Order, OrderStatus, SmsStatus
from services.providers import ProviderResult, SmsCheck


async def active_order(broker, selection):
    await broker.accounts.credit(111, 10000)
    return await broker.state_machine.purchase(111, selection, {"chat_id": 111})


class TestArming:

    @pytest.mark.asyncio
    async def test_arm_registers_one_job_per_user(self, broker, selection):
        order = await active_order(broker, selection)

        job = broker.scheduler.get_job(broker.sms_polls.job_id(111))
        assert job is not None
        assert job.id == "sms_poll_111"
        assert broker.sms_polls.get_state(111).order_id == order.order_id

    @pytest.mark.asyncio
    async def test_rearm_replaces_previous_poll(self, broker, selection):
        order = await active_order(broker, selection)
        broker.sms_polls.get_state(111).attempts = 2

        replacement = Order(
            order_id="other", user_id=111, provider_key="fake", service_id="wa", country="indonesia",
            price=5000, number="+628", status=OrderStatus.ACTIVE, created_at=time.time(),
        )
        broker.sms_polls.arm(replacement)

        state = broker.sms_polls.get_state(111)
        assert state.order_id == "other"
        assert state.attempts == 0
        jobs = [j for j in broker.scheduler.get_jobs() if j.id == "sms_poll_111"]
        assert len(jobs) == 1

    @pytest.mark.asyncio
    async def test_disarm_other_order_is_ignored(self, broker, selection):
        await active_order(broker, selection)
        assert broker.sms_polls.disarm(111, "not-this-one") == 0
        assert broker.sms_polls.is_armed(111)

    @pytest.mark.asyncio
    async def test_disarm_unknown_user_is_safe(self, broker):
        assert broker.sms_polls.disarm(424242) == 0


class TestTicks:

    @pytest.mark.asyncio
    async def test_code_received_completes_order(self, broker, selection):
        order = await active_order(broker, selection)
        broker.provider.sms_queue = [SmsCheck(SmsStatus.WAITING), SmsCheck(SmsStatus.SUCCESS, "771204")]

        await broker.sms_polls.tick(111)
        assert broker.sms_polls.is_armed(111)
        await broker.sms_polls.tick(111)

        assert not broker.sms_polls.is_armed(111)
        assert await broker.orders.get(111) is None
        history = await broker.orders.get_history(111)
        assert history[0].sms_code == "771204"
        broker.notifier.order_completed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exhausted_attempts_refund_exactly_once(self, broker, selection):
        """max_attempts=3: the third waiting tick refunds; later ticks do nothing"""
        await active_order(broker, selection)

        for _ in range(3):
            await broker.sms_polls.tick(111)

        assert not broker.sms_polls.is_armed(111)
        assert await broker.orders.get(111) is None
        assert await broker.accounts.get_balance(111) == 10000
        assert await broker.orders.get_history(111) == [], "Refunded orders never enter history"
        broker.notifier.order_refunded.assert_awaited_once()

        await broker.sms_polls.tick(111)
        assert await broker.accounts.get_balance(111) == 10000

    @pytest.mark.asyncio
    async def test_transient_provider_errors_count_as_attempts(self, broker, selection):
        await active_order(broker, selection)
        broker.provider.sms_queue = [ProviderResult.fail("timeout after 10s")] * 3

        for _ in range(3):
            await broker.sms_polls.tick(111)

        assert await broker.accounts.get_balance(111) == 10000
        assert await broker.orders.get(111) is None

    @pytest.mark.asyncio
    async def test_tick_self_cancels_when_order_resolved_elsewhere(self, broker, selection):
        order = await active_order(broker, selection)
        await broker.orders.transition(111, order.order_id, {OrderStatus.ACTIVE}, OrderStatus.COMPLETED)
        await broker.orders.remove(111, order.order_id)

        await broker.sms_polls.tick(111)

        assert not broker.sms_polls.is_armed(111)
        assert broker.provider.called("get_status") == []

    @pytest.mark.asyncio
    async def test_tick_after_user_cancel_does_not_refund_again(self, broker, selection):
        order = await active_order(broker, selection)
        await broker.state_machine.cancel(111, order.order_id)

        await broker.sms_polls.tick(111)

        assert await broker.accounts.get_balance(111) == 10000
        broker.notifier.order_refunded.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disarm_all(self, broker, selection):
        await active_order(broker, selection)
        assert broker.sms_polls.disarm_all() == 1
        assert broker.scheduler.get_job("sms_poll_111") is None
