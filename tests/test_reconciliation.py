"""
Test Startup Reconciliation
Half-done lifecycle steps left behind by a crash are finished or reported before handlers start
"""

import time

import pytest

from models import Collection, OrderStatus
from services.deposit_ledger import DepositLedger
from services.order_state_machine import settled_key
from services.reconciliation import StartupReconciler

SELL_PRICE = 5000


@pytest.fixture
def reconciler(broker):
    return StartupReconciler(broker.accounts, broker.orders, broker.deposits, broker.sms_polls, broker.notifier)


async def crashed_order(broker, selection, status=None, age_seconds=0):
    """Purchase an order, drop its poll as a restart would, and optionally force its status"""
    await broker.accounts.credit(111, 10000)
    order = await broker.state_machine.purchase(111, selection)
    broker.sms_polls.disarm(111)

    def _rewrite(orders):
        orders["111"]["created_at"] = time.time() - age_seconds
        if status:
            orders["111"]["status"] = status.value

    await broker.store.update(Collection.ORDERS, _rewrite, {})
    return order


class TestOrderRepair:

    @pytest.mark.asyncio
    async def test_completed_order_is_finished(self, broker, reconciler, selection):
        order = await crashed_order(broker, selection, OrderStatus.COMPLETED)

        results = await reconciler.run()

        assert results['completions_finished'] == 1
        assert await broker.orders.get(111) is None
        assert await broker.orders.in_history(111, order.order_id)
        assert await broker.accounts.has_applied(111, settled_key(order.order_id))
        assert await broker.accounts.get_balance(111) == 10000 - SELL_PRICE
        assert results['orphaned_debits'] == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [OrderStatus.REFUNDED, OrderStatus.CANCELLED])
    async def test_refund_applied_for_terminal_order(self, broker, reconciler, selection, status):
        await crashed_order(broker, selection, status)

        results = await reconciler.run()

        assert results['refunds_repaired'] == 1
        assert await broker.accounts.get_balance(111) == 10000
        assert await broker.orders.get(111) is None

    @pytest.mark.asyncio
    async def test_refund_already_credited_is_not_repeated(self, broker, reconciler, selection):
        """Crash after the credit but before the slot was cleared"""
        order = await crashed_order(broker, selection, OrderStatus.REFUNDED)
        await broker.accounts.credit(111, SELL_PRICE, key=order.refund_key)

        results = await reconciler.run()

        assert results['refunds_repaired'] == 0
        assert await broker.accounts.get_balance(111) == 10000
        assert await broker.orders.get(111) is None

    @pytest.mark.asyncio
    async def test_cancelling_reverted_and_rearmed(self, broker, reconciler, selection):
        order = await crashed_order(broker, selection, OrderStatus.CANCELLING)

        results = await reconciler.run()

        assert results['cancelling_reverted'] == 1
        assert results['polls_rearmed'] == 1
        assert (await broker.orders.get(111)).status == OrderStatus.ACTIVE
        assert broker.sms_polls.get_state(111).order_id == order.order_id
        assert broker.scheduler.get_job(broker.sms_polls.job_id(111)) is not None
        assert await broker.accounts.get_balance(111) == 10000 - SELL_PRICE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("age_seconds,expected_attempts", [(0, 0), (20, 1), (1000, 2)])
    async def test_active_poll_resumes_attempts(self, broker, reconciler, selection,
                                                age_seconds, expected_attempts):
        """interval=15s, max_attempts=3: at least one tick is always left"""
        await crashed_order(broker, selection, age_seconds=age_seconds)

        await reconciler.run()

        assert broker.sms_polls.get_state(111).attempts == expected_attempts

    @pytest.mark.asyncio
    async def test_overdue_order_refunded_on_next_tick(self, broker, reconciler, selection):
        await crashed_order(broker, selection, age_seconds=1000)
        await reconciler.run()

        await broker.sms_polls.tick(111)

        assert await broker.orders.get(111) is None
        assert await broker.accounts.get_balance(111) == 10000


class TestOrphanedDebits:

    @pytest.mark.asyncio
    async def test_debit_without_order_is_reported(self, broker, reconciler):
        await broker.accounts.credit(111, 10000)
        await broker.accounts.debit(111, SELL_PRICE, key="purchase:9999")

        results = await reconciler.run()

        assert results['orphaned_debits'] == [{"user_id": 111, "order_id": "9999"}]
        broker.notifier.owner_alert.assert_awaited_once()
        assert await broker.accounts.get_balance(111) == 10000 - SELL_PRICE

    @pytest.mark.asyncio
    async def test_settled_and_refunded_debits_are_not_orphans(self, broker, reconciler, selection):
        await broker.accounts.credit(111, 20000)
        first = await broker.state_machine.purchase(111, selection)
        await broker.state_machine.complete(111, first.order_id, "123456")
        second = await broker.state_machine.purchase(111, selection)
        await broker.state_machine.expire(111, second.order_id)

        results = await reconciler.run()

        assert results['orphaned_debits'] == []
        broker.notifier.owner_alert.assert_not_awaited()


class TestDepositReload:

    @pytest.mark.asyncio
    async def test_pending_intents_loaded_from_disk(self, broker, reconciler):
        intent = await broker.deposit_service.request_deposit(111, 10000)
        broker.deposits._intents = []

        results = await reconciler.run()

        assert results['deposits_loaded'] == 1
        assert broker.deposits.find(intent.trx_id).user_id == 111

    @pytest.mark.asyncio
    async def test_fresh_ledger_sees_persisted_intents(self, broker):
        await broker.deposit_service.request_deposit(111, 10000)
        fresh = DepositLedger(broker.store)

        assert await fresh.load() == 1
        assert len(fresh.pending()) == 1
