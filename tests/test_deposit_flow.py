"""
Test Deposit Flow
Intent creation, the single status gate, expiry, gateway-driven closing and product delivery
"""

import time

import pytest

from models import DepositStatus, GatewayStatus
from utils.exceptions import (
    DepositNotFoundError,
    DuplicateDepositError,
    InvalidAmountError,
    OutOfStockError,
    PurchaseFailedError,
)


class TestDepositService:

    @pytest.mark.asyncio
    async def test_request_deposit_registers_pending_intent(self, broker):
        intent = await broker.deposit_service.request_deposit(111, 25000, {"chat_id": 111})

        assert intent.status == DepositStatus.PENDING
        assert intent.amount_to_credit == 25000
        assert intent.expires_at - intent.created_at == 600
        assert broker.deposits.find(intent.trx_id) is intent
        persisted = await broker.store.read("pending_deposits", [])
        assert [item["trx_id"] for item in persisted] == [intent.trx_id]

    @pytest.mark.asyncio
    async def test_earlier_gateway_expiry_wins(self, broker):
        deadline = time.time() + 120
        broker.gateway.expires_at = deadline

        intent = await broker.deposit_service.request_deposit(111, 25000)

        assert intent.expires_at == deadline

    @pytest.mark.asyncio
    async def test_later_gateway_expiry_keeps_local_window(self, broker):
        broker.gateway.expires_at = time.time() + 3600

        intent = await broker.deposit_service.request_deposit(111, 25000)

        assert intent.expires_at - intent.created_at == 600

    @pytest.mark.asyncio
    async def test_below_minimum_rejected(self, broker):
        with pytest.raises(InvalidAmountError):
            await broker.deposit_service.request_deposit(111, 500)
        assert len(broker.deposits) == 0

    @pytest.mark.asyncio
    async def test_one_pending_intent_per_user(self, broker):
        await broker.deposit_service.request_deposit(111, 10000)
        with pytest.raises(DuplicateDepositError):
            await broker.deposit_service.request_deposit(111, 20000)

    @pytest.mark.asyncio
    async def test_gateway_failure_surfaces_without_intent(self, broker):
        broker.gateway.create_fails = True
        with pytest.raises(PurchaseFailedError):
            await broker.deposit_service.request_deposit(111, 10000)
        assert len(broker.deposits) == 0

    @pytest.mark.asyncio
    async def test_fee_reduces_credited_amount(self, broker):
        broker.gateway.fee = 300
        intent = await broker.deposit_service.request_deposit(111, 10000)
        assert intent.fee == 300
        assert intent.amount_to_credit == 9700

    @pytest.mark.asyncio
    async def test_user_cancel(self, broker):
        intent = await broker.deposit_service.request_deposit(111, 10000)

        await broker.deposit_service.cancel_deposit(111, intent.trx_id)

        assert intent.status == DepositStatus.CANCELLED
        assert broker.gateway.cancelled == [intent.trx_id]
        with pytest.raises(DepositNotFoundError):
            await broker.deposit_service.cancel_deposit(111, intent.trx_id)

    @pytest.mark.asyncio
    async def test_cancel_of_someone_elses_deposit(self, broker):
        intent = await broker.deposit_service.request_deposit(111, 10000)
        with pytest.raises(DepositNotFoundError):
            await broker.deposit_service.cancel_deposit(222, intent.trx_id)
        assert intent.status == DepositStatus.PENDING


class TestDepositPoll:

    @pytest.mark.asyncio
    async def test_success_credits_once(self, broker):
        intent = await broker.deposit_service.request_deposit(111, 10000, {"chat_id": 111})
        broker.gateway.statuses[intent.trx_id] = GatewayStatus.SUCCESS

        first = await broker.deposit_polls.tick()
        second = await broker.deposit_polls.tick()

        assert first['delivered'] == 1
        assert second['checked'] == 0
        assert intent.status == DepositStatus.SUCCESS
        assert await broker.accounts.get_balance(111) == 10000
        broker.notifier.deposit_credited.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pending_gateway_status_leaves_intent_alone(self, broker):
        intent = await broker.deposit_service.request_deposit(111, 10000)

        results = await broker.deposit_polls.tick()

        assert results['checked'] == 1
        assert intent.status == DepositStatus.PENDING
        assert await broker.accounts.get_balance(111) == 0

    @pytest.mark.asyncio
    async def test_expired_intent_never_credited(self, broker):
        """Gateway flips to success after the local expiry: the user is not credited"""
        intent = await broker.deposit_service.request_deposit(111, 10000)
        intent.expires_at = time.time() - 1

        results = await broker.deposit_polls.tick()
        assert results['expired'] == 1
        assert intent.status == DepositStatus.EXPIRED
        assert broker.gateway.cancelled == [intent.trx_id]

        broker.gateway.statuses[intent.trx_id] = GatewayStatus.SUCCESS
        await broker.deposit_polls.tick()

        assert await broker.accounts.get_balance(111) == 0
        broker.notifier.deposit_credited.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("gateway_status,expected", [
        (GatewayStatus.FAILED, DepositStatus.EXPIRED),
        (GatewayStatus.EXPIRED, DepositStatus.EXPIRED),
        (GatewayStatus.CANCELLED, DepositStatus.CANCELLED),
    ])
    async def test_gateway_closing_statuses(self, broker, gateway_status, expected):
        intent = await broker.deposit_service.request_deposit(111, 10000)
        broker.gateway.statuses[intent.trx_id] = gateway_status

        results = await broker.deposit_polls.tick()

        assert results['closed'] == 1
        assert intent.status == expected
        assert await broker.accounts.get_balance(111) == 0

    @pytest.mark.asyncio
    async def test_user_cancel_then_gateway_success_is_ignored(self, broker):
        intent = await broker.deposit_service.request_deposit(111, 10000)
        await broker.deposit_service.cancel_deposit(111, intent.trx_id)
        broker.gateway.statuses[intent.trx_id] = GatewayStatus.SUCCESS

        await broker.deposit_polls.tick()
        assert await broker.accounts.get_balance(111) == 0

    @pytest.mark.asyncio
    async def test_delivery_failure_is_flagged_and_alerted(self, broker, monkeypatch):
        intent = await broker.deposit_service.request_deposit(111, 10000)
        broker.gateway.statuses[intent.trx_id] = GatewayStatus.SUCCESS

        async def broken_credit(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(broker.accounts, "credit", broken_credit)
        results = await broker.deposit_polls.tick()

        assert results['delivery_failed'] == 1
        assert intent.delivery_failed
        assert intent.status == DepositStatus.SUCCESS, "The gate stays closed; no second delivery"
        broker.notifier.owner_alert.assert_awaited_once()


class TestProductPayment:

    @pytest.mark.asyncio
    async def test_paid_product_is_delivered(self, broker):
        product = await broker.products.add_product("Netflix 1 month", 35000, 2, content="user:pass")
        intent = await broker.deposit_service.request_product_payment(111, product.product_id, {"chat_id": 111})
        assert intent.linked_product_id == product.product_id
        assert intent.amount_to_credit == 35000

        broker.gateway.statuses[intent.trx_id] = GatewayStatus.SUCCESS
        results = await broker.deposit_polls.tick()

        assert results['delivered'] == 1
        assert (await broker.products.get_product(product.product_id)).stock == 1
        assert await broker.products.find_product_order(f"PRD-{intent.trx_id}") is not None
        assert await broker.accounts.get_balance(111) == 0
        broker.notifier.product_delivered.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sold_out_product_credits_balance_instead(self, broker):
        product = await broker.products.add_product("Spotify", 20000, 1)
        intent = await broker.deposit_service.request_product_payment(222, product.product_id)
        await broker.accounts.credit(111, 30000)
        await broker.products.purchase_with_balance(111, product.product_id)

        broker.gateway.statuses[intent.trx_id] = GatewayStatus.SUCCESS
        await broker.deposit_polls.tick()

        assert await broker.accounts.get_balance(222) == 20000
        broker.notifier.owner_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_product_payment_for_sold_out_product_rejected(self, broker):
        product = await broker.products.add_product("Spotify", 20000, 0)
        with pytest.raises(OutOfStockError):
            await broker.deposit_service.request_product_payment(111, product.product_id)
