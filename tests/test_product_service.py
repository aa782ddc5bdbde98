"""
Test Product Service
Catalog management and purchase from balance
"""

import asyncio
import os

import pytest

from models import PaymentMethod
from services.advisory_locks import processing_key
from utils.exceptions import (
    InsufficientBalanceError,
    InvalidAmountError,
    OrderInProgressError,
    OutOfStockError,
    ProductNotFoundError,
)


class TestCatalog:

    @pytest.mark.asyncio
    async def test_add_and_list_products(self, broker):
        first = await broker.products.add_product("Canva Pro", 15000, 3)
        await broker.products.add_product("Sold out", 9000, 0)

        all_products = await broker.products.list_products()
        in_stock = await broker.products.list_products(in_stock_only=True)

        assert len(all_products) == 2
        assert [p.product_id for p in in_stock] == [first.product_id]

    @pytest.mark.asyncio
    async def test_add_product_backs_up_catalog(self, broker):
        await broker.products.add_product("First", 1000, 1)
        assert not os.path.isdir(broker.store.backup_dir)

        await broker.products.add_product("Second", 1000, 1)
        backups = [n for n in os.listdir(broker.store.backup_dir) if n.startswith("products-")]
        assert len(backups) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price,stock", [(0, 1), (1000, -1)])
    async def test_invalid_product_rejected(self, broker, price, stock):
        with pytest.raises(InvalidAmountError):
            await broker.products.add_product("Bad", price, stock)

    @pytest.mark.asyncio
    async def test_unknown_product(self, broker):
        with pytest.raises(ProductNotFoundError):
            await broker.products.get_product("nope")


class TestPurchaseWithBalance:

    @pytest.mark.asyncio
    async def test_purchase_debits_and_decrements_stock(self, broker):
        product = await broker.products.add_product("Canva Pro", 15000, 2, content="invite-link")
        await broker.accounts.credit(111, 20000)

        product_order = await broker.products.purchase_with_balance(111, product.product_id, {"chat_id": 111})

        assert product_order.payment_method == PaymentMethod.BALANCE
        assert await broker.accounts.get_balance(111) == 5000
        assert (await broker.products.get_product(product.product_id)).stock == 1
        assert await broker.products.find_product_order(product_order.product_order_id) is not None
        broker.notifier.product_delivered.assert_awaited_once()
        assert not broker.locks.is_held(processing_key(111))

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, broker):
        product = await broker.products.add_product("Canva Pro", 15000, 2)
        await broker.accounts.credit(111, 1000)

        with pytest.raises(InsufficientBalanceError):
            await broker.products.purchase_with_balance(111, product.product_id)
        assert (await broker.products.get_product(product.product_id)).stock == 2
        assert not broker.locks.is_held(processing_key(111))

    @pytest.mark.asyncio
    async def test_sold_out(self, broker):
        product = await broker.products.add_product("Canva Pro", 15000, 0)
        await broker.accounts.credit(111, 20000)

        with pytest.raises(OutOfStockError):
            await broker.products.purchase_with_balance(111, product.product_id)
        assert await broker.accounts.get_balance(111) == 20000

    @pytest.mark.asyncio
    async def test_last_unit_race_refunds_loser(self, broker):
        product = await broker.products.add_product("Canva Pro", 15000, 1)
        await broker.accounts.credit(111, 20000)
        await broker.accounts.credit(222, 20000)

        results = await asyncio.gather(
            broker.products.purchase_with_balance(111, product.product_id),
            broker.products.purchase_with_balance(222, product.product_id),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, OutOfStockError)) == 1
        balances = sorted([await broker.accounts.get_balance(111), await broker.accounts.get_balance(222)])
        assert balances == [5000, 20000]
        assert (await broker.products.get_product(product.product_id)).stock == 0

    @pytest.mark.asyncio
    async def test_busy_user_rejected(self, broker):
        product = await broker.products.add_product("Canva Pro", 15000, 1)
        broker.locks.try_acquire(processing_key(111))

        with pytest.raises(OrderInProgressError):
            await broker.products.purchase_with_balance(111, product.product_id)
        assert broker.locks.is_held(processing_key(111)), "The other request keeps its lock"
