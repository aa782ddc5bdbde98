"""
Product Service
Digital goods catalog, purchase from balance, and delivery of gateway-paid products.
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from models import Collection, DepositIntent, PaymentMethod, Product, ProductOrder
from services.account_ledger import AccountLedger
from services.advisory_locks import AdvisoryLockSet, processing_key
from services.atomic_store import AtomicStore
from utils.exceptions import (
    InvalidAmountError,
    OrderInProgressError,
    OutOfStockError,
    ProductNotFoundError,
)

logger = logging.getLogger(__name__)


def generate_product_order_id() -> str:
    return f"PRD-{uuid.uuid4().hex[:10].upper()}"


class ProductService:

    def __init__(self, store: AtomicStore, accounts: AccountLedger, locks: AdvisoryLockSet, notifier=None):
        self.store = store
        self.accounts = accounts
        self.locks = locks
        self.notifier = notifier

    async def list_products(self, in_stock_only: bool = False) -> List[Product]:
        products = await self.store.read(Collection.PRODUCTS, {})
        items = [Product.from_dict(p) for p in products.values()]
        if in_stock_only:
            items = [p for p in items if p.stock > 0]
        return sorted(items, key=lambda p: p.created_at)

    async def get_product(self, product_id: str) -> Product:
        products = await self.store.read(Collection.PRODUCTS, {})
        data = products.get(str(product_id))
        if not data:
            raise ProductNotFoundError(f"Product {product_id} not found")
        return Product.from_dict(data)

    async def add_product(self, name: str, price: int, stock: int, content: str = "",
                          description: str = "") -> Product:
        if price <= 0 or stock < 0:
            raise InvalidAmountError("Price must be positive and stock non-negative")
        product = Product(
            product_id=uuid.uuid4().hex[:8],
            name=name,
            price=price,
            stock=stock,
            content=content,
            description=description,
            created_at=time.time(),
        )
        await self.store.backup(Collection.PRODUCTS)
        await self.store.update(
            Collection.PRODUCTS, lambda products: products.__setitem__(product.product_id, product.to_dict()), {}
        )
        logger.info(f"📦 PRODUCT_ADDED: {product.product_id} '{name}' price={price} stock={stock}")
        return product

    async def _take_stock(self, product_id: str) -> Product:
        def _decrement(products: Dict[str, Any]) -> Product:
            data = products.get(str(product_id))
            if not data:
                raise ProductNotFoundError(f"Product {product_id} not found")
            product = Product.from_dict(data)
            if product.stock <= 0:
                raise OutOfStockError(f"{product.name} is sold out")
            product.stock -= 1
            products[str(product_id)] = product.to_dict()
            return product

        return await self.store.update(Collection.PRODUCTS, _decrement, {})

    async def _record(self, product_order: ProductOrder) -> None:
        await self.store.update(
            Collection.PRODUCT_ORDERS,
            lambda orders: orders.__setitem__(product_order.product_order_id, product_order.to_dict()),
            {},
        )

    async def find_product_order(self, product_order_id: str) -> Optional[ProductOrder]:
        orders = await self.store.read(Collection.PRODUCT_ORDERS, {})
        data = orders.get(product_order_id)
        return ProductOrder.from_dict(data) if data else None

    async def purchase_with_balance(self, user_id: int, product_id: str,
                                    delivery_ref: Optional[Dict[str, Any]] = None) -> ProductOrder:
        """
        Buy one unit of a product from the user's balance.

        Raises:
            OrderInProgressError, ProductNotFoundError, OutOfStockError, InsufficientBalanceError
        """
        async with self.locks.hold(processing_key(user_id)) as token:
            if token is None:
                raise OrderInProgressError("Your previous request is still being processed")
            product = await self.get_product(product_id)
            if product.stock <= 0:
                raise OutOfStockError(f"{product.name} is sold out")

            product_order = ProductOrder(
                product_order_id=generate_product_order_id(),
                user_id=user_id,
                product_id=product.product_id,
                product_name=product.name,
                price=product.price,
                payment_method=PaymentMethod.BALANCE,
                created_at=time.time(),
            )
            debit_key = f"product:{product_order.product_order_id}"
            await self.accounts.debit(user_id, product.price, key=debit_key)
            try:
                product = await self._take_stock(product_id)
            except (OutOfStockError, ProductNotFoundError):
                await self.accounts.credit(user_id, product.price, key=f"refund:{debit_key}")
                raise OutOfStockError(f"{product.name} sold out while paying; balance refunded", funds_moved=False)
            await self._record(product_order)

        logger.info(f"🛍️ PRODUCT_SOLD: {product_order.product_order_id} user={user_id} via balance")
        if self.notifier:
            await self.notifier.product_delivered(user_id, product, product_order, delivery_ref)
        return product_order

    async def deliver_paid_product(self, intent: DepositIntent) -> Optional[ProductOrder]:
        """
        Hand over the product a gateway payment was made for.

        Idempotent on the intent id. If the product sold out meanwhile, the paid amount is
        credited to the user's balance instead and None is returned.
        """
        product_order_id = f"PRD-{intent.trx_id}"
        if await self.find_product_order(product_order_id):
            logger.warning(f"⚠️ PRODUCT_ALREADY_DELIVERED: {product_order_id}")
            return None

        try:
            product = await self._take_stock(intent.linked_product_id)
        except (OutOfStockError, ProductNotFoundError) as e:
            result = await self.accounts.credit(
                intent.user_id, intent.amount_to_credit, key=f"deposit:{intent.trx_id}"
            )
            logger.error(f"❌ PRODUCT_UNAVAILABLE_AFTER_PAYMENT: trx={intent.trx_id}: {e}; credited balance")
            if self.notifier:
                await self.notifier.deposit_credited(intent, result.balance)
                await self.notifier.owner_alert(
                    f"Paid product {intent.linked_product_id} unavailable for trx {intent.trx_id}; "
                    f"user {intent.user_id} credited {intent.amount_to_credit}"
                )
            return None

        product_order = ProductOrder(
            product_order_id=product_order_id,
            user_id=intent.user_id,
            product_id=product.product_id,
            product_name=product.name,
            price=intent.amount_requested,
            payment_method=PaymentMethod.QRIS,
            created_at=time.time(),
            reference=intent.trx_id,
        )
        await self._record(product_order)
        logger.info(f"🛍️ PRODUCT_SOLD: {product_order_id} user={intent.user_id} via gateway")
        if self.notifier:
            await self.notifier.product_delivered(intent.user_id, product, product_order, intent.delivery_ref)
        return product_order
