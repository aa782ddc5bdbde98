"""
Order Ledger Service
One order slot per user plus the capped per-user history of completed orders.
"""

import logging
import time
from typing import Dict, Any, Iterable, List, Optional

from config import Config
from models import Collection, HistoryEntry, Order, OrderStatus
from services.atomic_store import AtomicStore
from utils.exceptions import AlreadyTerminalError, DuplicateOrderError, OrderNotFoundError

logger = logging.getLogger(__name__)


class OrderLedger:
    """Orders keyed by user id; every status change is a compare-and-set under the store lock"""

    def __init__(self, store: AtomicStore, history_limit: Optional[int] = None):
        self.store = store
        self.history_limit = history_limit if history_limit is not None else Config.HISTORY_LIMIT

    async def get(self, user_id: int) -> Optional[Order]:
        orders = await self.store.read(Collection.ORDERS, {})
        data = orders.get(str(user_id))
        return Order.from_dict(data) if data else None

    async def list_orders(self) -> List[Order]:
        orders = await self.store.read(Collection.ORDERS, {})
        return [Order.from_dict(data) for data in orders.values()]

    async def insert(self, order: Order) -> Order:
        """
        Put an order into the user's slot.

        Raises:
            DuplicateOrderError: the slot already holds a non-terminal order
        """
        def _insert(orders: Dict[str, Any]) -> Order:
            existing = orders.get(str(order.user_id))
            if existing and not OrderStatus(existing["status"]).is_terminal:
                raise DuplicateOrderError(
                    f"User {order.user_id} already has order {existing['order_id']}"
                )
            orders[str(order.user_id)] = order.to_dict()
            return order

        await self.store.update(Collection.ORDERS, _insert, {})
        logger.info(
            f"📝 ORDER_INSERTED: user={order.user_id} order={order.order_id} "
            f"provider={order.provider_key} price={order.price}"
        )
        return order

    async def transition(self, user_id: int, order_id: str,
                         expected: Iterable[OrderStatus], new_status: OrderStatus) -> Order:
        """
        Move an order from one of ``expected`` to ``new_status``.

        Raises:
            OrderNotFoundError: slot empty or holding a different order
            AlreadyTerminalError: the order is not in an expected state
        """
        expected = frozenset(expected)

        def _transition(orders: Dict[str, Any]) -> Order:
            data = orders.get(str(user_id))
            if not data or str(data["order_id"]) != str(order_id):
                raise OrderNotFoundError(f"No order {order_id} for user {user_id}")
            order = Order.from_dict(data)
            if order.status not in expected:
                raise AlreadyTerminalError(
                    f"Order {order_id} is {order.status.value}, expected "
                    f"{sorted(s.value for s in expected)}"
                )
            order.status = new_status
            orders[str(user_id)] = order.to_dict()
            return order

        order = await self.store.update(Collection.ORDERS, _transition, {})
        logger.info(f"🔁 ORDER_TRANSITION: user={user_id} order={order_id} -> {new_status.value}")
        return order

    async def remove(self, user_id: int, order_id: str) -> Optional[Order]:
        """Clear the user's slot if it still holds ``order_id``; returns the removed order"""
        def _remove(orders: Dict[str, Any]) -> Optional[Order]:
            data = orders.get(str(user_id))
            if not data or str(data["order_id"]) != str(order_id):
                return None
            del orders[str(user_id)]
            return Order.from_dict(data)

        removed = await self.store.update(Collection.ORDERS, _remove, {})
        if removed:
            logger.info(f"🧹 ORDER_SLOT_CLEARED: user={user_id} order={order_id}")
        return removed

    async def append_history(self, order: Order, sms_code: str) -> bool:
        """
        Record a completed order, newest first, capped per user.

        Returns False if the order is already in the user's history.
        """
        entry = HistoryEntry(
            order_id=order.order_id,
            provider_key=order.provider_key,
            service_name=order.service_name or order.service_id,
            country=order.country,
            number=order.number,
            sms_code=sms_code,
            price=order.price,
            completed_at=time.time(),
        )

        def _append(history: Dict[str, Any]) -> bool:
            entries = history.setdefault(str(order.user_id), [])
            if any(str(e.get("order_id")) == str(order.order_id) for e in entries):
                return False
            entries.insert(0, entry.to_dict())
            del entries[self.history_limit:]
            return True

        added = await self.store.update(Collection.HISTORY, _append, {})
        if added:
            await self.store.update(
                Collection.TOP_USERS,
                lambda top: top.__setitem__(str(order.user_id), top.get(str(order.user_id), 0) + 1),
                {},
            )
        return added

    async def get_history(self, user_id: int) -> List[HistoryEntry]:
        history = await self.store.read(Collection.HISTORY, {})
        return [HistoryEntry.from_dict(e) for e in history.get(str(user_id), [])]

    async def in_history(self, user_id: int, order_id: str) -> bool:
        return any(e.order_id == str(order_id) for e in await self.get_history(user_id))

    async def top_users(self, limit: int = 10) -> List[tuple]:
        top = await self.store.read(Collection.TOP_USERS, {})
        ranked = sorted(top.items(), key=lambda item: item[1], reverse=True)
        return [(int(user_id), count) for user_id, count in ranked[:limit]]
