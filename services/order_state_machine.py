"""
Order State Machine
Governs a number order from purchase to a terminal state.

    purchase ──> ACTIVE ──(sms received)──────────────> COMPLETED
                   │ └──(user cancel)──> CANCELLING ──> CANCELLED
                   │                        └──(upstream cancel failed)──> ACTIVE
                   └──(poll attempts exhausted)────────> REFUNDED

Every transition is a compare-and-set on the order ledger, so when two paths race for the
same order exactly one wins and the other gets OrderNotFoundError or AlreadyTerminalError.
Terminal orders are removed from the ledger once their side effects are done.
"""

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Dict, Optional, TYPE_CHECKING

from config import Config
from models import Order, OrderStatus, ServiceSelection
from services.account_ledger import AccountLedger
from services.advisory_locks import AdvisoryLockSet, processing_key
from services.order_ledger import OrderLedger
from services.providers import BaseProvider, ProviderManager, ProviderResult, STATUS_READY, STATUS_COMPLETE
from services.refund_coordinator import RefundCoordinator, RefundResult
from utils.exceptions import (
    AlreadyTerminalError,
    CancelTooEarlyError,
    DuplicateOrderError,
    InsufficientBalanceError,
    OrderInProgressError,
    OrderNotFoundError,
    OutOfStockError,
    PriceChangedError,
    ProviderNotFoundError,
    PurchaseFailedError,
    RefundFailureError,
)
from utils.graceful_shutdown import create_managed_task

if TYPE_CHECKING:
    from services.sms_poll_supervisor import SMSPollSupervisor

logger = logging.getLogger(__name__)


def purchase_key(order_id: str) -> str:
    return f"purchase:{order_id}"


def settled_key(order_id: str) -> str:
    return f"settled:{order_id}"


class OrderStateMachine:
    """Purchase, completion, cancellation and timeout-refund of number orders"""

    def __init__(self, accounts: AccountLedger, orders: OrderLedger, providers: ProviderManager,
                 locks: AdvisoryLockSet, refunds: RefundCoordinator,
                 markup: Optional[int] = None,
                 cancel_cooldown_seconds: Optional[float] = None,
                 cancel_max_retries: Optional[int] = None,
                 cancel_retry_delay_seconds: Optional[float] = None,
                 cancel_lock_retention_seconds: Optional[float] = None,
                 ready_delay_seconds: Optional[float] = None):
        self.accounts = accounts
        self.orders = orders
        self.providers = providers
        self.locks = locks
        self.refunds = refunds
        self.poll_supervisor: Optional["SMSPollSupervisor"] = None

        self.markup = Config.MARKUP_PROFIT if markup is None else markup
        self.cancel_cooldown_seconds = (
            Config.CANCEL_COOLDOWN_SECONDS if cancel_cooldown_seconds is None else cancel_cooldown_seconds
        )
        self.cancel_max_retries = Config.CANCEL_MAX_RETRIES if cancel_max_retries is None else cancel_max_retries
        self.cancel_retry_delay_seconds = (
            Config.CANCEL_RETRY_DELAY_SECONDS if cancel_retry_delay_seconds is None else cancel_retry_delay_seconds
        )
        self.cancel_lock_retention_seconds = (
            Config.CANCEL_LOCK_RETENTION_SECONDS
            if cancel_lock_retention_seconds is None else cancel_lock_retention_seconds
        )
        self.ready_delay_seconds = (
            Config.SET_STATUS_READY_DELAY_SECONDS if ready_delay_seconds is None else ready_delay_seconds
        )

    def bind_poll_supervisor(self, supervisor: "SMSPollSupervisor") -> None:
        self.poll_supervisor = supervisor

    # ===== PURCHASE =====

    async def purchase(self, user_id: int, selection: ServiceSelection,
                       delivery_ref: Optional[Dict[str, Any]] = None) -> Order:
        """
        Buy a number for the user.

        Args:
            user_id: Buyer
            selection: Provider, service, country and the price the user was shown
            delivery_ref: Where to deliver updates (chat_id, message_id)

        Returns:
            The new ACTIVE order

        Raises:
            OrderInProgressError: another purchase for this user is running
            DuplicateOrderError: the user already has a non-terminal order
            PriceChangedError: the re-quoted price differs from ``selection.shown_price``
            OutOfStockError, InsufficientBalanceError, PurchaseFailedError
        """
        async with self.locks.hold(processing_key(user_id)) as token:
            if token is None:
                raise OrderInProgressError("Your previous request is still being processed")
            return await self._purchase(user_id, selection, delivery_ref or {})

    async def _purchase(self, user_id: int, selection: ServiceSelection, delivery_ref: Dict[str, Any]) -> Order:
        existing = await self.orders.get(user_id)
        if existing and not existing.status.is_terminal:
            raise DuplicateOrderError(f"Order {existing.order_id} is still {existing.status.value}")

        provider = self.providers.get_provider(selection.provider_key)
        quote = await provider.find_service(selection.country, selection.service_id)
        if not quote.success:
            raise PurchaseFailedError(f"Could not confirm the price: {quote.error}")
        offer = quote.data
        if offer is None or offer.stock <= 0:
            raise OutOfStockError(f"{selection.service_id} is out of stock in {selection.country}")

        final_price = provider.sell_price(offer, self.markup)
        if final_price != selection.shown_price:
            logger.info(
                f"💱 PRICE_CHANGED: user={user_id} service={selection.service_id} "
                f"{selection.shown_price} -> {final_price}"
            )
            raise PriceChangedError(selection.shown_price, final_price)

        balance = await self.accounts.get_balance(user_id)
        if balance < final_price:
            raise InsufficientBalanceError(user_id, balance, final_price)

        allocation = await provider.order_number(selection.service_id, selection.country)
        if not allocation.success:
            raise PurchaseFailedError(f"Provider could not allocate a number: {allocation.error}")
        number = allocation.data

        try:
            await self.accounts.debit(user_id, final_price, key=purchase_key(number.id))
        except Exception:
            await self._cancel_upstream_once(provider, number.id)
            raise

        order = Order(
            order_id=number.id,
            user_id=user_id,
            provider_key=selection.provider_key,
            service_id=str(selection.service_id),
            service_name=offer.name,
            country=str(selection.country),
            price=final_price,
            number=number.number,
            status=OrderStatus.ACTIVE,
            created_at=time.time(),
            delivery_ref=delivery_ref,
        )
        try:
            await self.orders.insert(order)
        except Exception as e:
            # the debit already happened; give it back before the error surfaces
            logger.error(f"❌ ORDER_INSERT_FAILED: user={user_id} order={order.order_id}: {e}, refunding")
            try:
                await self.accounts.credit(user_id, final_price, key=order.refund_key)
            finally:
                await self._cancel_upstream_once(provider, number.id)
            raise

        logger.info(
            f"🛒 ORDER_PURCHASED: user={user_id} order={order.order_id} number={order.number} "
            f"price={final_price} provider={selection.provider_key}"
        )
        create_managed_task(self._signal_ready(provider, order.order_id))
        if self.poll_supervisor:
            self.poll_supervisor.arm(order)
        return order

    async def _signal_ready(self, provider: BaseProvider, order_id: str) -> None:
        if self.ready_delay_seconds > 0:
            await asyncio.sleep(self.ready_delay_seconds)
        result = await self._call_provider("set_status", order_id, provider.set_status(order_id, STATUS_READY))
        if not result.success:
            logger.warning(f"⚠️ READY_SIGNAL_FAILED: order={order_id}: {result.error}")

    # ===== COMPLETION =====

    async def complete(self, user_id: int, order_id: str, sms_code: str) -> Order:
        """ACTIVE -> COMPLETED on a received code; appends history and clears the slot"""
        order = await self.orders.transition(user_id, order_id, {OrderStatus.ACTIVE}, OrderStatus.COMPLETED)
        await self.orders.append_history(order, sms_code)
        await self.accounts.record_key(user_id, settled_key(order_id))
        await self.orders.remove(user_id, order_id)
        if self.poll_supervisor:
            self.poll_supervisor.disarm(user_id, order_id)

        provider = self._provider_or_none(order.provider_key)
        if provider:
            ack = await self._call_provider("set_status", order_id, provider.set_status(order_id, STATUS_COMPLETE))
            if not ack.success:
                logger.warning(f"⚠️ COMPLETE_SIGNAL_FAILED: order={order_id}: {ack.error}")

        logger.info(f"✅ ORDER_COMPLETED: user={user_id} order={order_id}")
        return order

    # ===== USER CANCEL =====

    async def cancel(self, user_id: int, order_id: str) -> RefundResult:
        """
        ACTIVE -> CANCELLING -> CANCELLED with a refund.

        Raises:
            OrderNotFoundError: no such order for this user
            AlreadyTerminalError: already resolved, or another cancel/refund owns it
            CancelTooEarlyError: the cooldown since purchase has not elapsed
            RefundFailureError: upstream refused to cancel; order is ACTIVE again
        """
        order = await self.orders.get(user_id)
        if not order or order.order_id != str(order_id):
            raise OrderNotFoundError(f"No order {order_id} for user {user_id}")
        if order.status != OrderStatus.ACTIVE:
            raise AlreadyTerminalError(f"Order {order_id} is already {order.status.value}")

        remaining = self.cancel_cooldown_seconds - (time.time() - order.created_at)
        if remaining > 0:
            raise CancelTooEarlyError(int(math.ceil(remaining)))

        token = self.refunds.claim(user_id, order_id)
        if token is None:
            raise AlreadyTerminalError(f"Order {order_id} is already being resolved")

        try:
            order = await self.orders.transition(
                user_id, order_id, {OrderStatus.ACTIVE}, OrderStatus.CANCELLING
            )
        except (OrderNotFoundError, AlreadyTerminalError):
            self.refunds.abandon(token)
            raise

        attempts = self.poll_supervisor.disarm(user_id, order_id) if self.poll_supervisor else 0

        if not await self._cancel_upstream_with_retries(order):
            await self.orders.transition(user_id, order_id, {OrderStatus.CANCELLING}, OrderStatus.ACTIVE)
            self.refunds.abandon(token)
            if self.poll_supervisor:
                self.poll_supervisor.arm(order, attempts=attempts)
            logger.error(f"❌ CANCEL_FAILED: user={user_id} order={order_id} reverted to active")
            raise RefundFailureError("The provider did not accept the cancel. Your order is still active, try again shortly.")

        await self.orders.transition(user_id, order_id, {OrderStatus.CANCELLING}, OrderStatus.CANCELLED)
        result = await self.refunds.settle(
            token, user_id, order_id, order.price, retention_seconds=self.cancel_lock_retention_seconds
        )
        logger.info(f"🚫 ORDER_CANCELLED: user={user_id} order={order_id} refunded={result.credited}")
        return result

    async def _cancel_upstream_with_retries(self, order: Order) -> bool:
        provider = self._provider_or_none(order.provider_key)
        if provider is None:
            return False
        for attempt in range(1, self.cancel_max_retries + 1):
            result = await self._call_provider("cancel_order", order.order_id, provider.cancel_order(order.order_id))
            if result.success:
                return True
            logger.warning(
                f"⚠️ UPSTREAM_CANCEL_RETRY: order={order.order_id} attempt {attempt}/"
                f"{self.cancel_max_retries}: {result.error}"
            )
            if attempt < self.cancel_max_retries:
                await asyncio.sleep(self.cancel_retry_delay_seconds)
        return False

    async def _cancel_upstream_once(self, provider: BaseProvider, order_id: str) -> None:
        result = await self._call_provider("cancel_order", order_id, provider.cancel_order(order_id))
        if not result.success:
            logger.warning(f"⚠️ UPSTREAM_CANCEL_FAILED: order={order_id}: {result.error}")

    @staticmethod
    async def _call_provider(operation: str, order_id: str, call: Awaitable[ProviderResult]) -> ProviderResult:
        """Await a provider call; an adapter that raises counts as a failed envelope"""
        try:
            return await call
        except Exception as e:
            logger.error(f"❌ PROVIDER_CALL_RAISED: {operation} order={order_id}: {e!r}")
            return ProviderResult.fail(str(e) or e.__class__.__name__)

    # ===== TIMEOUT REFUND =====

    async def expire(self, user_id: int, order_id: str) -> Optional[RefundResult]:
        """
        ACTIVE -> REFUNDED after the poll attempts ran out.

        Upstream cancel is best effort and never blocks the refund. Returns None when
        another path already resolved or owns the order.
        """
        token = self.refunds.claim(user_id, order_id)
        if token is None:
            return None
        try:
            order = await self.orders.transition(user_id, order_id, {OrderStatus.ACTIVE}, OrderStatus.REFUNDED)
        except (OrderNotFoundError, AlreadyTerminalError) as e:
            self.refunds.abandon(token)
            logger.info(f"⏭️ EXPIRE_SKIPPED: user={user_id} order={order_id}: {e}")
            return None

        provider = self._provider_or_none(order.provider_key)
        if provider:
            await self._cancel_upstream_once(provider, order_id)

        result = await self.refunds.settle(token, user_id, order_id, order.price)
        logger.info(f"⌛ ORDER_TIMED_OUT: user={user_id} order={order_id} refunded={result.credited}")
        return result

    def _provider_or_none(self, provider_key: str) -> Optional[BaseProvider]:
        try:
            return self.providers.get_provider(provider_key)
        except ProviderNotFoundError:
            logger.error(f"❌ PROVIDER_MISSING: {provider_key} is no longer enabled")
            return None
