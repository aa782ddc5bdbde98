"""
SMS Poll Supervisor
One interval job per user with an active order, polling the provider for the code.

Jobs live on the shared APScheduler instance (``sms_poll_<userId>``), so a single
scheduler loop drives every due poll. ``max_instances=1`` keeps a hung provider call
from overlapping the next tick for the same user; each tick re-reads the persisted
order before it acts.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from models import Order, OrderStatus
from services.order_ledger import OrderLedger
from services.order_state_machine import OrderStateMachine
from services.providers import ProviderManager
from utils.exceptions import AlreadyTerminalError, OrderNotFoundError, ProviderNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class PollState:
    user_id: int
    order_id: str
    attempts: int = 0


class SMSPollSupervisor:
    """Arms, ticks and disarms the per-user SMS poll jobs"""

    def __init__(self, scheduler: AsyncIOScheduler, orders: OrderLedger, providers: ProviderManager,
                 state_machine: OrderStateMachine, notifier=None,
                 interval_seconds: Optional[int] = None, max_attempts: Optional[int] = None):
        self.scheduler = scheduler
        self.orders = orders
        self.providers = providers
        self.state_machine = state_machine
        self.notifier = notifier
        self.interval_seconds = Config.SMS_POLL_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self.max_attempts = Config.MAX_CHECK_ATTEMPTS if max_attempts is None else max_attempts
        self._polls: Dict[int, PollState] = {}
        # polls stopped on exhaustion whose refund lost the race to a user cancel
        self._exhausted: Dict[int, PollState] = {}

        state_machine.bind_poll_supervisor(self)

    @staticmethod
    def job_id(user_id: int) -> str:
        return f"sms_poll_{user_id}"

    def is_armed(self, user_id: int) -> bool:
        return user_id in self._polls

    def get_state(self, user_id: int) -> Optional[PollState]:
        return self._polls.get(user_id)

    def arm(self, order: Order, attempts: int = 0) -> None:
        """Start polling for ``order``, replacing any earlier poll for the same user"""
        self._exhausted.pop(order.user_id, None)
        self.disarm(order.user_id)
        self._polls[order.user_id] = PollState(order.user_id, order.order_id, attempts)
        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            args=[order.user_id],
            id=self.job_id(order.user_id),
            name=f"📨 SMS poll user={order.user_id} order={order.order_id}",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.interval_seconds,
            replace_existing=True,
        )
        logger.info(
            f"⏱️ SMS_POLL_ARMED: user={order.user_id} order={order.order_id} "
            f"every {self.interval_seconds}s, attempts {attempts}/{self.max_attempts}"
        )

    def disarm(self, user_id: int, order_id: Optional[str] = None) -> int:
        """
        Stop polling for the user.

        If ``order_id`` is given, only a poll for that order is stopped, and an exhausted
        poll for that order hands back its attempts even though it was already stopped.

        Returns:
            Attempts already spent by the stopped poll (0 if none was armed)
        """
        state = self._polls.get(user_id)
        if state is None and order_id is not None:
            exhausted = self._exhausted.get(user_id)
            if exhausted and exhausted.order_id == str(order_id):
                del self._exhausted[user_id]
                return exhausted.attempts
        if state and order_id is not None and state.order_id != str(order_id):
            return 0
        self._polls.pop(user_id, None)
        try:
            self.scheduler.remove_job(self.job_id(user_id))
        except JobLookupError:
            pass
        if state:
            logger.info(f"⏹️ SMS_POLL_DISARMED: user={user_id} order={state.order_id}")
        return state.attempts if state else 0

    def disarm_all(self) -> int:
        self._exhausted.clear()
        count = 0
        for user_id in list(self._polls):
            self.disarm(user_id)
            count += 1
        return count

    async def tick(self, user_id: int) -> None:
        state = self._polls.get(user_id)
        if state is None:
            self.disarm(user_id)
            return
        state.attempts += 1

        order = await self.orders.get(user_id)
        if not order or order.order_id != state.order_id or order.status != OrderStatus.ACTIVE:
            logger.info(f"⏹️ SMS_POLL_SELF_CANCEL: user={user_id} order={state.order_id} resolved elsewhere")
            self.disarm(user_id, state.order_id)
            return

        try:
            provider = self.providers.get_provider(order.provider_key)
            result = await provider.get_status(order.order_id)
        except ProviderNotFoundError as e:
            logger.error(f"❌ SMS_POLL_PROVIDER_MISSING: order={order.order_id}: {e}")
            result = None

        if self._polls.get(user_id) is not state:
            return

        if result is not None and result.success and result.data.received:
            await self._complete(order, result.data.sms)
            return

        if result is not None and not result.success:
            logger.warning(
                f"⚠️ SMS_POLL_TRANSIENT: user={user_id} order={order.order_id} "
                f"attempt {state.attempts}/{self.max_attempts}: {result.error}"
            )

        if state.attempts >= self.max_attempts:
            await self._expire(order, state)

    async def _complete(self, order: Order, sms_code: str) -> None:
        try:
            completed = await self.state_machine.complete(order.user_id, order.order_id, sms_code)
        except (OrderNotFoundError, AlreadyTerminalError) as e:
            logger.info(f"⏭️ SMS_COMPLETE_SKIPPED: order={order.order_id}: {e}")
            self.disarm(order.user_id, order.order_id)
            return
        if self.notifier:
            await self.notifier.order_completed(completed, sms_code)

    async def _expire(self, order: Order, state: PollState) -> None:
        self.disarm(order.user_id, order.order_id)
        self._exhausted[order.user_id] = state
        logger.warning(f"⌛ SMS_POLL_EXHAUSTED: user={order.user_id} order={order.order_id}, refunding")
        result = await self.state_machine.expire(order.user_id, order.order_id)
        if result is not None and self._exhausted.get(order.user_id) is state:
            del self._exhausted[order.user_id]
        if result and result.credited and self.notifier:
            await self.notifier.order_refunded(order, result.amount, result.new_balance, "No SMS received in time")
