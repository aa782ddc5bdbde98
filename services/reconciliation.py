"""
Startup Reconciliation
Repairs state left inconsistent by a crash between two collection writes.

Money movements and order records live in different collections and are not written
atomically together. Before handlers start, this pass walks the order ledger and the
account ledger keys and finishes or reports every half-done lifecycle step:

- COMPLETED still in the ledger: append history if missing, mark settled, clear slot
- CANCELLED / REFUNDED still in the ledger: apply the refund (idempotent), clear slot
- CANCELLING: the upstream outcome is unknown; revert to ACTIVE and poll again
- ACTIVE: re-arm the SMS poll, resuming the attempt count from elapsed time
- purchase debits with no order, history, settlement or refund: reported to the owner
"""

import logging
import time
from typing import Any, Dict, List

from models import Order, OrderStatus
from services.account_ledger import AccountLedger
from services.deposit_ledger import DepositLedger
from services.order_ledger import OrderLedger
from services.order_state_machine import settled_key
from services.sms_poll_supervisor import SMSPollSupervisor

logger = logging.getLogger(__name__)


class StartupReconciler:

    def __init__(self, accounts: AccountLedger, orders: OrderLedger, deposits: DepositLedger,
                 poll_supervisor: SMSPollSupervisor, notifier=None):
        self.accounts = accounts
        self.orders = orders
        self.deposits = deposits
        self.poll_supervisor = poll_supervisor
        self.notifier = notifier

    async def run(self) -> Dict[str, Any]:
        results = {
            "deposits_loaded": await self.deposits.load(),
            "polls_rearmed": 0,
            "cancelling_reverted": 0,
            "completions_finished": 0,
            "refunds_repaired": 0,
            "orphaned_debits": [],
        }

        active_ids = set()
        for order in await self.orders.list_orders():
            if order.status == OrderStatus.CANCELLING:
                order = await self.orders.transition(
                    order.user_id, order.order_id, {OrderStatus.CANCELLING}, OrderStatus.ACTIVE
                )
                results["cancelling_reverted"] += 1

            if order.status == OrderStatus.ACTIVE:
                active_ids.add(order.order_id)
                self.poll_supervisor.arm(order, attempts=self._attempts_spent(order))
                results["polls_rearmed"] += 1
            elif order.status == OrderStatus.COMPLETED:
                await self._finish_completion(order)
                results["completions_finished"] += 1
            else:
                if await self._repair_refund(order):
                    results["refunds_repaired"] += 1

        results["orphaned_debits"] = await self._find_orphaned_debits(active_ids)
        if results["orphaned_debits"] and self.notifier:
            await self.notifier.owner_alert(
                f"Orphaned purchase debits need review: {results['orphaned_debits']}"
            )

        logger.info(f"🔎 STARTUP_RECONCILIATION: {results}")
        return results

    def _attempts_spent(self, order: Order) -> int:
        elapsed = max(0.0, time.time() - order.created_at)
        spent = int(elapsed // max(1, self.poll_supervisor.interval_seconds))
        # leave at least one tick so an overdue order is refunded on the next poll
        return min(spent, max(0, self.poll_supervisor.max_attempts - 1))

    async def _finish_completion(self, order: Order) -> None:
        if not await self.orders.in_history(order.user_id, order.order_id):
            await self.orders.append_history(order, sms_code="")
        await self.accounts.record_key(order.user_id, settled_key(order.order_id))
        await self.orders.remove(order.user_id, order.order_id)
        logger.warning(f"🔧 COMPLETION_FINISHED: user={order.user_id} order={order.order_id}")

    async def _repair_refund(self, order: Order) -> bool:
        result = await self.accounts.credit(order.user_id, order.price, key=order.refund_key)
        await self.orders.remove(order.user_id, order.order_id)
        if result.applied:
            logger.warning(
                f"🔧 REFUND_REPAIRED: user={order.user_id} order={order.order_id} "
                f"status={order.status.value} amount={order.price}"
            )
        return result.applied

    async def _find_orphaned_debits(self, active_ids: set) -> List[Dict[str, Any]]:
        orphans = []
        for account in await self.accounts.list_accounts():
            keys = set(account.ledger_keys)
            for key in account.ledger_keys:
                if not key.startswith("purchase:"):
                    continue
                order_id = key.split(":", 1)[1]
                if order_id in active_ids:
                    continue
                if settled_key(order_id) in keys or f"refund:{account.user_id}:{order_id}" in keys:
                    continue
                if await self.orders.in_history(account.user_id, order_id):
                    continue
                logger.critical(f"🚨 ORPHANED_DEBIT: user={account.user_id} order={order_id}")
                orphans.append({"user_id": account.user_id, "order_id": order_id})
        return orphans
