"""
Deposit Poll Supervisor
One global job that reconciles every pending payment intent with the gateway.

For each pending intent, per tick:
- past ``expires_at``: flip to EXPIRED, cancel upstream (best effort), never credit
- gateway says success: flip to SUCCESS, then deliver (balance credit or product)
- gateway says expired/failed/cancelled: flip accordingly, no credit

The in-memory flip out of PENDING happens before any side effect and is the only gate,
so an intent is delivered at most once.
"""

import logging
import time
from typing import Dict, Optional

from config import Config
from models import DepositIntent, DepositStatus, GatewayStatus
from services.account_ledger import AccountLedger
from services.deposit_ledger import DepositLedger
from services.payment_gateway import CiaaTopUpGateway
from services.product_service import ProductService

logger = logging.getLogger(__name__)

_CLOSING_STATUSES = {
    GatewayStatus.EXPIRED: DepositStatus.EXPIRED,
    GatewayStatus.FAILED: DepositStatus.EXPIRED,
    GatewayStatus.CANCELLED: DepositStatus.CANCELLED,
}


class DepositPollSupervisor:

    def __init__(self, ledger: DepositLedger, gateway: CiaaTopUpGateway, accounts: AccountLedger,
                 products: ProductService, notifier=None, interval_seconds: Optional[int] = None):
        self.ledger = ledger
        self.gateway = gateway
        self.accounts = accounts
        self.products = products
        self.notifier = notifier
        self.interval_seconds = (
            Config.DEPOSIT_POLL_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )

    async def tick(self) -> Dict[str, int]:
        results = {'checked': 0, 'delivered': 0, 'expired': 0, 'closed': 0, 'delivery_failed': 0}
        changed = False

        for intent in self.ledger.pending():
            # a user cancel may have landed while an earlier intent was awaiting the gateway
            if intent.status != DepositStatus.PENDING:
                continue
            results['checked'] += 1

            if time.time() > intent.expires_at:
                if self.ledger.transition(intent.trx_id, DepositStatus.EXPIRED):
                    changed = True
                    results['expired'] += 1
                    logger.info(f"⌛ DEPOSIT_EXPIRED: trx={intent.trx_id} user={intent.user_id}")
                    await self.gateway.cancel_intent(intent.trx_id)
                    if self.notifier:
                        await self.notifier.deposit_closed(intent)
                continue

            status = await self.gateway.check_status(intent.trx_id)
            if not status.success or status.data == GatewayStatus.PENDING:
                continue

            if status.data == GatewayStatus.SUCCESS:
                if self.ledger.transition(intent.trx_id, DepositStatus.SUCCESS) is None:
                    continue
                changed = True
                if await self._deliver(intent):
                    results['delivered'] += 1
                else:
                    results['delivery_failed'] += 1
                continue

            closing = _CLOSING_STATUSES.get(status.data)
            if closing and self.ledger.transition(intent.trx_id, closing):
                changed = True
                results['closed'] += 1
                logger.info(f"🚫 DEPOSIT_CLOSED_BY_GATEWAY: trx={intent.trx_id} status={status.data.value}")
                if self.notifier:
                    await self.notifier.deposit_closed(intent)

        if changed:
            await self.ledger.persist()
        if results['checked']:
            logger.debug(f"💳 DEPOSIT_POLL: {results}")
        return results

    async def _deliver(self, intent: DepositIntent) -> bool:
        try:
            if intent.is_product_payment:
                await self.products.deliver_paid_product(intent)
            else:
                result = await self.accounts.credit(
                    intent.user_id, intent.amount_to_credit, key=f"deposit:{intent.trx_id}"
                )
                logger.info(
                    f"💰 DEPOSIT_CREDITED: trx={intent.trx_id} user={intent.user_id} "
                    f"+{intent.amount_to_credit} applied={result.applied}"
                )
                if result.applied and self.notifier:
                    await self.notifier.deposit_credited(intent, result.balance)
            return True
        except Exception as e:
            intent.delivery_failed = True
            logger.critical(
                f"🚨 DEPOSIT_DELIVERY_FAILED: trx={intent.trx_id} user={intent.user_id} "
                f"amount={intent.amount_to_credit}: {e}",
                exc_info=True,
            )
            if self.notifier:
                await self.notifier.owner_alert(
                    f"Deposit {intent.trx_id} paid but delivery failed for user {intent.user_id}: {e}. "
                    f"Manual review required."
                )
            return False
