"""
Refund Coordinator - at-most-once balance credit for a cancelled or timed-out order

Two guards stack here:
1. The advisory key ``refund:<userId>:<orderId>``. Whoever claims it owns the refund;
   later triggers see it held and back off. It is kept for a retention window after
   the credit so a duplicate trigger arriving moments later still backs off.
2. The same key is used as the ledger idempotency key, so the credit also applies at
   most once across the retention window and across restarts.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config import Config
from services.account_ledger import AccountLedger
from services.advisory_locks import AdvisoryLockSet, AdvisoryLockToken, refund_key
from services.order_ledger import OrderLedger

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    user_id: int
    order_id: str
    amount: int
    credited: bool
    already_handled: bool = False
    new_balance: Optional[int] = None


class RefundCoordinator:
    """Idempotent refund of an order's price back to the user's balance"""

    def __init__(self, accounts: AccountLedger, orders: OrderLedger, locks: AdvisoryLockSet,
                 retention_seconds: Optional[float] = None):
        self.accounts = accounts
        self.orders = orders
        self.locks = locks
        self.retention_seconds = (
            retention_seconds if retention_seconds is not None else Config.REFUND_LOCK_RETENTION_SECONDS
        )

    def claim(self, user_id: int, order_id: str) -> Optional[AdvisoryLockToken]:
        """Take ownership of the refund for this order; None if another path owns it"""
        token = self.locks.try_acquire(refund_key(user_id, order_id))
        if token is None:
            logger.info(f"⏭️ REFUND_ALREADY_CLAIMED: user={user_id} order={order_id}")
        return token

    def abandon(self, token: AdvisoryLockToken) -> None:
        """Give up a claim without crediting (nothing moved)"""
        self.locks.release(token)

    async def settle(self, token: AdvisoryLockToken, user_id: int, order_id: str, amount: int,
                     retention_seconds: Optional[float] = None) -> RefundResult:
        """
        Credit the refund, clear the order slot and schedule the claim's release.

        Args:
            token: Claim returned by ``claim`` for this order
            user_id: Owner of the order
            order_id: Order being refunded
            amount: Amount to credit (the order price)
            retention_seconds: Override of the post-credit retention window

        Returns:
            RefundResult; ``credited`` is False if the ledger had already applied this refund
        """
        retention = self.retention_seconds if retention_seconds is None else retention_seconds
        try:
            result = await self.accounts.credit(user_id, amount, key=token.key)
            await self.orders.remove(user_id, order_id)
        except Exception:
            # credit not proven; free the claim for a retry or reconciliation
            self.locks.release(token)
            raise

        self.locks.release_later(token, retention)
        if result.applied:
            logger.info(
                f"✅ REFUND_CREDITED: user={user_id} order={order_id} amount={amount} "
                f"balance={result.balance} (lock kept {retention}s)"
            )
        else:
            logger.warning(f"⚠️ REFUND_DUPLICATE_BLOCKED: user={user_id} order={order_id} already credited")
        return RefundResult(
            user_id=user_id,
            order_id=order_id,
            amount=amount,
            credited=result.applied,
            already_handled=not result.applied,
            new_balance=result.balance,
        )

    async def refund(self, user_id: int, order_id: str, amount: int) -> RefundResult:
        """Claim and settle in one step; a no-op if the refund is already claimed"""
        token = self.claim(user_id, order_id)
        if token is None:
            return RefundResult(user_id, order_id, amount, credited=False, already_handled=True)
        return await self.settle(token, user_id, order_id, amount)
