"""
Cleanup Sweeper
Periodic garbage collection of in-memory coordination state.

Never touches the order ledger: orders are terminal-or-absent by construction.
"""

import logging
from typing import Any, Dict, Optional

from config import Config
from services.advisory_locks import AdvisoryLockSet, LockKind
from services.deposit_ledger import DepositLedger
from services.security_service import SecurityService

logger = logging.getLogger(__name__)


class CleanupSweeper:
    """Clears stale advisory locks, prunes resolved deposits and old rate-limit windows"""

    def __init__(self, locks: AdvisoryLockSet, deposits: DepositLedger,
                 security: Optional[SecurityService] = None,
                 stale_seconds: Optional[float] = None,
                 deposit_grace_seconds: Optional[float] = None,
                 max_refund_locks: Optional[int] = None):
        self.locks = locks
        self.deposits = deposits
        self.security = security
        self.stale_seconds = Config.LOCK_STALE_SECONDS if stale_seconds is None else stale_seconds
        self.deposit_grace_seconds = (
            Config.DEPOSIT_GRACE_SECONDS if deposit_grace_seconds is None else deposit_grace_seconds
        )
        self.max_refund_locks = Config.MAX_REFUND_LOCKS if max_refund_locks is None else max_refund_locks

    async def run(self) -> Dict[str, Any]:
        """
        One sweep. Returns counts of everything removed.
        """
        results = {
            "stale_locks_cleared": 0,
            "refund_locks_trimmed": 0,
            "deposits_pruned": 0,
            "rate_limits_pruned": 0,
        }

        results["stale_locks_cleared"] = len(self.locks.sweep_stale(self.stale_seconds))
        results["refund_locks_trimmed"] = len(
            self.locks.trim(f"{LockKind.REFUND.value}:", self.max_refund_locks)
        )

        pruned = self.deposits.prune(self.deposit_grace_seconds)
        results["deposits_pruned"] = len(pruned)
        if pruned:
            await self.deposits.persist()

        if self.security:
            results["rate_limits_pruned"] = await self.security.prune_rate_limits()

        if any(results.values()):
            logger.info(f"🧹 CLEANUP_SWEEP: {results}")
        return results
