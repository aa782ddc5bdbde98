"""
Deposit Ledger
In-memory list of payment intents, mirrored to the pending_deposits collection.

Status changes happen synchronously in memory (no await between check and set), which
makes ``transition`` the single gate for every side effect of an intent.
"""

import logging
import time
from typing import List, Optional

from models import Collection, DepositIntent, DepositStatus
from services.atomic_store import AtomicStore
from utils.exceptions import DuplicateDepositError, StorageCorruptError

logger = logging.getLogger(__name__)


class DepositLedger:

    def __init__(self, store: AtomicStore):
        self.store = store
        self._intents: List[DepositIntent] = []

    def __len__(self) -> int:
        return len(self._intents)

    def all(self) -> List[DepositIntent]:
        return list(self._intents)

    def pending(self) -> List[DepositIntent]:
        return [i for i in self._intents if i.status == DepositStatus.PENDING]

    def find(self, trx_id: str) -> Optional[DepositIntent]:
        return next((i for i in self._intents if i.trx_id == str(trx_id)), None)

    def pending_for_user(self, user_id: int) -> Optional[DepositIntent]:
        return next((i for i in self.pending() if i.user_id == user_id), None)

    def add(self, intent: DepositIntent) -> DepositIntent:
        """Register a new pending intent; one pending intent per user"""
        existing = self.pending_for_user(intent.user_id)
        if existing:
            raise DuplicateDepositError(f"Deposit {existing.trx_id} is still pending")
        self._intents.append(intent)
        logger.info(
            f"🧾 DEPOSIT_REGISTERED: trx={intent.trx_id} user={intent.user_id} "
            f"amount={intent.amount_requested} product={intent.linked_product_id}"
        )
        return intent

    def transition(self, trx_id: str, new_status: DepositStatus,
                   expected: DepositStatus = DepositStatus.PENDING) -> Optional[DepositIntent]:
        """Flip an intent from ``expected`` to ``new_status``; None if it was not in ``expected``"""
        intent = self.find(trx_id)
        if intent is None or intent.status != expected:
            return None
        intent.status = new_status
        intent.resolved_at = time.time()
        logger.info(f"🔁 DEPOSIT_TRANSITION: trx={trx_id} {expected.value} -> {new_status.value}")
        return intent

    def prune(self, grace_seconds: float, now: Optional[float] = None) -> List[str]:
        """Drop terminal intents resolved more than ``grace_seconds`` ago"""
        now = time.time() if now is None else now
        keep, dropped = [], []
        for intent in self._intents:
            resolved = intent.resolved_at or intent.expires_at
            if intent.status != DepositStatus.PENDING and now - resolved > grace_seconds:
                dropped.append(intent.trx_id)
            else:
                keep.append(intent)
        self._intents = keep
        return dropped

    async def persist(self) -> bool:
        """Mirror the list to disk; a failed write is logged, memory stays authoritative"""
        try:
            await self.store.replace(Collection.PENDING_DEPOSITS, [i.to_dict() for i in self._intents])
            return True
        except OSError as e:
            logger.error(f"❌ DEPOSIT_PERSIST_FAILED: {e}")
            return False

    async def load(self) -> int:
        """Restore intents from disk (startup); returns how many were loaded"""
        try:
            raw = await self.store.read(Collection.PENDING_DEPOSITS, [])
        except StorageCorruptError:
            logger.critical("🚨 DEPOSIT_LOAD_FAILED: pending_deposits is corrupt")
            raise
        self._intents = [DepositIntent.from_dict(item) for item in raw]
        logger.info(f"📥 DEPOSITS_LOADED: {len(self._intents)} intents ({len(self.pending())} pending)")
        return len(self._intents)
