"""
Advisory Lock Set
In-memory mutual-exclusion tokens keyed by composite identifiers such as
``refund:<userId>:<orderId>``, ``processing:<userId>`` and ``deposit:<trxId>``.

These are independent of the atomic store's collection locks and are never persisted.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class LockKind(Enum):
    """Key prefixes for the operations that take advisory locks"""
    REFUND = "refund"
    PROCESSING = "processing"
    DEPOSIT = "deposit"


def refund_key(user_id: int, order_id: str) -> str:
    return f"{LockKind.REFUND.value}:{user_id}:{order_id}"


def processing_key(user_id: int) -> str:
    return f"{LockKind.PROCESSING.value}:{user_id}"


def deposit_key(trx_id: str) -> str:
    return f"{LockKind.DEPOSIT.value}:{trx_id}"


@dataclass
class AdvisoryLockToken:
    key: str
    acquired_at: float = field(default_factory=time.monotonic)
    owner: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def age(self) -> float:
        return time.monotonic() - self.acquired_at


class AdvisoryLockSet:
    """
    Process-wide advisory locks.

    ``try_acquire`` never waits. ``acquire`` waits on a per-key event until the holder
    releases; wake-up order among several waiters is not guaranteed.
    """

    def __init__(self):
        self._tokens: Dict[str, AdvisoryLockToken] = {}
        self._released: Dict[str, asyncio.Event] = {}
        self._scheduled_releases: Dict[str, asyncio.TimerHandle] = {}

        self.metrics = {
            'locks_acquired': 0,
            'locks_released': 0,
            'lock_contentions': 0,
            'stale_locks_cleared': 0,
        }

    def __len__(self) -> int:
        return len(self._tokens)

    def is_held(self, key: str) -> bool:
        return key in self._tokens

    def keys(self, prefix: str = "") -> List[str]:
        return [key for key in self._tokens if key.startswith(prefix)]

    def try_acquire(self, key: str) -> Optional[AdvisoryLockToken]:
        """Take the lock for ``key`` if it is free; returns None if it is held"""
        if key in self._tokens:
            self.metrics['lock_contentions'] += 1
            logger.debug(f"⏳ LOCK_CONTENTION: {key} already held")
            return None

        token = AdvisoryLockToken(key=key)
        self._tokens[key] = token
        self._released[key] = asyncio.Event()
        self.metrics['locks_acquired'] += 1
        logger.debug(f"🔒 LOCK_ACQUIRED: {key} owner={token.owner[:8]}")
        return token

    async def acquire(self, key: str, timeout: Optional[float] = None) -> Optional[AdvisoryLockToken]:
        """Wait until ``key`` is free and take it; returns None on timeout"""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            token = self.try_acquire(key)
            if token:
                return token
            event = self._released.get(key)
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return None
            if event is None:
                await asyncio.sleep(0)
                continue
            try:
                await asyncio.wait_for(event.wait(), remaining)
            except asyncio.TimeoutError:
                return None

    def release(self, token: AdvisoryLockToken) -> bool:
        """Release the lock if ``token`` still owns it"""
        current = self._tokens.get(token.key)
        if current is None or current.owner != token.owner:
            logger.debug(f"⚠️ LOCK_NOT_OWNED: {token.key} owner={token.owner[:8]}")
            return False

        del self._tokens[token.key]
        handle = self._scheduled_releases.pop(token.key, None)
        if handle:
            handle.cancel()
        event = self._released.pop(token.key, None)
        if event:
            event.set()
        self.metrics['locks_released'] += 1
        logger.debug(f"🔓 LOCK_RELEASED: {token.key} held={token.age:.2f}s")
        return True

    def release_later(self, token: AdvisoryLockToken, delay: float) -> None:
        """Keep the lock for ``delay`` more seconds, then release it"""
        if delay <= 0:
            self.release(token)
            return
        loop = asyncio.get_running_loop()
        previous = self._scheduled_releases.pop(token.key, None)
        if previous:
            previous.cancel()
        self._scheduled_releases[token.key] = loop.call_later(delay, self.release, token)

    @asynccontextmanager
    async def hold(self, key: str):
        """Try-acquire context; yields the token, or None if the key is busy"""
        token = self.try_acquire(key)
        try:
            yield token
        finally:
            if token:
                self.release(token)

    def sweep_stale(self, threshold_seconds: float) -> List[str]:
        """Force-release tokens older than the threshold (leaked by a crashed handler)"""
        stale = [token for token in self._tokens.values() if token.age > threshold_seconds]
        for token in stale:
            logger.warning(f"⚠️ LOCK_STALE: {token.key} held for {token.age:.0f}s, force-releasing")
            self.release(token)
        self.metrics['stale_locks_cleared'] += len(stale)
        return [token.key for token in stale]

    def trim(self, prefix: str, max_count: int) -> List[str]:
        """Release the oldest tokens under ``prefix`` beyond ``max_count``"""
        tokens = sorted(
            (t for t in self._tokens.values() if t.key.startswith(prefix)),
            key=lambda t: t.acquired_at,
        )
        excess = tokens[:-max_count] if max_count > 0 else tokens
        for token in excess:
            self.release(token)
        if excess:
            logger.info(f"🧹 LOCKS_TRIMMED: {len(excess)} '{prefix}' locks over limit {max_count}")
        return [token.key for token in excess]

    def clear(self) -> int:
        """Drop every token and pending delayed release (shutdown)"""
        count = len(self._tokens)
        for handle in self._scheduled_releases.values():
            handle.cancel()
        self._scheduled_releases.clear()
        for event in self._released.values():
            event.set()
        self._released.clear()
        self._tokens.clear()
        logger.info(f"🔓 LOCKS_CLEARED: {count} advisory locks dropped")
        return count
