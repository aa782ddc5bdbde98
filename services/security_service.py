"""Ban list and per-action rate limiting for inbound chat events"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from config import Config
from models import Collection
from services.atomic_store import AtomicStore

logger = logging.getLogger(__name__)


@dataclass
class AccessDecision:
    allowed: bool
    message: str = ""


class SecurityService:
    """Checks run before any chat event is dispatched"""

    def __init__(self, store: AtomicStore, window_seconds: Optional[int] = None,
                 max_requests: Optional[int] = None):
        self.store = store
        self.window_seconds = Config.RATE_LIMIT_WINDOW_SECONDS if window_seconds is None else window_seconds
        self.max_requests = Config.RATE_LIMIT_MAX_REQUESTS if max_requests is None else max_requests

    async def is_banned(self, user_id: int) -> bool:
        banned = await self.store.read(Collection.BANNED_USERS, [])
        return str(user_id) in banned

    async def ban(self, user_id: int, reason: str = "") -> bool:
        def _ban(banned: List[str]) -> bool:
            if str(user_id) in banned:
                return False
            banned.append(str(user_id))
            return True

        added = await self.store.update(Collection.BANNED_USERS, _ban, [])
        logger.warning(f"🚫 USER_BANNED: {user_id} reason='{reason}' new={added}")
        return added

    async def unban(self, user_id: int) -> bool:
        def _unban(banned: List[str]) -> bool:
            if str(user_id) not in banned:
                return False
            banned.remove(str(user_id))
            return True

        removed = await self.store.update(Collection.BANNED_USERS, _unban, [])
        logger.info(f"✅ USER_UNBANNED: {user_id} removed={removed}")
        return removed

    async def check_rate_limit(self, user_id: int, action: str) -> bool:
        """Record one request for ``<user>_<action>``; False once the window is full"""
        key = f"{user_id}_{action}"
        now = time.time()

        def _hit(limits: Dict[str, Any]) -> bool:
            window = [t for t in limits.get(key, []) if now - t < self.window_seconds]
            if len(window) >= self.max_requests:
                limits[key] = window
                return False
            window.append(now)
            limits[key] = window
            return True

        allowed = await self.store.update(Collection.RATE_LIMITS, _hit, {})
        if not allowed:
            logger.warning(f"⚠️ RATE_LIMIT_EXCEEDED: {key}")
        return allowed

    async def validate_access(self, user_id: int, action: str) -> AccessDecision:
        if await self.is_banned(user_id):
            logger.warning(f"🚫 BANNED_ACCESS_ATTEMPT: user={user_id} action={action}")
            return AccessDecision(False, "🚫 Access denied. Contact the admin if this is a mistake.")
        if not await self.check_rate_limit(user_id, action):
            return AccessDecision(False, "⚠️ Too many requests. Wait a moment and try again.")
        return AccessDecision(True)

    async def prune_rate_limits(self) -> int:
        """Drop windows with no request inside the current window"""
        now = time.time()

        def _prune(limits: Dict[str, Any]) -> int:
            stale = [key for key, hits in limits.items() if not any(now - t < self.window_seconds for t in hits)]
            for key in stale:
                del limits[key]
            return len(stale)

        return await self.store.update(Collection.RATE_LIMITS, _prune, {})
