"""
Test Security Service
Ban list and sliding-window rate limits
"""

import time

import pytest


class TestBanList:

    @pytest.mark.asyncio
    async def test_ban_and_unban(self, broker):
        assert await broker.security.ban(111, "chargeback")
        assert await broker.security.is_banned(111)
        assert not await broker.security.ban(111)

        assert await broker.security.unban(111)
        assert not await broker.security.is_banned(111)
        assert not await broker.security.unban(111)

    @pytest.mark.asyncio
    async def test_banned_user_denied(self, broker):
        await broker.security.ban(111)
        decision = await broker.security.validate_access(111, "buy")
        assert not decision.allowed
        assert "denied" in decision.message


class TestRateLimit:

    @pytest.mark.asyncio
    async def test_requests_over_limit_refused(self, broker):
        """max_requests=3 in the fixture"""
        allowed = [await broker.security.check_rate_limit(111, "buy") for _ in range(4)]
        assert allowed == [True, True, True, False]

    @pytest.mark.asyncio
    async def test_limits_are_per_action(self, broker):
        for _ in range(3):
            await broker.security.check_rate_limit(111, "buy")
        assert await broker.security.check_rate_limit(111, "balance")
        decision = await broker.security.validate_access(111, "buy")
        assert not decision.allowed

    @pytest.mark.asyncio
    async def test_prune_drops_idle_windows(self, broker):
        await broker.security.check_rate_limit(111, "buy")
        await broker.store.update(
            "rate_limits", lambda limits: limits.__setitem__("222_buy", [time.time() - 60]), {}
        )

        assert await broker.security.prune_rate_limits() == 1
        limits = await broker.store.read("rate_limits", {})
        assert list(limits) == ["111_buy"]
