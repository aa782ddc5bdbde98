"""
Test Account Ledger
Credits, debits, the insufficient-funds guard and idempotency keys
"""

import asyncio

import pytest

from services.account_ledger import AccountLedger
from utils.exceptions import InsufficientBalanceError, InvalidAmountError


@pytest.fixture
def accounts(store):
    return AccountLedger(store, key_limit=5)


class TestBalanceMovements:

    @pytest.mark.asyncio
    async def test_credit_creates_account(self, accounts):
        result = await accounts.credit(111, 10000)
        assert result.applied
        assert result.balance == 10000
        assert await accounts.get_balance(111) == 10000

    @pytest.mark.asyncio
    async def test_debit_reduces_balance_and_refreshes_timestamp(self, accounts):
        await accounts.credit(111, 10000)
        before = (await accounts.get_account(111)).last_updated_at

        result = await accounts.debit(111, 4000)
        assert result.balance == 6000
        assert result.account.last_updated_at >= before

    @pytest.mark.asyncio
    async def test_debit_beyond_balance_is_rejected_without_write(self, accounts):
        await accounts.credit(111, 3000)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await accounts.debit(111, 5000)

        assert exc_info.value.balance == 3000
        assert exc_info.value.required == 5000
        assert not exc_info.value.funds_moved
        assert await accounts.get_balance(111) == 3000, "Balance must not be clamped or changed"

    @pytest.mark.asyncio
    async def test_unknown_user_has_zero_balance(self, accounts):
        assert await accounts.get_balance(999) == 0
        with pytest.raises(InsufficientBalanceError):
            await accounts.debit(999, 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -500])
    async def test_non_positive_amounts_rejected(self, accounts, amount):
        with pytest.raises(InvalidAmountError):
            await accounts.credit(111, amount)
        with pytest.raises(InvalidAmountError):
            await accounts.debit(111, amount)

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self, accounts):
        await accounts.credit(111, 10000)

        results = await asyncio.gather(
            *(accounts.debit(111, 3000) for _ in range(5)), return_exceptions=True
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InsufficientBalanceError)]
        assert len(succeeded) == 3
        assert len(rejected) == 2
        assert await accounts.get_balance(111) == 1000


class TestIdempotencyKeys:

    @pytest.mark.asyncio
    async def test_keyed_credit_applies_once(self, accounts):
        first = await accounts.credit(111, 5000, key="deposit:TRX1")
        second = await accounts.credit(111, 5000, key="deposit:TRX1")

        assert first.applied
        assert not second.applied
        assert await accounts.get_balance(111) == 5000
        assert await accounts.has_applied(111, "deposit:TRX1")

    @pytest.mark.asyncio
    async def test_concurrent_keyed_credits_apply_once(self, accounts):
        results = await asyncio.gather(
            *(accounts.credit(111, 5000, key="refund:111:42") for _ in range(10))
        )
        assert sum(1 for r in results if r.applied) == 1
        assert await accounts.get_balance(111) == 5000

    @pytest.mark.asyncio
    async def test_keyed_debit_applies_once(self, accounts):
        await accounts.credit(111, 10000)
        await accounts.debit(111, 5000, key="purchase:42")
        repeat = await accounts.debit(111, 5000, key="purchase:42")

        assert not repeat.applied
        assert await accounts.get_balance(111) == 5000

    @pytest.mark.asyncio
    async def test_key_list_is_capped_oldest_first(self, accounts):
        for i in range(7):
            await accounts.credit(111, 100, key=f"deposit:{i}")

        account = await accounts.get_account(111)
        assert account.ledger_keys == [f"deposit:{i}" for i in range(2, 7)]

    @pytest.mark.asyncio
    async def test_record_key_moves_no_money(self, accounts):
        await accounts.credit(111, 1000)
        assert await accounts.record_key(111, "settled:42")
        assert not await accounts.record_key(111, "settled:42")
        assert await accounts.get_balance(111) == 1000
