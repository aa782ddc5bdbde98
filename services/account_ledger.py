"""
Account Ledger Service
Balance credit/debit on the accounts collection.

Each mutation is a single read-mutate-write pass under the accounts collection lock.
Mutations may carry an idempotency key; the key is recorded on the account inside the
same atomic write, so a keyed credit or debit applies at most once even across restarts.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Any, Optional, List

from config import Config
from models import Account, Collection
from services.atomic_store import AtomicStore
from utils.exceptions import InsufficientBalanceError, InvalidAmountError

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    """Outcome of one balance mutation"""
    account: Account
    applied: bool  # False when the idempotency key had already been applied

    @property
    def balance(self) -> int:
        return self.account.balance


class AccountLedger:
    """Balance operations with an insufficient-funds guard"""

    def __init__(self, store: AtomicStore, key_limit: Optional[int] = None):
        self.store = store
        self.key_limit = key_limit if key_limit is not None else Config.LEDGER_KEY_LIMIT

    async def get_account(self, user_id: int) -> Optional[Account]:
        accounts = await self.store.read(Collection.ACCOUNTS, {})
        data = accounts.get(str(user_id))
        return Account.from_dict(data) if data else None

    async def get_balance(self, user_id: int) -> int:
        account = await self.get_account(user_id)
        return account.balance if account else 0

    async def ensure_account(self, user_id: int) -> Account:
        """Create a zero-balance account if the user has none"""
        def _ensure(accounts: Dict[str, Any]) -> Account:
            data = accounts.get(str(user_id))
            if data:
                return Account.from_dict(data)
            account = Account(user_id=user_id, balance=0, last_updated_at=time.time())
            accounts[str(user_id)] = account.to_dict()
            logger.info(f"👤 ACCOUNT_CREATED: user={user_id}")
            return account

        return await self.store.update(Collection.ACCOUNTS, _ensure, {})

    async def has_applied(self, user_id: int, key: str) -> bool:
        account = await self.get_account(user_id)
        return bool(account and key in account.ledger_keys)

    async def list_accounts(self) -> List[Account]:
        accounts = await self.store.read(Collection.ACCOUNTS, {})
        return [Account.from_dict(data) for data in accounts.values()]

    def _remember_key(self, account: Account, key: Optional[str]) -> None:
        if not key:
            return
        account.ledger_keys.append(key)
        if len(account.ledger_keys) > self.key_limit:
            del account.ledger_keys[:-self.key_limit]

    async def credit(self, user_id: int, amount: int, key: Optional[str] = None) -> LedgerResult:
        """
        Add ``amount`` to the user's balance, creating the account if needed.

        Args:
            user_id: Telegram user id
            amount: Positive whole amount
            key: Optional idempotency key; a key already applied makes this a no-op

        Returns:
            LedgerResult with the resulting account
        """
        if amount <= 0:
            raise InvalidAmountError(f"Credit amount must be positive, got {amount}")

        def _credit(accounts: Dict[str, Any]) -> LedgerResult:
            data = accounts.get(str(user_id))
            account = Account.from_dict(data) if data else Account(user_id=user_id)
            if key and key in account.ledger_keys:
                return LedgerResult(account=account, applied=False)
            account.balance += amount
            account.last_updated_at = time.time()
            self._remember_key(account, key)
            accounts[str(user_id)] = account.to_dict()
            return LedgerResult(account=account, applied=True)

        result = await self.store.update(Collection.ACCOUNTS, _credit, {})
        if result.applied:
            logger.info(f"💰 BALANCE_CREDIT: user={user_id} +{amount} -> {result.balance} key={key}")
        else:
            logger.warning(f"⚠️ BALANCE_CREDIT_DUPLICATE: user={user_id} key={key} already applied")
        return result

    async def debit(self, user_id: int, amount: int, key: Optional[str] = None) -> LedgerResult:
        """
        Subtract ``amount`` from the user's balance.

        Raises:
            InsufficientBalanceError: the balance would go negative (nothing is written)
        """
        if amount <= 0:
            raise InvalidAmountError(f"Debit amount must be positive, got {amount}")

        def _debit(accounts: Dict[str, Any]) -> LedgerResult:
            data = accounts.get(str(user_id))
            account = Account.from_dict(data) if data else Account(user_id=user_id)
            if key and key in account.ledger_keys:
                return LedgerResult(account=account, applied=False)
            if account.balance < amount:
                raise InsufficientBalanceError(user_id, account.balance, amount)
            account.balance -= amount
            account.last_updated_at = time.time()
            self._remember_key(account, key)
            accounts[str(user_id)] = account.to_dict()
            return LedgerResult(account=account, applied=True)

        result = await self.store.update(Collection.ACCOUNTS, _debit, {})
        if result.applied:
            logger.info(f"💸 BALANCE_DEBIT: user={user_id} -{amount} -> {result.balance} key={key}")
        return result

    async def record_key(self, user_id: int, key: str) -> bool:
        """Remember ``key`` on the account without moving money; False if already present"""
        def _record(accounts: Dict[str, Any]) -> bool:
            data = accounts.get(str(user_id))
            account = Account.from_dict(data) if data else Account(user_id=user_id, last_updated_at=time.time())
            if key in account.ledger_keys:
                return False
            self._remember_key(account, key)
            accounts[str(user_id)] = account.to_dict()
            return True

        return await self.store.update(Collection.ACCOUNTS, _record, {})
