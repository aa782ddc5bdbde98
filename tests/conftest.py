"""
Shared test fixtures for the number broker.

Provides:
- a tmp-path AtomicStore per test
- FakeProvider / FakeGateway doubles that record calls and return scripted envelopes
- an AsyncMock notifier
- ``broker``: every component wired with small tunables and an unstarted scheduler
"""

import os
import sys
from types import SimpleNamespace
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from apscheduler.schedulers.asyncio import AsyncIOScheduler

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import GatewayStatus, ServiceSelection, SmsStatus
from services.account_ledger import AccountLedger
from services.advisory_locks import AdvisoryLockSet
from services.atomic_store import AtomicStore
from services.deposit_ledger import DepositLedger
from services.deposit_poll_supervisor import DepositPollSupervisor
from services.deposit_service import DepositService
from services.order_ledger import OrderLedger
from services.order_state_machine import OrderStateMachine
from services.payment_gateway import GatewayResult, PaymentIntent
from services.product_service import ProductService
from services.providers import (
    BaseProvider,
    NumberAllocation,
    ProviderManager,
    ProviderResult,
    ServiceOffer,
    SmsCheck,
)
from services.refund_coordinator import RefundCoordinator
from services.security_service import SecurityService
from services.sms_poll_supervisor import SMSPollSupervisor

USER_ID = 111
OFFER_PRICE = 4500
MARKUP = 500
SELL_PRICE = OFFER_PRICE + MARKUP


class FakeProvider(BaseProvider):
    """Scripted provider: queue SmsCheck/ProviderResult values and cancel outcomes"""

    def __init__(self, key: str = "fake", offers: Optional[List[ServiceOffer]] = None):
        super().__init__(key, {"name": "FakeSMS", "priority": 1})
        self.offers = offers if offers is not None else [
            ServiceOffer(id="wa", name="WhatsApp", price=OFFER_PRICE, stock=10, country="indonesia"),
        ]
        self.next_id = 5000
        self.sms_queue: list = []
        self.cancel_results: List[bool] = []
        self.allocation_fails = False
        self.calls: list = []

    def called(self, name: str) -> list:
        return [call for call in self.calls if call[0] == name]

    async def get_countries(self) -> ProviderResult:
        return ProviderResult.ok([{"id": "indonesia", "name": "Indonesia"}], provider=self.name)

    async def get_services(self, country: str) -> ProviderResult:
        self.calls.append(("get_services", country))
        return ProviderResult.ok(list(self.offers), provider=self.name)

    async def order_number(self, service_id: str, country: str) -> ProviderResult:
        self.calls.append(("order_number", service_id, country))
        if self.allocation_fails:
            return ProviderResult.fail("NO_NUMBERS", provider=self.name)
        self.next_id += 1
        return ProviderResult.ok(
            NumberAllocation(id=str(self.next_id), number=f"+62812{self.next_id}"), provider=self.name
        )

    async def get_status(self, order_id: str) -> ProviderResult:
        self.calls.append(("get_status", order_id))
        if self.sms_queue:
            item = self.sms_queue.pop(0)
            return item if isinstance(item, ProviderResult) else ProviderResult.ok(item, provider=self.name)
        return ProviderResult.ok(SmsCheck(SmsStatus.WAITING), provider=self.name)

    async def cancel_order(self, order_id: str) -> ProviderResult:
        self.calls.append(("cancel_order", order_id))
        accepted = self.cancel_results.pop(0) if self.cancel_results else True
        if accepted:
            return ProviderResult.ok(provider=self.name)
        return ProviderResult.fail("EARLY_CANCEL_DENIED", provider=self.name)

    async def set_status(self, order_id: str, status: str) -> ProviderResult:
        self.calls.append(("set_status", order_id, status))
        return ProviderResult.ok(provider=self.name)


class FakeGateway:
    """In-memory payment gateway; tests set ``statuses[trx_id]`` to drive the poll"""

    def __init__(self, fee: int = 0):
        self.fee = fee
        self.statuses = {}
        self.cancelled: List[str] = []
        self.create_fails = False
        self.expires_at = None
        self._seq = 0

    async def create_intent(self, amount: int) -> GatewayResult:
        if self.create_fails:
            return GatewayResult(success=False, error="gateway down")
        self._seq += 1
        trx_id = f"TRX{self._seq:04d}"
        self.statuses[trx_id] = GatewayStatus.PENDING
        return GatewayResult(success=True, data=PaymentIntent(
            id=trx_id,
            payload="00020101021226QRISPAYLOAD",
            fee=self.fee,
            nominal=amount,
            credit_amount=amount - self.fee,
            expires_at=self.expires_at,
        ))

    async def check_status(self, trx_id: str) -> GatewayResult:
        status = self.statuses.get(trx_id)
        if status is None:
            return GatewayResult(success=False, error="unknown trx")
        return GatewayResult(success=True, data=status)

    async def cancel_intent(self, trx_id: str) -> GatewayResult:
        self.cancelled.append(trx_id)
        return GatewayResult(success=True, data={"success": True})


@pytest.fixture
def store(tmp_path):
    return AtomicStore(data_dir=str(tmp_path / "data"), backup_dir=str(tmp_path / "backups"), max_backups=3)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def selection():
    return ServiceSelection(provider_key="fake", service_id="wa", country="indonesia", shown_price=SELL_PRICE)


@pytest_asyncio.fixture
async def broker(store, provider, gateway, notifier):
    """All broker components wired together, tuned for fast deterministic tests"""
    accounts = AccountLedger(store)
    orders = OrderLedger(store, history_limit=5)
    locks = AdvisoryLockSet()
    providers = ProviderManager(providers_config={})
    providers.register(provider.key, provider)

    refunds = RefundCoordinator(accounts, orders, locks, retention_seconds=5)
    state_machine = OrderStateMachine(
        accounts, orders, providers, locks, refunds,
        markup=MARKUP,
        cancel_cooldown_seconds=0,
        cancel_max_retries=3,
        cancel_retry_delay_seconds=0,
        cancel_lock_retention_seconds=10,
        ready_delay_seconds=0,
    )
    scheduler = AsyncIOScheduler()
    sms_polls = SMSPollSupervisor(
        scheduler, orders, providers, state_machine, notifier, interval_seconds=15, max_attempts=3
    )

    deposits = DepositLedger(store)
    products = ProductService(store, accounts, locks, notifier)
    deposit_service = DepositService(deposits, gateway, products, min_amount=1000, expiry_seconds=600)
    deposit_polls = DepositPollSupervisor(deposits, gateway, accounts, products, notifier, interval_seconds=10)
    security = SecurityService(store, window_seconds=10, max_requests=3)

    yield SimpleNamespace(
        store=store,
        accounts=accounts,
        orders=orders,
        locks=locks,
        providers=providers,
        provider=provider,
        gateway=gateway,
        refunds=refunds,
        state_machine=state_machine,
        scheduler=scheduler,
        sms_polls=sms_polls,
        deposits=deposits,
        products=products,
        deposit_service=deposit_service,
        deposit_polls=deposit_polls,
        security=security,
        notifier=notifier,
    )

    sms_polls.disarm_all()
    locks.clear()
