"""
Service Container
Builds every broker component once, in dependency order, and hands the set to
handlers and the startup manager. Nothing here is a module-level global.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from jobs.cleanup_sweeper import CleanupSweeper
from jobs.scheduler import BrokerScheduler
from services.account_ledger import AccountLedger
from services.advisory_locks import AdvisoryLockSet
from services.atomic_store import AtomicStore
from services.deposit_ledger import DepositLedger
from services.deposit_poll_supervisor import DepositPollSupervisor
from services.deposit_service import DepositService
from services.job_queue import Job, JobQueue
from services.order_ledger import OrderLedger
from services.order_state_machine import OrderStateMachine
from services.payment_gateway import CiaaTopUpGateway
from services.product_service import ProductService
from services.providers import ProviderManager
from services.reconciliation import StartupReconciler
from services.refund_coordinator import RefundCoordinator
from services.security_service import SecurityService
from services.sms_poll_supervisor import SMSPollSupervisor

logger = logging.getLogger(__name__)


@dataclass
class BrokerServices:
    store: AtomicStore
    accounts: AccountLedger
    orders: OrderLedger
    locks: AdvisoryLockSet
    providers: ProviderManager
    gateway: CiaaTopUpGateway
    refunds: RefundCoordinator
    state_machine: OrderStateMachine
    scheduler: BrokerScheduler
    sms_polls: SMSPollSupervisor
    deposits: DepositLedger
    deposit_service: DepositService
    deposit_polls: DepositPollSupervisor
    products: ProductService
    security: SecurityService
    job_queue: JobQueue
    sweeper: CleanupSweeper
    reconciler: StartupReconciler
    notifier: object = None


def build_services(notifier=None,
                   store: Optional[AtomicStore] = None,
                   providers: Optional[ProviderManager] = None,
                   gateway: Optional[CiaaTopUpGateway] = None,
                   scheduler: Optional[AsyncIOScheduler] = None) -> BrokerServices:
    """
    Wire the broker. Every argument defaults to the production component built from Config.

    Must run inside the event loop that will drive the scheduler and job queue.
    """
    store = store or AtomicStore()
    accounts = AccountLedger(store)
    orders = OrderLedger(store)
    locks = AdvisoryLockSet()
    providers = providers or ProviderManager()
    gateway = gateway or CiaaTopUpGateway()

    refunds = RefundCoordinator(accounts, orders, locks)
    state_machine = OrderStateMachine(accounts, orders, providers, locks, refunds)
    broker_scheduler = BrokerScheduler(scheduler)
    sms_polls = SMSPollSupervisor(broker_scheduler.scheduler, orders, providers, state_machine, notifier)

    deposits = DepositLedger(store)
    products = ProductService(store, accounts, locks, notifier)
    deposit_service = DepositService(deposits, gateway, products)
    deposit_polls = DepositPollSupervisor(deposits, gateway, accounts, products, notifier)

    security = SecurityService(store)

    async def alert_owner(job: Job, error: BaseException) -> None:
        if notifier:
            await notifier.owner_alert(f"Job {job.name} failed: {error.__class__.__name__}: {error}")

    job_queue = JobQueue(on_failure=alert_owner)
    sweeper = CleanupSweeper(locks, deposits, security)
    broker_scheduler.setup_jobs(deposit_polls, sweeper)

    reconciler = StartupReconciler(accounts, orders, deposits, sms_polls, notifier)

    logger.info(f"⚙️ Broker services built: providers={[p.key for p in providers.get_enabled_providers()]}")
    return BrokerServices(
        store=store,
        accounts=accounts,
        orders=orders,
        locks=locks,
        providers=providers,
        gateway=gateway,
        refunds=refunds,
        state_machine=state_machine,
        scheduler=broker_scheduler,
        sms_polls=sms_polls,
        deposits=deposits,
        deposit_service=deposit_service,
        deposit_polls=deposit_polls,
        products=products,
        security=security,
        job_queue=job_queue,
        sweeper=sweeper,
        reconciler=reconciler,
        notifier=notifier,
    )
