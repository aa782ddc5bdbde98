"""
Deposit Service
Creates and cancels payment intents: balance top-ups and gateway-paid product purchases.
"""

import logging
import time
from typing import Any, Dict, Optional

from config import Config
from models import DepositIntent, DepositStatus
from services.deposit_ledger import DepositLedger
from services.payment_gateway import CiaaTopUpGateway, parse_gateway_time
from services.product_service import ProductService
from utils.exceptions import (
    DepositNotFoundError,
    DuplicateDepositError,
    InvalidAmountError,
    OutOfStockError,
    PurchaseFailedError,
)

logger = logging.getLogger(__name__)


class DepositService:

    def __init__(self, ledger: DepositLedger, gateway: CiaaTopUpGateway, products: ProductService,
                 min_amount: Optional[int] = None, expiry_seconds: Optional[int] = None):
        self.ledger = ledger
        self.gateway = gateway
        self.products = products
        self.min_amount = Config.MIN_DEPOSIT_AMOUNT if min_amount is None else min_amount
        self.expiry_seconds = Config.DEPOSIT_EXPIRY_SECONDS if expiry_seconds is None else expiry_seconds

    async def _open_intent(self, user_id: int, amount: int, delivery_ref: Dict[str, Any],
                           linked_product_id: Optional[str] = None,
                           credit_override: Optional[int] = None) -> DepositIntent:
        existing = self.ledger.pending_for_user(user_id)
        if existing:
            raise DuplicateDepositError(f"Deposit {existing.trx_id} is still pending; pay or cancel it first")

        result = await self.gateway.create_intent(amount)
        if not result.success:
            raise PurchaseFailedError(f"Payment gateway unavailable: {result.error}")
        created = result.data

        now = time.time()
        expires_at = now + self.expiry_seconds
        gateway_deadline = parse_gateway_time(created.expires_at)
        if gateway_deadline is not None and now < gateway_deadline < expires_at:
            expires_at = gateway_deadline
        intent = DepositIntent(
            trx_id=created.id,
            user_id=user_id,
            amount_requested=amount,
            amount_to_credit=credit_override if credit_override is not None else created.credit_amount,
            created_at=now,
            expires_at=expires_at,
            fee=created.fee,
            payload=created.payload,
            delivery_ref=delivery_ref,
            linked_product_id=linked_product_id,
        )
        try:
            self.ledger.add(intent)
        except DuplicateDepositError:
            await self.gateway.cancel_intent(created.id)
            raise
        await self.ledger.persist()
        return intent

    async def request_deposit(self, user_id: int, amount: int,
                              delivery_ref: Optional[Dict[str, Any]] = None) -> DepositIntent:
        """Open a balance top-up intent"""
        if amount < self.min_amount:
            raise InvalidAmountError(f"Minimum deposit is {self.min_amount}")
        return await self._open_intent(user_id, amount, delivery_ref or {})

    async def request_product_payment(self, user_id: int, product_id: str,
                                      delivery_ref: Optional[Dict[str, Any]] = None) -> DepositIntent:
        """Open an intent that delivers ``product_id`` once paid"""
        product = await self.products.get_product(product_id)
        if product.stock <= 0:
            raise OutOfStockError(f"{product.name} is sold out")
        return await self._open_intent(
            user_id, product.price, delivery_ref or {},
            linked_product_id=product.product_id, credit_override=product.price,
        )

    async def cancel_deposit(self, user_id: int, trx_id: str) -> DepositIntent:
        """Pending -> Cancelled at the user's request; upstream cancel is best effort"""
        intent = self.ledger.find(trx_id)
        if intent is None or intent.user_id != user_id:
            raise DepositNotFoundError(f"No deposit {trx_id}")
        if self.ledger.transition(trx_id, DepositStatus.CANCELLED) is None:
            raise DepositNotFoundError(f"Deposit {trx_id} is already {intent.status.value}")

        result = await self.gateway.cancel_intent(trx_id)
        if not result.success:
            logger.warning(f"⚠️ DEPOSIT_UPSTREAM_CANCEL_FAILED: trx={trx_id}, cancelled locally")
        await self.ledger.persist()
        logger.info(f"🚫 DEPOSIT_CANCELLED: trx={trx_id} user={user_id}")
        return intent
