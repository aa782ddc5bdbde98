"""
Notification Service
Telegram messages for order, refund, deposit and product events, plus owner alerts.

A failed notification is logged and dropped: it must never undo or block a money movement
that already happened.
"""

import html
import logging
from typing import Optional

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from config import Config
from models import DepositIntent, DepositStatus, Order, Product, ProductOrder

logger = logging.getLogger(__name__)


def format_idr(amount: int) -> str:
    return f"Rp {amount:,}"


class TelegramNotifier:
    """Sends lifecycle messages through the bot"""

    def __init__(self, bot: Bot, owner_id: Optional[int] = None):
        self.bot = bot
        self.owner_id = owner_id if owner_id is not None else Config.OWNER_ID

    async def _send(self, chat_id: int, text: str) -> bool:
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, parse_mode=ParseMode.HTML)
            return True
        except TelegramError as e:
            logger.error(f"❌ NOTIFY_FAILED: chat={chat_id}: {e}")
            return False

    @staticmethod
    def _chat_for(user_id: int, delivery_ref: dict) -> int:
        return int(delivery_ref.get("chat_id") or user_id)

    async def order_completed(self, order: Order, sms_code: str) -> bool:
        text = (
            "✅ <b>SMS received</b>\n\n"
            f"Service: {html.escape(order.service_name or order.service_id)}\n"
            f"Number: <code>{html.escape(order.number)}</code>\n"
            f"Code: <code>{html.escape(sms_code)}</code>\n"
            f"Price: {format_idr(order.price)}"
        )
        return await self._send(self._chat_for(order.user_id, order.delivery_ref), text)

    async def order_refunded(self, order: Order, amount: int, new_balance: int, reason: str) -> bool:
        text = (
            "↩️ <b>Order refunded</b>\n\n"
            f"Number: <code>{html.escape(order.number)}</code>\n"
            f"Reason: {html.escape(reason)}\n"
            f"Refunded: {format_idr(amount)}\n"
            f"Balance: {format_idr(new_balance)}"
        )
        return await self._send(self._chat_for(order.user_id, order.delivery_ref), text)

    async def deposit_credited(self, intent: DepositIntent, new_balance: int) -> bool:
        text = (
            "✅ <b>Deposit received</b>\n\n"
            f"Transaction: <code>{html.escape(intent.trx_id)}</code>\n"
            f"Credited: {format_idr(intent.amount_to_credit)}\n"
            f"Balance: {format_idr(new_balance)}"
        )
        return await self._send(self._chat_for(intent.user_id, intent.delivery_ref), text)

    async def deposit_closed(self, intent: DepositIntent) -> bool:
        label = {
            DepositStatus.EXPIRED: "⌛ <b>Payment expired</b>",
            DepositStatus.CANCELLED: "🚫 <b>Payment cancelled</b>",
        }.get(intent.status, "ℹ️ <b>Payment closed</b>")
        text = f"{label}\n\nTransaction: <code>{html.escape(intent.trx_id)}</code>\nNo funds were moved."
        return await self._send(self._chat_for(intent.user_id, intent.delivery_ref), text)

    async def product_delivered(self, user_id: int, product: Product, product_order: ProductOrder,
                                delivery_ref: Optional[dict] = None) -> bool:
        text = (
            "📦 <b>Purchase successful</b>\n\n"
            f"Product: {html.escape(product.name)}\n"
            f"Order: <code>{html.escape(product_order.product_order_id)}</code>\n"
            f"Paid: {format_idr(product_order.price)}\n\n"
            f"{html.escape(product.content)}"
        )
        return await self._send(self._chat_for(user_id, delivery_ref or {}), text)

    async def owner_alert(self, text: str) -> bool:
        if not self.owner_id:
            logger.warning(f"⚠️ OWNER_ALERT_DROPPED (no OWNER_ID): {text}")
            return False
        return await self._send(self.owner_id, f"🚨 {html.escape(text)}")
