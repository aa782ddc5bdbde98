"""
Broker Chat Handlers
Commands and inline callbacks for numbers, deposits, products and owner tools.

Each handler runs the ban/rate-limit check inline, then submits the actual work to the
JobQueue and returns. Domain rejections (BrokerError) are answered in chat with a note on
whether money moved; anything else propagates to the queue's failure observer.
"""

import functools
import html
import logging
from typing import Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ParseMode
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes

from config import Config
from models import ServiceSelection
from services.container import BrokerServices
from services.notification_service import format_idr
from services.qr_generator import QRCodeService
from utils.exceptions import (
    BrokerError,
    CancelTooEarlyError,
    InsufficientBalanceError,
    PriceChangedError,
    StorageCorruptError,
)

logger = logging.getLogger(__name__)

SERVICES_PER_PAGE = 25

STORAGE_UNAVAILABLE = "⚠️ Something went wrong on our side. The owner has been alerted and will check your balance."

USAGE = {
    "services": "Usage: /services <provider> <country>",
    "buy": "Usage: /buy <provider> <country> <service> <price>",
    "deposit": "Usage: /deposit <amount>",
    "buyproduct": "Usage: /buyproduct <product_id> [balance|qris]",
    "addbalance": "Usage: /addbalance <user_id> <amount>",
    "ban": "Usage: /ban <user_id> [reason]",
    "unban": "Usage: /unban <user_id>",
    "addproduct": "Usage: /addproduct <price> <stock> <name> | <content>",
}


def get_services(context: ContextTypes.DEFAULT_TYPE) -> BrokerServices:
    return context.application.bot_data["services"]


def _delivery_ref(update: Update) -> dict:
    message = update.effective_message
    return {
        "chat_id": update.effective_chat.id if update.effective_chat else None,
        "message_id": message.message_id if message else None,
    }


async def _reply(update: Update, text: str, reply_markup: Optional[InlineKeyboardMarkup] = None) -> None:
    message = update.effective_message
    if message is None:
        return
    await message.reply_text(text, parse_mode=ParseMode.HTML, reply_markup=reply_markup)


def describe_failure(error: BrokerError) -> str:
    """User-facing text for a rejected operation, stating whether money moved"""
    if isinstance(error, InsufficientBalanceError):
        text = f"❌ Insufficient balance. You have {format_idr(error.balance)}, need {format_idr(error.required)}."
    elif isinstance(error, PriceChangedError):
        text = (
            f"💱 The price changed from {format_idr(error.old_price)} to {format_idr(error.new_price)}. "
            f"Check /services again and confirm the new price."
        )
    elif isinstance(error, CancelTooEarlyError):
        text = f"⏳ You can cancel in {error.remaining_seconds} seconds."
    else:
        text = f"❌ {html.escape(str(error))}"
    if error.funds_moved:
        return f"{text}\n\nFunds were moved. Contact the admin if this looks wrong."
    return f"{text}\n\nYour balance was not changed."


def broker_command(action: str):
    """Gate a handler on ban/rate limit, then run it on the JobQueue"""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
            user = update.effective_user
            if user is None:
                return
            services = get_services(context)
            query = update.callback_query
            if query:
                await query.answer()

            decision = await services.security.validate_access(user.id, action)
            if not decision.allowed:
                await _reply(update, decision.message)
                return

            async def run() -> None:
                try:
                    await func(update, context, services, user.id)
                except BrokerError as e:
                    logger.info(f"🙅 {action.upper()}_REJECTED: user={user.id}: {e}")
                    await _reply(update, describe_failure(e))
                except StorageCorruptError:
                    await _reply(update, STORAGE_UNAVAILABLE)
                    raise

            services.job_queue.submit(run, name=f"{action}:{user.id}")
        return wrapper
    return decorator


def owner_only(func):
    @functools.wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE, services: BrokerServices, user_id: int):
        if not Config.OWNER_ID or user_id != Config.OWNER_ID:
            logger.warning(f"🚫 OWNER_COMMAND_DENIED: user={user_id} command={func.__name__}")
            await _reply(update, "🚫 This command is for the bot owner only.")
            return
        await func(update, context, services, user_id)
    return wrapper


# ===== ACCOUNT =====

@broker_command("start")
async def start_command(update, context, services: BrokerServices, user_id: int) -> None:
    account = await services.accounts.ensure_account(user_id)
    await _reply(
        update,
        f"👋 Welcome to <b>{html.escape(Config.BOT_NAME)}</b>\n\n"
        f"Balance: {format_idr(account.balance)}\n\n"
        "/services - browse numbers\n"
        "/deposit - top up via QRIS\n"
        "/products - digital products\n"
        "/history - completed orders\n"
        "/top - top users\n"
        "/cancel - cancel your active order",
    )


@broker_command("balance")
async def balance_command(update, context, services: BrokerServices, user_id: int) -> None:
    balance = await services.accounts.get_balance(user_id)
    order = await services.orders.get(user_id)
    text = f"💰 Balance: {format_idr(balance)}"
    if order:
        text += f"\n📱 Active order: <code>{html.escape(order.number)}</code> ({order.status.value})"
    await _reply(update, text)


@broker_command("history")
async def history_command(update, context, services: BrokerServices, user_id: int) -> None:
    entries = await services.orders.get_history(user_id)
    if not entries:
        await _reply(update, "📜 No completed orders yet.")
        return
    lines = ["📜 <b>Recent orders</b>\n"]
    for entry in entries:
        lines.append(
            f"• {html.escape(entry.service_name)} <code>{html.escape(entry.number)}</code> "
            f"code <code>{html.escape(entry.sms_code)}</code> {format_idr(entry.price)}"
        )
    await _reply(update, "\n".join(lines))


def mask_user_id(user_id: int) -> str:
    text = str(user_id)
    if len(text) <= 7:
        return text[:2] + "xxx"
    return f"{text[:4]}xxx{text[-3:]}"


@broker_command("top")
async def top_command(update, context, services: BrokerServices, user_id: int) -> None:
    """Leaderboard of completed orders per user"""
    ranked = await services.orders.top_users(limit=10)
    if not ranked:
        await _reply(update, "🏆 No completed orders yet.")
        return
    lines = ["🏆 <b>Top users by completed orders</b>\n"]
    for position, (ranked_user, count) in enumerate(ranked, start=1):
        marker = " (you)" if ranked_user == user_id else ""
        lines.append(f"{position}. ID <code>{mask_user_id(ranked_user)}</code> - {count} orders{marker}")
    await _reply(update, "\n".join(lines))


# ===== NUMBERS =====

@broker_command("services")
async def services_command(update, context, services: BrokerServices, user_id: int) -> None:
    if len(context.args) < 2:
        providers = ", ".join(p.key for p in services.providers.get_enabled_providers())
        await _reply(update, f"{USAGE['services']}\nProviders: {providers}")
        return
    provider_key, country = context.args[0], context.args[1]
    provider = services.providers.get_provider(provider_key)
    result = await provider.get_services(country)
    if not result.success:
        await _reply(update, f"⚠️ {html.escape(provider.name)} is unavailable right now. Try again later.")
        return

    offers = sorted(result.data, key=lambda o: o.price)[:SERVICES_PER_PAGE]
    if not offers:
        await _reply(update, "📭 No services in stock for this country.")
        return
    keyboard = []
    for offer in offers:
        price = provider.sell_price(offer, services.state_machine.markup)
        keyboard.append([InlineKeyboardButton(
            f"{offer.name} - {format_idr(price)} ({offer.stock})",
            callback_data=f"confirm_buy:{provider_key}:{country}:{offer.id}:{price}",
        )])
    await _reply(
        update,
        f"📱 <b>{html.escape(provider.name)}</b> services in {html.escape(country)}",
        reply_markup=InlineKeyboardMarkup(keyboard),
    )


async def _buy(update: Update, services: BrokerServices, user_id: int, provider_key: str,
               country: str, service_id: str, shown_price: str) -> None:
    selection = ServiceSelection(
        provider_key=provider_key,
        service_id=service_id,
        country=country,
        shown_price=int(shown_price),
    )
    order = await services.state_machine.purchase(user_id, selection, _delivery_ref(update))
    balance = await services.accounts.get_balance(user_id)
    keyboard = InlineKeyboardMarkup([[
        InlineKeyboardButton("🚫 Cancel order", callback_data=f"cancel_order:{order.order_id}")
    ]])
    await _reply(
        update,
        "✅ <b>Number reserved</b>\n\n"
        f"Number: <code>{html.escape(order.number)}</code>\n"
        f"Service: {html.escape(order.service_name or order.service_id)}\n"
        f"Price: {format_idr(order.price)}\n"
        f"Balance: {format_idr(balance)}\n\n"
        "Waiting for the SMS code...",
        reply_markup=keyboard,
    )


@broker_command("buy")
async def buy_command(update, context, services: BrokerServices, user_id: int) -> None:
    if len(context.args) < 4 or not context.args[3].isdigit():
        await _reply(update, USAGE["buy"])
        return
    await _buy(update, services, user_id, *context.args[:4])


@broker_command("buy")
async def confirm_buy_callback(update, context, services: BrokerServices, user_id: int) -> None:
    parts = update.callback_query.data.split(":")
    if len(parts) != 5 or not parts[4].isdigit():
        await _reply(update, "⚠️ This button has expired. Use /services again.")
        return
    await _buy(update, services, user_id, *parts[1:])


async def _cancel(update: Update, services: BrokerServices, user_id: int, order_id: str) -> None:
    result = await services.state_machine.cancel(user_id, order_id)
    if result.credited:
        await _reply(
            update,
            f"🚫 Order cancelled. Refunded {format_idr(result.amount)}.\n"
            f"Balance: {format_idr(result.new_balance)}",
        )
    else:
        await _reply(update, "🚫 Order cancelled. The refund was already applied.")


@broker_command("cancel")
async def cancel_command(update, context, services: BrokerServices, user_id: int) -> None:
    order = await services.orders.get(user_id)
    if order is None:
        await _reply(update, "📭 You have no active order.")
        return
    await _cancel(update, services, user_id, order.order_id)


@broker_command("cancel")
async def cancel_order_callback(update, context, services: BrokerServices, user_id: int) -> None:
    order_id = update.callback_query.data.split(":", 1)[1]
    await _cancel(update, services, user_id, order_id)


# ===== DEPOSITS =====

async def _send_payment_qr(update: Update, intent, caption: str) -> None:
    keyboard = InlineKeyboardMarkup([[
        InlineKeyboardButton("🚫 Cancel payment", callback_data=f"cancel_deposit:{intent.trx_id}")
    ]])
    qr_image = QRCodeService.generate_qr_png(intent.payload)
    message = update.effective_message
    if qr_image is None or message is None:
        await _reply(update, f"{caption}\n\n<code>{html.escape(intent.payload)}</code>", reply_markup=keyboard)
        return
    await message.reply_photo(photo=qr_image, caption=caption, parse_mode=ParseMode.HTML, reply_markup=keyboard)


@broker_command("deposit")
async def deposit_command(update, context, services: BrokerServices, user_id: int) -> None:
    if not context.args or not context.args[0].isdigit():
        await _reply(update, f"{USAGE['deposit']}\nMinimum: {format_idr(services.deposit_service.min_amount)}")
        return
    intent = await services.deposit_service.request_deposit(user_id, int(context.args[0]), _delivery_ref(update))
    await _send_payment_qr(
        update, intent,
        "💳 <b>Scan to pay (QRIS)</b>\n\n"
        f"Transaction: <code>{html.escape(intent.trx_id)}</code>\n"
        f"Amount: {format_idr(intent.amount_requested)}\n"
        f"Fee: {format_idr(intent.fee)}\n"
        f"You will receive: {format_idr(intent.amount_to_credit)}\n"
        f"Expires in {services.deposit_service.expiry_seconds // 60} minutes.",
    )


@broker_command("cancel_deposit")
async def cancel_deposit_callback(update, context, services: BrokerServices, user_id: int) -> None:
    trx_id = update.callback_query.data.split(":", 1)[1]
    await services.deposit_service.cancel_deposit(user_id, trx_id)
    await _reply(update, f"🚫 Payment <code>{html.escape(trx_id)}</code> cancelled. No funds were moved.")


# ===== PRODUCTS =====

@broker_command("products")
async def products_command(update, context, services: BrokerServices, user_id: int) -> None:
    products = await services.products.list_products(in_stock_only=True)
    if not products:
        await _reply(update, "📭 No products available right now.")
        return
    lines = ["📦 <b>Products</b>\n"]
    for product in products:
        lines.append(
            f"• <code>{html.escape(product.product_id)}</code> {html.escape(product.name)} "
            f"{format_idr(product.price)} (stock {product.stock})"
        )
    lines.append(f"\n{USAGE['buyproduct']}")
    await _reply(update, "\n".join(lines))


@broker_command("buyproduct")
async def buy_product_command(update, context, services: BrokerServices, user_id: int) -> None:
    if not context.args:
        await _reply(update, USAGE["buyproduct"])
        return
    product_id = context.args[0]
    method = context.args[1].lower() if len(context.args) > 1 else "balance"
    if method == "qris":
        intent = await services.deposit_service.request_product_payment(user_id, product_id, _delivery_ref(update))
        await _send_payment_qr(
            update, intent,
            "💳 <b>Scan to pay (QRIS)</b>\n\n"
            f"Transaction: <code>{html.escape(intent.trx_id)}</code>\n"
            f"Amount: {format_idr(intent.amount_requested)}\n"
            "The product is sent here once the payment is confirmed.",
        )
        return
    if method != "balance":
        await _reply(update, USAGE["buyproduct"])
        return
    await services.products.purchase_with_balance(user_id, product_id, _delivery_ref(update))


# ===== OWNER =====

@broker_command("owner")
@owner_only
async def add_balance_command(update, context, services: BrokerServices, user_id: int) -> None:
    if len(context.args) < 2 or not context.args[0].isdigit() or not context.args[1].isdigit():
        await _reply(update, USAGE["addbalance"])
        return
    target, amount = int(context.args[0]), int(context.args[1])
    result = await services.accounts.credit(target, amount)
    logger.warning(f"🛠️ OWNER_ADD_BALANCE: owner={user_id} target={target} +{amount}")
    await _reply(update, f"✅ Credited {format_idr(amount)} to {target}. Balance: {format_idr(result.balance)}")


@broker_command("owner")
@owner_only
async def ban_command(update, context, services: BrokerServices, user_id: int) -> None:
    if not context.args or not context.args[0].isdigit():
        await _reply(update, USAGE["ban"])
        return
    reason = " ".join(context.args[1:])
    added = await services.security.ban(int(context.args[0]), reason)
    await _reply(update, "🚫 User banned." if added else "ℹ️ User was already banned.")


@broker_command("owner")
@owner_only
async def unban_command(update, context, services: BrokerServices, user_id: int) -> None:
    if not context.args or not context.args[0].isdigit():
        await _reply(update, USAGE["unban"])
        return
    removed = await services.security.unban(int(context.args[0]))
    await _reply(update, "✅ User unbanned." if removed else "ℹ️ User was not banned.")


@broker_command("owner")
@owner_only
async def add_product_command(update, context, services: BrokerServices, user_id: int) -> None:
    if len(context.args) < 3 or not context.args[0].isdigit() or not context.args[1].isdigit():
        await _reply(update, USAGE["addproduct"])
        return
    name, _, content = " ".join(context.args[2:]).partition("|")
    product = await services.products.add_product(
        name=name.strip(), price=int(context.args[0]), stock=int(context.args[1]), content=content.strip()
    )
    await _reply(update, f"📦 Added <code>{product.product_id}</code> {html.escape(product.name)}")


def register_broker_handlers(application: Application, services: BrokerServices) -> None:
    """Register every broker command and callback"""
    application.bot_data["services"] = services

    commands = [
        ("start", start_command),
        ("balance", balance_command),
        ("history", history_command),
        ("top", top_command),
        ("services", services_command),
        ("buy", buy_command),
        ("cancel", cancel_command),
        ("deposit", deposit_command),
        ("products", products_command),
        ("buyproduct", buy_product_command),
        ("addbalance", add_balance_command),
        ("ban", ban_command),
        ("unban", unban_command),
        ("addproduct", add_product_command),
    ]
    for command, callback in commands:
        application.add_handler(CommandHandler(command, callback))

    application.add_handler(CallbackQueryHandler(confirm_buy_callback, pattern="^confirm_buy:"))
    application.add_handler(CallbackQueryHandler(cancel_order_callback, pattern="^cancel_order:"))
    application.add_handler(CallbackQueryHandler(cancel_deposit_callback, pattern="^cancel_deposit:"))
    logger.info(f"✅ Broker handlers registered: {len(commands)} commands, 3 callbacks")
