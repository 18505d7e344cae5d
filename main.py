#!/usr/bin/env python3
"""
Amber gate bot - Telegram entry point
Wires command functions from commands.py to python-telegram-bot handlers.
Periodic verification runs from verify_cron.py (cron service) or /audit.
"""

import logging
import sys

from telegram import BotCommand, Update
from telegram.ext import Application, CommandHandler, ContextTypes

from blockchain_integrations import ChainQueryError, SecretChainClient
from commands import COMMANDS, CommandRequest, Deps
from config import ConfigError, Settings, load_settings
from database_adapter import StorageError, open_store
from price_cache import PriceCache, ShadePriceSource
from telegram_actions import TelegramInviteIssuer, TelegramMemberRemover
from verification import ContractRef, EnrollmentService
from verify_cron import Reconciler

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # reduce verbose HTTP logging
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.WARNING)
    logging.getLogger("telegram.ext").setLevel(logging.INFO)


def build_deps(settings: Settings, bot) -> Deps:
    store = open_store(settings)
    chain = SecretChainClient(settings.lcd_url, settings.chain_id, timeout=settings.chain_timeout)
    balance_contract = ContractRef(settings.balance_contract, settings.balance_code_hash)
    membership_contract = ContractRef(settings.membership_contract, settings.membership_code_hash)

    enrollment = EnrollmentService(
        chain, store,
        TelegramInviteIssuer(bot, settings.private_chat_id, settings.invite_ttl_minutes),
        balance_contract, membership_contract, settings.min_balance,
    )
    reconciler = Reconciler(
        chain, store, TelegramMemberRemover(bot, settings.private_chat_id), membership_contract
    )
    prices = PriceCache(ShadePriceSource(settings.price_api_url).fetch, ttl=settings.price_cache_ttl)
    return Deps(settings=settings, chain=chain, store=store, enrollment=enrollment,
                reconciler=reconciler, prices=prices)


def to_request(update: Update, args) -> CommandRequest:
    user = update.effective_user
    chat = update.effective_chat
    display_name = None
    if user:
        display_name = user.username or user.full_name
    return CommandRequest(
        user_id=user.id if user else 0,
        chat_id=chat.id,
        is_private=chat.type == "private",
        display_name=display_name,
        args=tuple(args or ()),
    )


def make_handler(command):
    async def handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
        if update.effective_message is None:
            return
        deps: Deps = context.application.bot_data["deps"]
        result = await command(to_request(update, context.args), deps)
        await update.effective_message.reply_text(
            result.text, parse_mode="Markdown" if result.markdown else None
        )
    handler.__name__ = command.__name__
    return handler


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    """Handle errors."""
    logger.error(f"Update {update} caused error {context.error}", exc_info=context.error)

    deps: Deps = context.application.bot_data.get("deps")
    if deps is None:
        return
    for admin_id in deps.settings.admin_user_ids:
        try:
            await context.bot.send_message(chat_id=admin_id, text=f"⚠️ Bot Error: {context.error}")
        except Exception as e:
            logger.warning(f"Could not notify admin {admin_id}: {e}")


async def post_init(application: Application):
    """Register the command menu and check which chain the LCD serves."""
    await application.bot.set_my_commands(
        [BotCommand(name, description) for name, (_, description) in COMMANDS.items()]
    )
    logger.info("✅ Bot commands menu set up")

    deps: Deps = application.bot_data["deps"]
    try:
        await deps.chain.check_chain_id()
    except ChainQueryError as e:
        logger.warning(f"⚠️ Could not reach LCD at startup: {e}")


async def post_shutdown(application: Application):
    deps: Deps = application.bot_data.get("deps")
    if deps is not None:
        deps.chain.close()
        deps.store.close()


def build_application(settings: Settings) -> Application:
    app = (
        Application.builder()
        .token(settings.telegram_token)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    app.bot_data["deps"] = build_deps(settings, app.bot)

    for name, (command, _) in COMMANDS.items():
        app.add_handler(CommandHandler(name, make_handler(command)))
    app.add_error_handler(error_handler)
    return app


def main():
    """Start the bot."""
    configure_logging()
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error(f"ERROR: {e}")
        sys.exit(1)

    try:
        app = build_application(settings)
    except StorageError as e:
        logger.error(f"❌ Could not open member store: {e}")
        sys.exit(1)

    logger.info(f"Amber gate bot is starting (chain {settings.chain_id}, min balance {settings.min_balance})")
    app.run_polling(drop_pending_updates=True, allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
