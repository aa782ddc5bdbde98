#!/usr/bin/env python3
"""
Clean Deterministic Startup - Number Broker Telegram Bot

Implements:
- Simple, deterministic startup sequence
- Explicit dependency management through one service container
- Crash repair (startup reconciliation) before any handler sees traffic
- Ordered shutdown: scheduler, poll timers, job queue, locks, then Telegram
"""

import logging
import asyncio
import sys
from typing import Optional
from telegram.ext import Application

from config import Config
from models import Collection
from services.container import BrokerServices, build_services
from services.notification_service import TelegramNotifier
from utils.graceful_shutdown import cleanup_telegram_application, register_broker_cleanup, shutdown_manager

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


class CleanStartupManager:
    """
    Clean startup manager with deterministic sequence.
    """

    def __init__(self):
        self.application: Optional[Application] = None
        self.services: Optional[BrokerServices] = None
        self.startup_complete = False
        self.startup_errors = []

    async def validate_configuration(self) -> bool:
        missing = Config.validate_required_config()
        if missing:
            logger.error(f"❌ Missing required configuration: {', '.join(missing)}")
            self.startup_errors.append(f"Config: missing {missing}")
            return False
        Config.log_configuration()
        return True

    async def create_application(self) -> bool:
        """Create Telegram application with clean configuration."""
        try:
            logger.info("🤖 Creating Telegram application...")
            self.application = (
                Application.builder()
                .token(Config.BOT_TOKEN)
                .build()
            )
            logger.info("✅ Telegram application created")
            return True
        except Exception as e:
            logger.error(f"❌ Application creation failed: {e}")
            self.startup_errors.append(f"Application: {e}")
            return False

    async def initialize_services(self) -> bool:
        """Build the broker services and prepare the data directory."""
        try:
            logger.info("⚙️ Initializing broker services...")
            notifier = TelegramNotifier(self.application.bot)
            self.services = build_services(notifier=notifier)

            await self.services.store.initialize(Collection.DEFAULTS)
            integrity = await self.services.store.verify_integrity()
            if integrity["corrupt"]:
                raise RuntimeError(f"Corrupt collections: {integrity['corrupt']}")

            logger.info(f"✅ Storage verified: {integrity['checked']} collections")
            return True
        except Exception as e:
            logger.error(f"❌ Service initialization failed: {e}")
            self.startup_errors.append(f"Services: {e}")
            return False

    async def reconcile(self) -> bool:
        """Repair orders and deposits left half-done by the previous run."""
        try:
            results = await self.services.reconciler.run()
            logger.info(
                f"✅ Reconciliation: {results['polls_rearmed']} polls re-armed, "
                f"{results['refunds_repaired']} refunds repaired, "
                f"{len(results['orphaned_debits'])} orphaned debits"
            )
            return True
        except Exception as e:
            logger.error(f"❌ Reconciliation failed: {e}")
            self.startup_errors.append(f"Reconciliation: {e}")
            return False

    async def register_handlers(self) -> bool:
        """Register handlers with explicit imports and clear error handling."""
        try:
            logger.info("📋 Registering handlers...")
            from handlers.broker_handlers import register_broker_handlers
            register_broker_handlers(self.application, self.services)
            return True
        except Exception as e:
            logger.error(f"❌ Handler registration failed: {e}")
            self.startup_errors.append(f"Handlers: {e}")
            return False

    async def start_background_work(self) -> bool:
        try:
            self.services.job_queue.start()
            self.services.scheduler.start()
            register_broker_cleanup(self.services)
            shutdown_manager.add_cleanup_task(self.stop_application)
            return True
        except Exception as e:
            logger.error(f"❌ Background work failed to start: {e}")
            self.startup_errors.append(f"Background: {e}")
            return False

    async def start_application(self) -> bool:
        """Start the application in polling mode."""
        try:
            logger.info("📡 Starting in polling mode...")
            await self.application.initialize()
            await self.application.start()
            await self.application.updater.start_polling()
            logger.info("✅ Application started in polling mode")
            self.startup_complete = True
            return True
        except Exception as e:
            logger.error(f"❌ Application start failed: {e}")
            self.startup_errors.append(f"Application start: {e}")
            return False

    async def stop_application(self) -> None:
        if self.application.updater and self.application.updater.running:
            await self.application.updater.stop()
        await cleanup_telegram_application(self.application)
        await self.application.shutdown()

    async def startup_sequence(self) -> bool:
        """Execute clean startup sequence; every step is critical for money safety."""
        logger.info(f"🚀 Starting {Config.BOT_NAME} with clean startup sequence...")

        startup_steps = [
            ("Configuration", self.validate_configuration),
            ("Application", self.create_application),
            ("Services", self.initialize_services),
            ("Reconciliation", self.reconcile),
            ("Handlers", self.register_handlers),
            ("Background", self.start_background_work),
            ("Start", self.start_application),
        ]

        for step_name, step_func in startup_steps:
            logger.info(f"▶️ Executing step: {step_name}")
            if not await step_func():
                logger.error(f"🚨 Step '{step_name}' failed - cannot continue startup")
                return False

        logger.info("✅ Clean startup sequence completed successfully")
        return self.startup_complete


async def main_clean():
    """Main function with clean startup."""
    startup_manager = CleanStartupManager()
    if not await startup_manager.startup_sequence():
        logger.error("❌ Startup failed - exiting")
        for error in startup_manager.startup_errors:
            logger.error(f"  - {error}")
        sys.exit(1)

    logger.info(f"🎉 {Config.BOT_NAME} startup complete!")
    shutdown_manager.setup_signal_handlers()
    await shutdown_manager.shutdown_complete.wait()


if __name__ == "__main__":
    try:
        asyncio.run(main_clean())
    except KeyboardInterrupt:
        logger.info("👋 Bot stopped by user")
