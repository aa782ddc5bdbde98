"""
Graceful Shutdown Handler
Cancels background tasks, poll timers, and queued jobs in a fixed order during bot shutdown
"""

import logging
import asyncio
import signal
import sys
from typing import Set

logger = logging.getLogger(__name__)

class GracefulShutdownManager:
    """Manages graceful shutdown of async applications with proper cleanup"""

    def __init__(self):
        self.shutdown_event = asyncio.Event()
        self.shutdown_complete = asyncio.Event()
        self.running_tasks: Set[asyncio.Task] = set()
        self.cleanup_tasks = []

    def add_cleanup_task(self, cleanup_func):
        """Add a cleanup function to be called during shutdown"""
        self.cleanup_tasks.append(cleanup_func)

    def track_task(self, task: asyncio.Task):
        """Track an async task for proper cleanup"""
        self.running_tasks.add(task)
        task.add_done_callback(self.running_tasks.discard)

    async def shutdown(self):
        """Perform graceful shutdown"""
        if self.shutdown_event.is_set():
            return
        logger.info("🔄 Starting graceful shutdown...")
        self.shutdown_event.set()

        # Cleanup first so no poll tick or queued job spawns new tasks
        for cleanup_func in self.cleanup_tasks:
            try:
                if asyncio.iscoroutinefunction(cleanup_func):
                    await cleanup_func()
                else:
                    cleanup_func()
                logger.debug(f"✅ Cleanup completed: {cleanup_func.__name__}")
            except Exception as e:
                logger.error(f"❌ Cleanup failed for {cleanup_func.__name__}: {e}")

        if self.running_tasks:
            logger.info(f"📋 Cancelling {len(self.running_tasks)} pending tasks...")
            for task in list(self.running_tasks):
                if not task.done():
                    task.cancel()

            try:
                await asyncio.wait_for(
                    asyncio.gather(*self.running_tasks, return_exceptions=True),
                    timeout=5.0
                )
                logger.info("✅ All tasks cancelled successfully")
            except asyncio.TimeoutError:
                logger.warning("⚠️ Some tasks didn't cancel within timeout")

        logger.info("✅ Graceful shutdown completed")
        self.shutdown_complete.set()

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown"""
        def signal_handler(signum, frame):
            logger.info(f"🛑 Received signal {signum}, initiating shutdown...")
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(self.shutdown())
            except RuntimeError:
                logger.warning("No event loop running, exiting immediately")
                sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)


# Global shutdown manager instance
shutdown_manager = GracefulShutdownManager()


def create_managed_task(coro) -> asyncio.Task:
    """Create and track an async task for proper cleanup"""
    task = asyncio.create_task(coro)
    shutdown_manager.track_task(task)
    return task


def register_broker_cleanup(services, manager: GracefulShutdownManager = None):
    """
    Register cleanup for the broker runtime.

    Order matters: scheduled jobs stop first, then SMS poll timers are disarmed,
    queued chat jobs are dropped, and finally advisory locks and their release
    timers are cleared. Persisted orders survive and are re-armed on the next start.
    """
    manager = manager or shutdown_manager

    def stop_scheduler():
        services.scheduler.stop()

    def disarm_sms_polls():
        count = services.sms_polls.disarm_all()
        logger.info(f"✅ Disarmed {count} SMS poll timers")

    async def stop_job_queue():
        await services.job_queue.stop(drain=False)

    def clear_advisory_locks():
        services.locks.clear()

    manager.add_cleanup_task(stop_scheduler)
    manager.add_cleanup_task(disarm_sms_polls)
    manager.add_cleanup_task(stop_job_queue)
    manager.add_cleanup_task(clear_advisory_locks)


async def cleanup_telegram_application(application):
    """Cleanup function for Telegram application"""
    try:
        if application and hasattr(application, 'stop'):
            await application.stop()
            logger.info("✅ Telegram application stopped")
    except Exception as e:
        logger.error(f"❌ Telegram cleanup failed: {e}")
