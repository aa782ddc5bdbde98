"""Configuration management for the number broker bot"""

import os
import logging
from typing import Dict, Any, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Bot
    BOT_TOKEN = os.getenv("BOT_TOKEN") or os.getenv("TELEGRAM_BOT_TOKEN")
    OWNER_ID = int(os.getenv("OWNER_ID", "0"))
    BOT_NAME = os.getenv("BOT_NAME", "NumBroker")

    # Storage
    DATA_DIR = os.getenv("DATA_DIR", "data")
    BACKUP_DIR = os.getenv("BACKUP_DIR", os.path.join(DATA_DIR, "backups"))
    MAX_BACKUPS = int(os.getenv("MAX_BACKUPS", "10"))

    # Pricing (whole IDR units)
    MARKUP_PROFIT = int(os.getenv("MARKUP_PROFIT", "500"))
    HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "20"))

    # SMS polling: 32 checks x 15s is roughly 8 minutes before auto-refund
    SMS_POLL_INTERVAL_SECONDS = int(os.getenv("SMS_POLL_INTERVAL_SECONDS", "15"))
    MAX_CHECK_ATTEMPTS = int(os.getenv("MAX_CHECK_ATTEMPTS", "32"))
    SET_STATUS_READY_DELAY_SECONDS = float(os.getenv("SET_STATUS_READY_DELAY_SECONDS", "3"))

    # Manual cancel
    CANCEL_COOLDOWN_SECONDS = int(os.getenv("CANCEL_COOLDOWN_SECONDS", "300"))
    CANCEL_MAX_RETRIES = int(os.getenv("CANCEL_MAX_RETRIES", "3"))
    CANCEL_RETRY_DELAY_SECONDS = float(os.getenv("CANCEL_RETRY_DELAY_SECONDS", "2"))

    # Refund lock retention after a credit
    REFUND_LOCK_RETENTION_SECONDS = float(os.getenv("REFUND_LOCK_RETENTION_SECONDS", "5"))
    CANCEL_LOCK_RETENTION_SECONDS = float(os.getenv("CANCEL_LOCK_RETENTION_SECONDS", "10"))

    # Deposits
    DEPOSIT_POLL_INTERVAL_SECONDS = int(os.getenv("DEPOSIT_POLL_INTERVAL_SECONDS", "10"))
    DEPOSIT_EXPIRY_SECONDS = int(os.getenv("DEPOSIT_EXPIRY_SECONDS", "600"))
    DEPOSIT_GRACE_SECONDS = int(os.getenv("DEPOSIT_GRACE_SECONDS", "300"))
    MIN_DEPOSIT_AMOUNT = int(os.getenv("MIN_DEPOSIT_AMOUNT", "1000"))

    # Cleanup sweep and dispatcher
    CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "60"))
    LOCK_STALE_SECONDS = int(os.getenv("LOCK_STALE_SECONDS", "120"))
    MAX_REFUND_LOCKS = int(os.getenv("MAX_REFUND_LOCKS", "100"))
    JOB_QUEUE_CONCURRENCY = int(os.getenv("JOB_QUEUE_CONCURRENCY", "5"))
    LEDGER_KEY_LIMIT = int(os.getenv("LEDGER_KEY_LIMIT", "100"))

    # Rate limiting per user_action key
    RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "10"))
    RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "15"))

    # CiaaTopUp QRIS gateway
    CIAATOPUP_API_KEY = os.getenv("CIAATOPUP_API_KEY")
    CIAATOPUP_BASE_URL = os.getenv("CIAATOPUP_BASE_URL", "https://ciaatopup.my.id/h2h/deposit")
    CIAATOPUP_METHOD = os.getenv("CIAATOPUP_METHOD", "QRISFAST")
    GATEWAY_TIMEOUT_SECONDS = int(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))
    # Offset of the naive timestamps the gateway returns (WIB)
    GATEWAY_UTC_OFFSET_HOURS = int(os.getenv("GATEWAY_UTC_OFFSET_HOURS", "7"))

    # Number providers
    PROVIDER_TIMEOUT_SECONDS = int(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))
    PROVIDERS: Dict[str, Dict[str, Any]] = {
        "fivesim": {
            "name": "5SIM",
            "enabled": _env_flag("FIVESIM_ENABLED"),
            "api_key": os.getenv("FIVESIM_API_KEY", ""),
            "base_url": os.getenv("FIVESIM_BASE_URL", "https://5sim.net/v1"),
            "priority": int(os.getenv("FIVESIM_PRIORITY", "1")),
        },
        "smsactivate": {
            "name": "SMS-Activate",
            "enabled": _env_flag("SMSACTIVATE_ENABLED", "false"),
            "api_key": os.getenv("SMSACTIVATE_API_KEY", ""),
            "base_url": os.getenv("SMSACTIVATE_BASE_URL", "https://api.sms-activate.org/stubs/handler_api.php"),
            "priority": int(os.getenv("SMSACTIVATE_PRIORITY", "2")),
        },
    }

    @staticmethod
    def validate_required_config() -> List[str]:
        """Return the names of required settings that are missing"""
        missing = []
        if not Config.BOT_TOKEN:
            missing.append("BOT_TOKEN")
        if not Config.OWNER_ID:
            missing.append("OWNER_ID")
        if not Config.CIAATOPUP_API_KEY:
            missing.append("CIAATOPUP_API_KEY")
        for key, provider in Config.PROVIDERS.items():
            if provider["enabled"] and not provider["api_key"]:
                missing.append(f"{key.upper()}_API_KEY")
        return missing

    @staticmethod
    def log_configuration():
        """Log the effective configuration (secrets masked)"""
        logger.info("🔧 Broker Configuration:")
        logger.info(f"   Data dir: {Config.DATA_DIR} (backups: {Config.BACKUP_DIR}, keep {Config.MAX_BACKUPS})")
        logger.info(f"   Markup: {Config.MARKUP_PROFIT} | History limit: {Config.HISTORY_LIMIT}")
        logger.info(
            f"   SMS poll: every {Config.SMS_POLL_INTERVAL_SECONDS}s, "
            f"max {Config.MAX_CHECK_ATTEMPTS} checks | cancel cooldown {Config.CANCEL_COOLDOWN_SECONDS}s"
        )
        logger.info(
            f"   Deposit poll: every {Config.DEPOSIT_POLL_INTERVAL_SECONDS}s, "
            f"expiry {Config.DEPOSIT_EXPIRY_SECONDS}s, min {Config.MIN_DEPOSIT_AMOUNT}"
        )
        logger.info(f"   Job queue concurrency: {Config.JOB_QUEUE_CONCURRENCY}")
        enabled = [key for key, p in Config.PROVIDERS.items() if p["enabled"]]
        logger.info(f"   Enabled providers: {', '.join(enabled) or 'none'}")
        logger.info(f"   Gateway key: {'✅ Set' if Config.CIAATOPUP_API_KEY else '❌ Not set'}")
