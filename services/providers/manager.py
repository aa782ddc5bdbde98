"""Registry of enabled number providers"""

import logging
from typing import Any, Dict, List, Optional, Type

from config import Config
from utils.exceptions import ProviderNotFoundError
from .base import BaseProvider
from .fivesim import FiveSimProvider
from .sms_activate import SmsActivateProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[BaseProvider]] = {
    "fivesim": FiveSimProvider,
    "smsactivate": SmsActivateProvider,
}


class ProviderManager:
    """Builds the enabled providers from configuration and hands them out by key"""

    def __init__(self, providers_config: Optional[Dict[str, Dict[str, Any]]] = None):
        self.providers: Dict[str, BaseProvider] = {}
        for key, provider_config in (providers_config if providers_config is not None else Config.PROVIDERS).items():
            if not provider_config.get("enabled"):
                logger.info(f"⏭️ Skipped disabled provider: {provider_config.get('name', key)} ({key})")
                continue
            provider_class = PROVIDER_CLASSES.get(key)
            if provider_class is None:
                logger.warning(f"⚠️ Provider class not found for: {key}")
                continue
            self.register(key, provider_class(key, provider_config))
        logger.info(f"🎯 Total active providers: {len(self.providers)}")

    def register(self, key: str, provider: BaseProvider) -> None:
        self.providers[key] = provider
        logger.info(f"✅ Initialized provider: {provider.name} ({key})")

    def get_provider(self, key: str) -> BaseProvider:
        provider = self.providers.get(key)
        if provider is None:
            raise ProviderNotFoundError(f'Provider "{key}" not found or disabled')
        return provider

    def get_enabled_providers(self) -> List[BaseProvider]:
        return sorted(self.providers.values(), key=lambda p: p.priority)
