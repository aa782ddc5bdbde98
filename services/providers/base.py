"""Capability interface shared by every number provider"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from models import SmsStatus

logger = logging.getLogger(__name__)

# set_status codes understood by every adapter
STATUS_READY = "1"
STATUS_CANCEL = "2"
STATUS_COMPLETE = "4"

# Transport faults plus replies that are valid JSON but not the expected shape
REPLY_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ValueError,
    KeyError,
    IndexError,
    TypeError,
    AttributeError,
)


@dataclass
class ServiceOffer:
    id: str
    name: str
    price: int
    stock: int
    country: str = ""


@dataclass
class NumberAllocation:
    id: str
    number: str


@dataclass
class SmsCheck:
    status: SmsStatus
    sms: Optional[str] = None

    @property
    def received(self) -> bool:
        return self.status == SmsStatus.SUCCESS and bool(self.sms)


@dataclass
class ProviderResult:
    """Success/failure envelope; provider calls never raise"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    provider: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, provider: Optional[str] = None) -> "ProviderResult":
        return cls(success=True, data=data, provider=provider)

    @classmethod
    def fail(cls, error: str, provider: Optional[str] = None) -> "ProviderResult":
        return cls(success=False, error=error, provider=provider)


class BaseProvider(ABC):
    """One external numeric-exchange vendor"""

    def __init__(self, key: str, config: Dict[str, Any]):
        self.key = key
        self.config = config
        self.name = config.get("name", key)
        self.api_key = config.get("api_key", "")
        self.base_url = config.get("base_url", "").rstrip("/")
        self.priority = int(config.get("priority", 99))
        self.timeout = int(config.get("timeout", Config.PROVIDER_TIMEOUT_SECONDS))

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None, as_json: bool = True) -> Any:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.get(url, params=params, headers=self._headers()) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise aiohttp.ClientResponseError(
                        response.request_info, response.history,
                        status=response.status, message=error_text[:200],
                    )
                if as_json:
                    return await response.json(content_type=None)
                return (await response.text()).strip()

    def handle_error(self, error: Exception, operation: str) -> ProviderResult:
        if isinstance(error, asyncio.TimeoutError):
            message = f"timeout after {self.timeout}s"
        else:
            message = str(error) or error.__class__.__name__
        logger.warning(f"⚠️ PROVIDER_ERROR: [{self.name}] {operation}: {message}")
        return ProviderResult.fail(message, provider=self.name)

    @abstractmethod
    async def get_countries(self) -> ProviderResult:
        """data: list of {id, name}"""

    @abstractmethod
    async def get_services(self, country: str) -> ProviderResult:
        """data: list of ServiceOffer"""

    @abstractmethod
    async def order_number(self, service_id: str, country: str) -> ProviderResult:
        """data: NumberAllocation"""

    @abstractmethod
    async def get_status(self, order_id: str) -> ProviderResult:
        """data: SmsCheck"""

    @abstractmethod
    async def cancel_order(self, order_id: str) -> ProviderResult:
        ...

    @abstractmethod
    async def set_status(self, order_id: str, status: str) -> ProviderResult:
        ...

    async def find_service(self, country: str, service_id: str) -> ProviderResult:
        """Re-quote a single service; data is the ServiceOffer or None if it is gone"""
        result = await self.get_services(country)
        if not result.success:
            return result
        offer: Optional[ServiceOffer] = next(
            (s for s in result.data if str(s.id) == str(service_id)), None
        )
        return ProviderResult.ok(offer, provider=self.name)

    @staticmethod
    def sell_price(offer: ServiceOffer, markup: int) -> int:
        return int(offer.price) + markup
