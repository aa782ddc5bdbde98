"""SMS-Activate adapter (handler_api with plain-text replies)"""

import logging

from models import SmsStatus
from .base import (
    BaseProvider, ProviderResult, ServiceOffer, NumberAllocation, SmsCheck,
    REPLY_ERRORS, STATUS_READY, STATUS_CANCEL, STATUS_COMPLETE,
)

logger = logging.getLogger(__name__)

SERVICE_NAMES = {
    "wa": "WhatsApp",
    "tg": "Telegram",
    "vk": "VKontakte",
    "go": "Google",
    "fb": "Facebook",
    "ig": "Instagram",
    "tw": "Twitter",
    "ok": "Odnoklassniki",
    "vi": "Viber",
}

# handler_api setStatus codes
_STATUS_MAP = {
    STATUS_READY: 1,
    STATUS_CANCEL: 8,
    STATUS_COMPLETE: 6,
}


class SmsActivateProvider(BaseProvider):

    async def _action(self, action: str, as_json: bool = False, **params):
        return await self._get(
            self.base_url, params={"api_key": self.api_key, "action": action, **params}, as_json=as_json
        )

    async def get_countries(self) -> ProviderResult:
        try:
            data = await self._action("getCountries", as_json=True)
            if not data:
                return ProviderResult.fail("No countries data", provider=self.name)
            countries = [
                {"id": str(cid), "name": info.get("eng") or info.get("rus") or str(cid)}
                for cid, info in data.items()
            ]
            return ProviderResult.ok(countries, provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "get_countries")

    async def get_services(self, country: str) -> ProviderResult:
        try:
            data = await self._action("getPrices", as_json=True, country=country)
            country_data = (data or {}).get(str(country))
            if not country_data:
                return ProviderResult.fail("No services available", provider=self.name)
            services = [
                ServiceOffer(
                    id=code,
                    name=SERVICE_NAMES.get(code, code.upper()),
                    price=int(float(info.get("cost", 0))),
                    stock=int(info.get("count", 0)),
                    country=str(country),
                )
                for code, info in country_data.items()
                if int(info.get("count", 0)) > 0
            ]
            return ProviderResult.ok(services, provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "get_services")

    async def order_number(self, service_id: str, country: str) -> ProviderResult:
        try:
            text = await self._action("getNumber", service=service_id, country=country)
            if text.startswith("ACCESS_NUMBER"):
                _, activation_id, number = text.split(":", 2)
                return ProviderResult.ok(NumberAllocation(id=activation_id, number=number), provider=self.name)
            return ProviderResult.fail(text or "Failed to get number", provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "order_number")

    async def get_status(self, order_id: str) -> ProviderResult:
        try:
            text = await self._action("getStatus", id=order_id)
            if text.startswith("STATUS_OK"):
                return ProviderResult.ok(SmsCheck(SmsStatus.SUCCESS, text.split(":", 1)[1]), provider=self.name)
            if text.startswith("STATUS_WAIT"):
                return ProviderResult.ok(SmsCheck(SmsStatus.WAITING), provider=self.name)
            return ProviderResult.fail(text, provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "get_status")

    async def cancel_order(self, order_id: str) -> ProviderResult:
        try:
            text = await self._action("setStatus", id=order_id, status=_STATUS_MAP[STATUS_CANCEL])
            if text == "ACCESS_CANCEL":
                return ProviderResult.ok(provider=self.name)
            return ProviderResult.fail(text, provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "cancel_order")

    async def set_status(self, order_id: str, status: str) -> ProviderResult:
        try:
            text = await self._action("setStatus", id=order_id, status=_STATUS_MAP.get(status, status))
            return ProviderResult.ok(text, provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "set_status")
