"""5SIM adapter (REST, JSON, bearer token)"""

import logging
from typing import Dict

from models import SmsStatus
from .base import (
    BaseProvider, ProviderResult, ServiceOffer, NumberAllocation, SmsCheck,
    REPLY_ERRORS, STATUS_READY, STATUS_CANCEL,
)

logger = logging.getLogger(__name__)


class FiveSimProvider(BaseProvider):

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    async def get_countries(self) -> ProviderResult:
        try:
            data = await self._get(f"{self.base_url}/guest/countries")
            if not data:
                return ProviderResult.fail("No countries data", provider=self.name)
            countries = []
            for code, info in data.items():
                name = info.get("text_en", code) if isinstance(info, dict) else info
                countries.append({"id": code, "name": name})
            return ProviderResult.ok(countries, provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "get_countries")

    async def get_services(self, country: str) -> ProviderResult:
        try:
            data = await self._get(f"{self.base_url}/guest/products/{country}/any")
            if not data:
                return ProviderResult.fail("No services available", provider=self.name)
            services = [
                ServiceOffer(
                    id=code,
                    name=info.get("name", code),
                    price=int(float(info.get("Price", 0))),
                    stock=int(info.get("Qty", 0)),
                    country=country,
                )
                for code, info in data.items()
                if int(info.get("Qty", 0)) > 0
            ]
            return ProviderResult.ok(services, provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "get_services")

    async def order_number(self, service_id: str, country: str) -> ProviderResult:
        try:
            data = await self._get(f"{self.base_url}/user/buy/activation/{country}/any/{service_id}")
            if data and data.get("id"):
                return ProviderResult.ok(
                    NumberAllocation(id=str(data["id"]), number=str(data.get("phone", ""))),
                    provider=self.name,
                )
            return ProviderResult.fail("Failed to purchase number", provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "order_number")

    async def get_status(self, order_id: str) -> ProviderResult:
        try:
            data = await self._get(f"{self.base_url}/user/check/{order_id}")
            status = (data or {}).get("status")
            if status == "RECEIVED" and data.get("sms"):
                sms = data["sms"]
                code = sms[0].get("code") if isinstance(sms, list) else str(sms)
                return ProviderResult.ok(SmsCheck(SmsStatus.SUCCESS, code), provider=self.name)
            if status in ("PENDING", "RECEIVED"):
                return ProviderResult.ok(SmsCheck(SmsStatus.WAITING), provider=self.name)
            return ProviderResult.fail(f"Unexpected status {status}", provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "get_status")

    async def cancel_order(self, order_id: str) -> ProviderResult:
        try:
            data = await self._get(f"{self.base_url}/user/cancel/{order_id}")
            if (data or {}).get("status") == "CANCELED":
                return ProviderResult.ok(provider=self.name)
            return ProviderResult.fail(f"Cancel rejected: {data}", provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "cancel_order")

    async def set_status(self, order_id: str, status: str) -> ProviderResult:
        # 5SIM has no "number ready" signal
        if status == STATUS_READY:
            return ProviderResult.ok(provider=self.name)
        action = "cancel" if status == STATUS_CANCEL else "finish"
        try:
            data = await self._get(f"{self.base_url}/user/{action}/{order_id}")
            return ProviderResult.ok(data, provider=self.name)
        except REPLY_ERRORS as e:
            return self.handle_error(e, "set_status")
