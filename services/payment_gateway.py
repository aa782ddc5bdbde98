"""CiaaTopUp QRIS Payment Gateway Service"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from models import GatewayStatus

logger = logging.getLogger(__name__)

# Transport faults plus bodies that parse as JSON but are not the expected object
_REPLY_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ValueError,
    KeyError,
    TypeError,
    AttributeError,
)

_STATUS_ALIASES = {
    "success": GatewayStatus.SUCCESS,
    "paid": GatewayStatus.SUCCESS,
    "settlement": GatewayStatus.SUCCESS,
    "pending": GatewayStatus.PENDING,
    "unpaid": GatewayStatus.PENDING,
    "expired": GatewayStatus.EXPIRED,
    "failed": GatewayStatus.FAILED,
    "error": GatewayStatus.FAILED,
    "cancel": GatewayStatus.CANCELLED,
    "cancelled": GatewayStatus.CANCELLED,
    "canceled": GatewayStatus.CANCELLED,
}


def normalize_status(raw: Optional[str]) -> Optional[GatewayStatus]:
    if raw is None:
        return None
    return _STATUS_ALIASES.get(str(raw).lower().strip())


def parse_gateway_time(raw: Any, utc_offset_hours: Optional[int] = None) -> Optional[float]:
    """
    Epoch seconds for a gateway timestamp.

    Accepts epoch numbers and ISO-like strings ("2026-10-18 12:00:00"); naive strings are
    read in the gateway's local offset. Returns None for anything unparsable.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    try:
        parsed = datetime.fromisoformat(str(raw).strip().replace(" ", "T", 1))
    except ValueError:
        logger.warning(f"⚠️ GATEWAY_TIME_UNPARSABLE: {raw!r}")
        return None
    if parsed.tzinfo is None:
        offset = Config.GATEWAY_UTC_OFFSET_HOURS if utc_offset_hours is None else utc_offset_hours
        parsed = parsed.replace(tzinfo=timezone(timedelta(hours=offset)))
    return parsed.timestamp()


@dataclass
class PaymentIntent:
    id: str
    payload: str  # QR string the user scans
    fee: int
    nominal: int
    credit_amount: int
    expires_at: Optional[str] = None


@dataclass
class GatewayResult:
    """Success/failure envelope; gateway calls never raise"""
    success: bool
    data: Any = None
    error: Optional[str] = None


class CiaaTopUpGateway:
    """QRIS payment intents over the CiaaTopUp H2H API"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 method: Optional[str] = None, max_retries: int = 3, retry_delay: float = 2.0):
        self.api_key = api_key if api_key is not None else Config.CIAATOPUP_API_KEY
        self.base_url = (base_url or Config.CIAATOPUP_BASE_URL).rstrip("/")
        self.method = method or Config.CIAATOPUP_METHOD
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = Config.GATEWAY_TIMEOUT_SECONDS

        if not self.api_key:
            logger.warning("CiaaTopUp API key not configured - deposits will fail")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "X-APIKEY": self.api_key or "",
            "Content-Type": "application/json",
        }

    async def _get(self, endpoint: str, params: Dict[str, Any], timeout: Optional[int] = None) -> Dict[str, Any]:
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(
                f"{self.base_url}/{endpoint}", params=params, headers=self._get_headers()
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise aiohttp.ClientResponseError(
                        response.request_info, response.history,
                        status=response.status, message=error_text[:200],
                    )
                return await response.json(content_type=None)

    async def create_intent(self, amount: int) -> GatewayResult:
        """
        Create a QRIS payment intent.

        Args:
            amount: Nominal the user wants to pay

        Returns:
            GatewayResult with a PaymentIntent on success
        """
        last_error = "unknown error"
        for attempt in range(1, self.max_retries + 1):
            try:
                body = await self._get("create", {"nominal": str(amount), "metode": self.method}) or {}
                data = body.get("data") or {}
                if body.get("success") is True and data.get("qr_string"):
                    intent = PaymentIntent(
                        id=str(data["id"]),
                        payload=data["qr_string"],
                        fee=int(data.get("fee", 0) or 0),
                        nominal=int(data.get("nominal", amount) or amount),
                        credit_amount=int(data.get("get_balance", amount) or amount),
                        expires_at=data.get("expired_at"),
                    )
                    logger.info(f"🧾 GATEWAY_INTENT_CREATED: trx={intent.id} nominal={amount}")
                    return GatewayResult(success=True, data=intent)
                last_error = str(body.get("message") or body)
                logger.warning(f"⚠️ GATEWAY_CREATE_REJECTED: attempt {attempt}/{self.max_retries}: {last_error}")
            except _REPLY_ERRORS as e:
                last_error = str(e) or e.__class__.__name__
                logger.error(f"❌ GATEWAY_CREATE_ERROR: attempt {attempt}/{self.max_retries}: {last_error}")

            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay * attempt)

        return GatewayResult(success=False, error=last_error)

    async def check_status(self, trx_id: str) -> GatewayResult:
        """data: GatewayStatus; an unknown or unreachable status is a failed envelope"""
        try:
            body = await self._get("status", {"id": trx_id}, timeout=5)
            raw = ((body or {}).get("data") or {}).get("status")
            status = normalize_status(raw)
            if status is None:
                return GatewayResult(success=False, error=f"unknown status {raw!r}")
            return GatewayResult(success=True, data=status)
        except _REPLY_ERRORS as e:
            logger.warning(f"⚠️ GATEWAY_STATUS_ERROR: trx={trx_id}: {e}")
            return GatewayResult(success=False, error=str(e) or e.__class__.__name__)

    async def cancel_intent(self, trx_id: str) -> GatewayResult:
        try:
            body = await self._get("cancel", {"id": trx_id}, timeout=5)
            success = bool(body) and body.get("success") is True
            logger.info(f"🚫 GATEWAY_INTENT_CANCEL: trx={trx_id} success={success}")
            return GatewayResult(success=success, data=body)
        except _REPLY_ERRORS as e:
            logger.warning(f"⚠️ GATEWAY_CANCEL_ERROR: trx={trx_id}: {e}")
            return GatewayResult(success=False, error=str(e) or e.__class__.__name__)
