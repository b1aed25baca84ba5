import asyncio
import re
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp

from app.config import settings
from app.schemas.otp import Purpose
from app.services.delivery import DeliveryOutcome
from app.utils.logger import get_logger, mask_identifier

logger = get_logger(__name__)


class SmsClient:
    """Sends OTP codes over SMS through 2Factor or MSG91"""

    MSG91_BASE_URL = "https://api.msg91.com/api/v5"

    def __init__(self, provider: Optional[str] = None):
        self.provider = (provider or settings.SMS_PROVIDER).lower()
        self.country = settings.SMS_DEFAULT_COUNTRY
        self.twofactor_api_key = settings.TWOFACTOR_API_KEY
        self.twofactor_base_url = settings.TWOFACTOR_BASE_URL.rstrip("/")
        self.twofactor_template = settings.TWOFACTOR_TEMPLATE
        self.msg91_auth_key = settings.MSG91_AUTH_KEY
        self.msg91_template_id = settings.MSG91_TEMPLATE_ID
        self.timeout = aiohttp.ClientTimeout(total=settings.DELIVERY_TIMEOUT_SECONDS)

    def normalize_mobile(self, phone_number: str) -> str:
        """Digits only, prefixed with the default country code"""
        digits = re.sub(r"\D", "", phone_number)
        if digits.startswith("0"):
            digits = digits[1:]
        if self.country and not digits.startswith(self.country):
            digits = f"{self.country}{digits}"
        return digits

    async def send(
        self, destination: str, code: str, purpose: Purpose, expires_minutes: Optional[int] = None
    ) -> DeliveryOutcome:
        mobile = self.normalize_mobile(destination)
        if settings.OTP_DELIVERY_DRY_RUN:
            logger.debug(f"[dry run] SMS OTP {code} for {purpose.value} to {mobile}")
            return DeliveryOutcome(success=True, provider="dry-run")

        if self.provider == "msg91":
            return await self._send_msg91(mobile, code)
        return await self._send_twofactor(mobile, code)

    async def _send_twofactor(self, mobile: str, code: str) -> DeliveryOutcome:
        if not self.twofactor_api_key:
            return DeliveryOutcome(success=False, provider="2factor", error="Missing TWOFACTOR_API_KEY")

        url = (
            f"{self.twofactor_base_url}/API/V1/{quote(self.twofactor_api_key)}"
            f"/SMS/{quote(mobile)}/{quote(code)}/{quote(self.twofactor_template)}"
        )
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url) as response:
                    result = await self._read_json(response)
                    status = str(result.get("Status", "")).lower()
                    if response.status < 400 and status == "success":
                        return DeliveryOutcome(
                            success=True,
                            provider="2factor",
                            provider_message_id=result.get("Details")
                        )
                    error = result.get("Details") or response.reason or "Unknown error"
                    return DeliveryOutcome(success=False, provider="2factor", error=f"{response.status}: {error}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"2Factor request failed for {mask_identifier(mobile)}: {e!r}")
            return DeliveryOutcome(success=False, provider="2factor", error=f"API request failed: {e!r}")

    async def _send_msg91(self, mobile: str, code: str) -> DeliveryOutcome:
        if not self.msg91_auth_key:
            return DeliveryOutcome(success=False, provider="msg91", error="Missing MSG91_AUTH_KEY")

        url = f"{self.MSG91_BASE_URL}/otp"
        headers = {
            "authkey": self.msg91_auth_key,
            "Content-Type": "application/json"
        }
        payload = {
            "template_id": self.msg91_template_id,
            "mobile": mobile,
            "otp": code
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=payload, headers=headers) as response:
                    result = await self._read_json(response)
                    if result.get("type") == "success":
                        return DeliveryOutcome(
                            success=True,
                            provider="msg91",
                            provider_message_id=result.get("request_id")
                        )
                    error = result.get("message") or response.reason or "Unknown error"
                    return DeliveryOutcome(success=False, provider="msg91", error=f"{response.status}: {error}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"MSG91 request failed for {mask_identifier(mobile)}: {e!r}")
            return DeliveryOutcome(success=False, provider="msg91", error=f"API request failed: {e!r}")

    @staticmethod
    async def _read_json(response: aiohttp.ClientResponse) -> Dict[str, Any]:
        # both providers sometimes answer with text/plain bodies
        try:
            result = await response.json(content_type=None)
        except ValueError:
            return {"Details": await response.text()}
        return result if isinstance(result, dict) else {"Details": result}
