import asyncio
import re
from typing import Any, Dict, Optional

import aiohttp

from app.config import settings
from app.schemas.otp import Purpose
from app.services.delivery import DeliveryOutcome
from app.utils.logger import get_logger, mask_identifier

logger = get_logger(__name__)


def build_otp_template(otp_code: str, phone_number: str, template_name: str) -> Dict[str, Any]:
    """
    Build the authentication template payload.

    The code goes into the body text and into the copy-code URL button.
    """
    return {
        "messaging_product": "whatsapp",
        "to": phone_number,
        "type": "template",
        "template": {
            "name": template_name,
            "language": {"code": "en"},
            "components": [
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": otp_code}],
                },
                {
                    "type": "button",
                    "sub_type": "url",
                    "index": "0",
                    "parameters": [{"type": "text", "text": otp_code}],
                },
            ],
        },
    }


class WhatsAppClient:
    """Sends OTP codes as WhatsApp Cloud API template messages"""

    def __init__(self):
        self.phone_number_id = settings.WHATSAPP_PHONE_NUMBER_ID
        self.access_token = settings.WHATSAPP_ACCESS_TOKEN
        self.template_name = settings.WHATSAPP_OTP_TEMPLATE
        self.base_url = f"https://graph.facebook.com/{settings.WHATSAPP_GRAPH_API_VERSION}"
        self.country = settings.SMS_DEFAULT_COUNTRY
        self.timeout = aiohttp.ClientTimeout(total=settings.DELIVERY_TIMEOUT_SECONDS)

    def normalize_phone(self, phone_number: str) -> str:
        digits = re.sub(r"\D", "", phone_number)
        if self.country and not digits.startswith(self.country):
            digits = f"{self.country}{digits}"
        return digits

    async def send(
        self, destination: str, code: str, purpose: Purpose, expires_minutes: Optional[int] = None
    ) -> DeliveryOutcome:
        phone_number = self.normalize_phone(destination)
        if settings.OTP_DELIVERY_DRY_RUN:
            logger.debug(f"[dry run] WhatsApp OTP {code} for {purpose.value} to {phone_number}")
            return DeliveryOutcome(success=True, provider="dry-run")

        if not self.access_token or not self.phone_number_id:
            logger.error("WhatsApp access token or phone number id not configured")
            return DeliveryOutcome(success=False, provider="whatsapp", error="WhatsApp service not configured")

        url = f"{self.base_url}/{self.phone_number_id}/messages"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        payload = build_otp_template(code, phone_number, self.template_name)

        logger.info(f"Sending WhatsApp OTP to: {mask_identifier(phone_number)}")
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=payload, headers=headers) as response:
                    response_data = await response.json(content_type=None)
                    if response.status == 200:
                        message_id = (response_data.get("messages") or [{}])[0].get("id")
                        return DeliveryOutcome(success=True, provider="whatsapp", provider_message_id=message_id)

                    error_message = (response_data.get("error") or {}).get("message", "Unknown error")
                    return DeliveryOutcome(
                        success=False,
                        provider="whatsapp",
                        error=f"{response.status}: {error_message}"
                    )
        except asyncio.TimeoutError:
            return DeliveryOutcome(success=False, provider="whatsapp", error="Request timeout while sending OTP")
        except (aiohttp.ClientError, ValueError) as e:
            return DeliveryOutcome(success=False, provider="whatsapp", error=f"Failed to send OTP: {e!r}")
