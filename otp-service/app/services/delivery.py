from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from app.config import settings
from app.schemas.otp import Channel, Purpose
from app.utils.logger import get_logger, mask_identifier

logger = get_logger(__name__)

# Human readable purpose, used in email subjects and message bodies
PURPOSE_LABELS = {
    Purpose.SIGNUP: "account verification",
    Purpose.PASSWORD_RECOVERY: "password reset",
    Purpose.LOGIN_SECOND_FACTOR: "2-factor authentication",
    Purpose.AGENT_ORDER_VERIFICATION: "order verification",
}


def purpose_label(purpose: Purpose) -> str:
    return PURPOSE_LABELS.get(purpose, purpose.value.replace("_", " "))


def purpose_ttl_minutes(purpose: Purpose) -> int:
    return settings.OTP_PURPOSE_TTL_MINUTES.get(purpose.value, settings.OTP_DEFAULT_TTL_MINUTES)


@dataclass
class DeliveryOutcome:
    success: bool
    provider: str
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class DeliveryAdapter(Protocol):
    """Anything that can push a code to one destination"""

    async def send(
        self, destination: str, code: str, purpose: Purpose, expires_minutes: Optional[int] = None
    ) -> DeliveryOutcome: ...


class ChannelDispatcher:
    """Routes a delivery to the adapter registered for a channel"""

    def __init__(self, adapters: Dict[Channel, DeliveryAdapter]):
        self.adapters = dict(adapters)

    async def send(
        self,
        channel: Channel,
        destination: str,
        code: str,
        purpose: Purpose,
        expires_minutes: Optional[int] = None
    ) -> DeliveryOutcome:
        adapter = self.adapters.get(channel)
        if adapter is None:
            return DeliveryOutcome(success=False, provider="none", error=f"{channel.value} channel not configured")

        try:
            outcome = await adapter.send(destination, code, purpose, expires_minutes=expires_minutes)
        except Exception as e:
            logger.exception(f"{channel.value} adapter raised while sending to {mask_identifier(destination)}")
            return DeliveryOutcome(success=False, provider=type(adapter).__name__, error=str(e) or type(e).__name__)

        if outcome.success:
            logger.info(f"OTP delivered via {channel.value} ({outcome.provider}) to {mask_identifier(destination)}")
        else:
            logger.warning(
                f"OTP delivery via {channel.value} ({outcome.provider}) to "
                f"{mask_identifier(destination)} failed: {outcome.error}"
            )
        return outcome
