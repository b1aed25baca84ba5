from typing import List, Tuple, Optional

from app.config import settings
from app.schemas.otp import Channel, CHANNEL_CONTACT_KIND, IdentifierKind
from app.utils.exceptions import ErrorCode, OtpError

FALLBACK_ORDER = (Channel.SMS, Channel.EMAIL, Channel.WHATSAPP)
DEFAULT_PRIORITY = (Channel.SMS, Channel.EMAIL)


def is_deliverable(channel: Channel, has_phone: bool, has_email: bool) -> bool:
    if CHANNEL_CONTACT_KIND[channel] == IdentifierKind.PHONE:
        return has_phone
    return has_email


class ChannelPolicy:
    """Picks the primary channel and the ordered fallbacks for a request"""

    def __init__(self, whatsapp_fallback: Optional[bool] = None):
        if whatsapp_fallback is None:
            whatsapp_fallback = settings.OTP_WHATSAPP_FALLBACK_ENABLED
        self.whatsapp_fallback = whatsapp_fallback

    def select_channels(
        self,
        preferred: Optional[Channel],
        has_phone: bool,
        has_email: bool
    ) -> Tuple[Channel, List[Channel]]:
        if preferred is not None and is_deliverable(preferred, has_phone, has_email):
            primary = preferred
        else:
            # WhatsApp is never picked as a default primary: it needs an opted-in template
            primary = next(
                (channel for channel in DEFAULT_PRIORITY if is_deliverable(channel, has_phone, has_email)),
                None
            )

        if primary is None:
            raise OtpError(
                ErrorCode.NO_DELIVERY_METHOD,
                "No contact method available for OTP delivery"
            )

        fallbacks = [
            channel for channel in FALLBACK_ORDER
            if channel != primary
            and is_deliverable(channel, has_phone, has_email)
            and (channel != Channel.WHATSAPP or self.whatsapp_fallback)
        ]
        return primary, fallbacks
