import random
import secrets

from app.config import settings
from app.schemas.otp import Channel, CHANNEL_CONTACT_KIND, IdentifierKind
from app.utils.logger import get_logger

logger = get_logger(__name__)

SUPPORTED_LENGTHS = (4, 6)


def generate_code(length: int = 6) -> str:
    """
    Generate a numeric OTP uniformly distributed over
    [10^(length-1), 10^length - 1].

    Uses the platform CSPRNG; if it is unavailable the code is drawn from
    the `random` module instead and the degradation is logged.
    """
    if length not in SUPPORTED_LENGTHS:
        raise ValueError(f"Unsupported OTP length: {length}")

    low = 10 ** (length - 1)
    span = 9 * low
    try:
        value = low + secrets.randbelow(span)
    except NotImplementedError:
        # os.urandom has no entropy source on this platform
        logger.warning("Secure random source unavailable, falling back to pseudo-random OTP generation")
        value = low + random.randrange(span)
    return str(value)


def code_length_for(channel: Channel) -> int:
    """Phone channels use the short code the SMS templates expect"""
    if CHANNEL_CONTACT_KIND[channel] == IdentifierKind.PHONE:
        return settings.OTP_PHONE_CODE_LENGTH
    return settings.OTP_EMAIL_CODE_LENGTH
