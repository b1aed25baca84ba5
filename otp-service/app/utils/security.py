import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone

import jwt

from app.config import settings


def hash_code(code: str) -> str:
    """Keyed digest of an OTP code; the code itself is never persisted"""
    return hmac.new(
        settings.OTP_HASH_SECRET.encode(),
        code.encode(),
        hashlib.sha256,
    ).hexdigest()


def verify_code(code: str, code_hash: str) -> bool:
    return hmac.compare_digest(hash_code(code), code_hash)


def create_verification_token(user_id: uuid.UUID, otp_id: uuid.UUID, purpose: str) -> str:
    """Create a short-lived JWT proving that an OTP was verified"""
    payload = {
        "sub": str(user_id),
        "otp_id": str(otp_id),
        "purpose": purpose,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=settings.VERIFICATION_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm="HS256")


def decode_verification_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=["HS256"])
