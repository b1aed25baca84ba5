import re
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, Field, field_validator, model_validator

PHONE_PATTERN = re.compile(r"^\+?\d{10,15}$")


class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"
    WHATSAPP = "whatsapp"


class Purpose(str, Enum):
    SIGNUP = "signup"
    PASSWORD_RECOVERY = "password_recovery"
    LOGIN_SECOND_FACTOR = "login_second_factor"
    AGENT_ORDER_VERIFICATION = "agent_order_verification"


class IdentifierKind(str, Enum):
    PHONE = "phone"
    EMAIL = "email"


class RecordState(str, Enum):
    PENDING = "pending"
    AWAITING_FALLBACK_RESEND = "awaiting_fallback_resend"
    EXHAUSTED = "exhausted"
    VERIFIED = "verified"
    EXPIRED = "expired"


# Contact kind each channel delivers to
CHANNEL_CONTACT_KIND = {
    Channel.SMS: IdentifierKind.PHONE,
    Channel.WHATSAPP: IdentifierKind.PHONE,
    Channel.EMAIL: IdentifierKind.EMAIL,
}


def normalize_phone(value: str) -> str:
    return re.sub(r"[\s\-()]", "", value)


class ContactIdentifier(BaseModel):
    kind: IdentifierKind
    value: str

    @model_validator(mode="after")
    def check_value(self):
        if self.kind == IdentifierKind.PHONE:
            phone = normalize_phone(self.value)
            if not PHONE_PATTERN.match(phone):
                raise ValueError("phone must contain 10 to 15 digits")
            self.value = phone
        else:
            try:
                email = validate_email(self.value.strip(), check_deliverability=False)
            except EmailNotValidError as e:
                raise ValueError(str(e))
            self.value = email.normalized.lower()
        return self


class OtpRequest(BaseModel):
    identifiers: List[ContactIdentifier] = Field(min_length=1, max_length=2)
    purpose: Purpose
    preferred_channel: Optional[Channel] = None
    user_id: Optional[uuid.UUID] = None
    order_id: Optional[uuid.UUID] = None
    ttl_minutes: Optional[int] = Field(default=None, ge=1, le=60)

    @field_validator("identifiers")
    @classmethod
    def one_identifier_per_kind(cls, identifiers: List[ContactIdentifier]):
        kinds = [identifier.kind for identifier in identifiers]
        if len(kinds) != len(set(kinds)):
            raise ValueError("at most one identifier per kind")
        return identifiers

    def contact(self, kind: IdentifierKind) -> Optional[str]:
        for identifier in self.identifiers:
            if identifier.kind == kind:
                return identifier.value
        return None


class OtpVerify(BaseModel):
    otp_id: Optional[uuid.UUID] = None
    identifier: Optional[ContactIdentifier] = None
    purpose: Purpose
    code: str = Field(pattern=r"^\d{4,8}$")
    channel: Optional[Channel] = None

    @model_validator(mode="after")
    def check_key(self):
        if (self.otp_id is None) == (self.identifier is None):
            raise ValueError("exactly one of otp_id or identifier is required")
        return self


class OtpResend(BaseModel):
    otp_id: uuid.UUID
    channel: Channel


class OtpResponse(BaseModel):
    success: bool
    otp_id: uuid.UUID
    channel: Channel
    message: str
    fallback_available: bool
    fallback_used: bool = False
    expires_at: datetime
    expires_in: int


class OtpResendResponse(BaseModel):
    success: bool
    message: str
    channel: Channel
    expires_at: Optional[datetime] = None
    expires_in: Optional[int] = None


class OtpVerifyResponse(BaseModel):
    success: bool
    message: str
    error_code: Optional[str] = None
    can_retry: Optional[bool] = None
    suggest_fallback: Optional[bool] = None
    next_fallback_channel: Optional[Channel] = None
    remaining_attempts: Optional[int] = None
    token: Optional[str] = None
    user_id: Optional[uuid.UUID] = None


class OtpStatusResponse(BaseModel):
    otp_id: uuid.UUID
    state: RecordState
    verified: bool
    attempts: int
    max_attempts: int
    channel: Channel
    expires_at: datetime
    can_resend: bool
    resend_available_in: int
    available_fallbacks: List[Channel]


class ErrorResponse(BaseModel):
    success: bool = False
    code: str
    message: str
    details: Dict[str, Any] = {}
