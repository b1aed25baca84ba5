import uuid
from sqlalchemy import Column, String, DateTime, Boolean, Integer, JSON, Index, Uuid
from app.utils.clock import utcnow
from app.database import Base

class OtpVerification(Base):
    __tablename__ = "otp_verifications"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    identifier = Column(String(255), nullable=False)
    secondary_identifier = Column(String(255), nullable=True, index=True)
    code_hash = Column(String(64), nullable=False)  # HMAC-SHA256 hex digest
    purpose = Column(String(40), nullable=False)  # signup/password_recovery/login_second_factor/agent_order_verification
    channel = Column(String(20), nullable=False)  # sms/email/whatsapp
    fallback_channels = Column(JSON, nullable=False, default=list)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    last_sent_at = Column(DateTime, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    associated_user_id = Column(Uuid(as_uuid=True), nullable=True)
    associated_order_id = Column(Uuid(as_uuid=True), nullable=True, index=True)

    __table_args__ = (
        Index("ix_otp_verifications_identifier_purpose", "identifier", "purpose"),
    )

    def __repr__(self):
        return f"<OtpVerification {self.id} {self.purpose} {self.channel}>"
