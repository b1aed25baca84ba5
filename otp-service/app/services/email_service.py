import os
from typing import Optional, Tuple

from fastapi_mail import ConnectionConfig, FastMail, MessageSchema
from fastapi_mail.errors import ConnectionErrors

from app.config import settings
from app.schemas.otp import Purpose
from app.services.delivery import DeliveryOutcome, purpose_label, purpose_ttl_minutes
from app.utils.logger import get_logger, mask_identifier

logger = get_logger(__name__)


class EmailService:
    """Service for sending OTP emails"""

    def __init__(self):
        # Path to email templates
        current_dir = os.path.dirname(os.path.abspath(__file__))
        self.templates_dir = os.path.join(os.path.dirname(current_dir), "templates")

    @staticmethod
    def connection_config() -> ConnectionConfig:
        return ConnectionConfig(
            MAIL_USERNAME=settings.MAIL_USERNAME,
            MAIL_PASSWORD=settings.MAIL_PASSWORD,
            MAIL_FROM=settings.MAIL_FROM,
            MAIL_FROM_NAME=settings.MAIL_FROM_NAME,
            MAIL_PORT=settings.MAIL_PORT,
            MAIL_SERVER=settings.MAIL_SERVER,
            MAIL_STARTTLS=settings.MAIL_STARTTLS,
            MAIL_SSL_TLS=settings.MAIL_SSL_TLS,
            USE_CREDENTIALS=bool(settings.MAIL_USERNAME),
            VALIDATE_CERTS=True
        )

    def subject_for(self, purpose: Purpose) -> str:
        return f"Your {purpose_label(purpose)} code"

    def render(self, otp_code: str, purpose: Purpose, expires_minutes: Optional[int] = None) -> Tuple[str, str]:
        """
        Render the OTP email body.

        Returns (body, subtype); a plain-text body is used when the
        template cannot be read.
        """
        label = purpose_label(purpose)
        expires_minutes = expires_minutes or purpose_ttl_minutes(purpose)
        template_path = os.path.join(self.templates_dir, "otp_email.html")
        try:
            with open(template_path, "r", encoding="utf-8") as f:
                template = f.read()
        except OSError as e:
            logger.warning(f"Error reading email template: {e}")
            return (
                f"Your verification code for {label} is: {otp_code}. "
                f"This code is valid for {expires_minutes} minutes.",
                "plain"
            )

        html_content = (
            template
            .replace("{otp_code}", otp_code)
            .replace("{purpose_label}", label)
            .replace("{expires_minutes}", str(expires_minutes))
        )
        return html_content, "html"

    async def send(
        self, destination: str, code: str, purpose: Purpose, expires_minutes: Optional[int] = None
    ) -> DeliveryOutcome:
        body, subtype = self.render(code, purpose, expires_minutes)
        if settings.OTP_DELIVERY_DRY_RUN:
            logger.debug(f"[dry run] Email OTP {code} for {purpose.value} to {destination}")
            return DeliveryOutcome(success=True, provider="dry-run")

        message = MessageSchema(
            subject=self.subject_for(purpose),
            recipients=[destination],
            body=body,
            subtype=subtype
        )
        try:
            await FastMail(self.connection_config()).send_message(message)
        except ConnectionErrors as e:
            logger.error(f"Error sending OTP email to {mask_identifier(destination)}: {e}")
            return DeliveryOutcome(success=False, provider="smtp", error=str(e))

        return DeliveryOutcome(success=True, provider="smtp")
