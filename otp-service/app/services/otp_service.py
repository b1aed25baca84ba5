import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from app.config import settings
from app.schemas.otp import (
    Channel, CHANNEL_CONTACT_KIND, IdentifierKind, OtpRequest,
    OtpResendResponse, OtpResponse, OtpStatusResponse
)
from app.services.channel_policy import ChannelPolicy, is_deliverable
from app.services.code_generator import code_length_for, generate_code
from app.services.delivery import ChannelDispatcher, purpose_ttl_minutes
from app.services.record_store import RecordStore, VerificationRecord
from app.utils.clock import utcnow
from app.utils.exceptions import ErrorCode, OtpError
from app.utils.logger import get_logger, mask_identifier
from app.utils.security import hash_code

logger = get_logger(__name__)


class OtpService:
    """Generates, delivers, re-sends and reports on OTP verification records"""

    def __init__(
        self,
        store: RecordStore,
        dispatcher: ChannelDispatcher,
        policy: Optional[ChannelPolicy] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.policy = policy or ChannelPolicy()
        self.clock = clock

    async def _apply(self, record: VerificationRecord, values: Dict[str, Any]) -> bool:
        """Persist field changes and mirror them on the in-hand record"""
        updated = await self.store.update(record.id, values)
        if updated:
            for name, value in values.items():
                setattr(record, name, value)
        return updated

    def _resend_wait(self, record: VerificationRecord, now: datetime) -> int:
        if record.last_sent_at is None:
            return 0
        elapsed = (now - record.last_sent_at).total_seconds()
        return max(0, math.ceil(settings.OTP_RESEND_MIN_INTERVAL_SECONDS - elapsed))

    async def generate(self, request: OtpRequest) -> OtpResponse:
        """Create a verification record and deliver its code, falling back across channels"""
        phone = request.contact(IdentifierKind.PHONE)
        email = request.contact(IdentifierKind.EMAIL)

        preferred = request.preferred_channel
        if preferred is not None and not is_deliverable(preferred, bool(phone), bool(email)):
            raise OtpError(
                ErrorCode.VALIDATION_ERROR,
                f"A {CHANNEL_CONTACT_KIND[preferred].value} identifier is required for {preferred.value} delivery",
                {"preferred_channel": preferred.value}
            )

        primary, fallbacks = self.policy.select_channels(preferred, bool(phone), bool(email))

        code = generate_code(code_length_for(primary))
        now = self.clock()
        ttl_minutes = request.ttl_minutes or purpose_ttl_minutes(request.purpose)
        expires_at = now + timedelta(minutes=ttl_minutes)

        primary_kind = CHANNEL_CONTACT_KIND[primary]
        record = VerificationRecord(
            identifier=phone if primary_kind == IdentifierKind.PHONE else email,
            secondary_identifier=email if primary_kind == IdentifierKind.PHONE else phone,
            code_hash=hash_code(code),
            purpose=request.purpose,
            channel=primary,
            fallback_channels=list(fallbacks),
            max_attempts=settings.OTP_MAX_ATTEMPTS,
            created_at=now,
            # not verifiable until a channel has delivered the code
            expires_at=now,
            associated_user_id=request.user_id,
            associated_order_id=request.order_id,
        )

        await self.store.put(record)

        failures: Dict[str, Optional[str]] = {}
        outcome = await self.dispatcher.send(primary, record.identifier, code, request.purpose, ttl_minutes)
        if not outcome.success:
            failures[primary.value] = outcome.error
            for channel in fallbacks:
                await self._apply(record, record.switched_to(channel))
                outcome = await self.dispatcher.send(channel, record.identifier, code, request.purpose, ttl_minutes)
                if outcome.success:
                    break
                failures[channel.value] = outcome.error

        if not outcome.success:
            logger.error(
                f"OTP {record.id} for {mask_identifier(phone or email)} could not be delivered: {failures}"
            )
            raise OtpError(
                ErrorCode.DELIVERY_FAILED,
                "Failed to deliver OTP on any channel. Please try again later.",
                {"channels": failures}
            )

        superseded = await self.store.supersede(record.contacts(), request.purpose, now, exclude_id=record.id)
        if superseded:
            logger.info(f"Superseded {superseded} earlier {request.purpose.value} OTP(s)")
        await self._apply(record, {"expires_at": expires_at, "last_sent_at": self.clock()})

        fallback_used = record.channel != primary
        if fallback_used:
            message = f"OTP sent via {record.channel.value} after {primary.value} delivery failed"
        else:
            message = f"OTP sent via {record.channel.value}"

        return OtpResponse(
            success=True,
            otp_id=record.id,
            channel=record.channel,
            message=message,
            fallback_available=bool(record.fallback_channels),
            fallback_used=fallback_used,
            expires_at=expires_at,
            expires_in=int((expires_at - now).total_seconds())
        )

    async def resend(self, otp_id: uuid.UUID, channel: Channel) -> OtpResendResponse:
        """Issue a fresh code for an existing record on the requested channel"""
        record = await self.store.get(otp_id)
        if record is None:
            raise OtpError(ErrorCode.NOT_FOUND, "OTP not found")
        if record.used:
            raise OtpError(ErrorCode.ALREADY_USED, "OTP has already been verified")

        now = self.clock()
        retry_after = self._resend_wait(record, now)
        if retry_after:
            raise OtpError(
                ErrorCode.RATE_LIMITED,
                f"Please wait {retry_after} seconds before requesting another code",
                {"retry_after": retry_after}
            )

        phone = record.contact_for(IdentifierKind.PHONE)
        email = record.contact_for(IdentifierKind.EMAIL)
        if not is_deliverable(channel, bool(phone), bool(email)):
            raise OtpError(
                ErrorCode.VALIDATION_ERROR,
                f"No {CHANNEL_CONTACT_KIND[channel].value} on record for {channel.value} delivery",
                {"channel": channel.value}
            )

        ttl_minutes = purpose_ttl_minutes(record.purpose)
        code = generate_code(code_length_for(channel))
        destination = record.contact_for(CHANNEL_CONTACT_KIND[channel])
        outcome = await self.dispatcher.send(channel, destination, code, record.purpose, ttl_minutes)
        if not outcome.success:
            raise OtpError(
                ErrorCode.DELIVERY_FAILED,
                f"Failed to resend OTP via {channel.value}",
                {"channels": {channel.value: outcome.error}}
            )

        expires_at = now + timedelta(minutes=ttl_minutes)
        values = record.switched_to(channel)
        values.update({
            "code_hash": hash_code(code),
            "attempts": 0,
            "expires_at": expires_at,
            "last_sent_at": now,
        })
        if not await self._apply(record, values):
            # verified between the lookup and the re-issue
            raise OtpError(ErrorCode.ALREADY_USED, "OTP has already been verified")

        await self.store.supersede(record.contacts(), record.purpose, now, exclude_id=record.id)

        return OtpResendResponse(
            success=True,
            message=f"OTP resent via {channel.value}",
            channel=channel,
            expires_at=expires_at,
            expires_in=int((expires_at - now).total_seconds())
        )

    def _status(self, record: VerificationRecord) -> OtpStatusResponse:
        now = self.clock()
        return OtpStatusResponse(
            otp_id=record.id,
            state=record.state(now),
            verified=record.used,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            channel=record.channel,
            expires_at=record.expires_at,
            can_resend=record.is_active(now),
            resend_available_in=self._resend_wait(record, now),
            available_fallbacks=list(record.fallback_channels)
        )

    async def status(self, otp_id: uuid.UUID) -> OtpStatusResponse:
        record = await self.store.get(otp_id)
        if record is None:
            raise OtpError(ErrorCode.NOT_FOUND, "OTP not found")
        return self._status(record)

    async def status_for_order(self, order_id: uuid.UUID) -> OtpStatusResponse:
        """Status of the most recent OTP issued for an agent order"""
        record = await self.store.find_latest_by_order(order_id)
        if record is None:
            raise OtpError(ErrorCode.NOT_FOUND, "No OTP found for this order")
        return self._status(record)
