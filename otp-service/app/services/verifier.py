from datetime import datetime
from typing import Callable, Optional

from app.schemas.otp import OtpVerify, OtpVerifyResponse
from app.services.record_store import RecordStore, VerificationRecord
from app.utils.clock import utcnow
from app.utils.exceptions import ErrorCode, StoreUnavailableError
from app.utils.logger import get_logger
from app.utils.security import create_verification_token, verify_code

logger = get_logger(__name__)


class OtpVerifier:
    """
    Checks submitted codes against verification records.

    An attempt is reserved before the code is compared, so every submission
    counts against max_attempts (the successful one included) and parallel
    guesses cannot exceed the limit. The final used flag is set with a
    compare-and-set on the matched code hash, so of two concurrent correct
    submissions exactly one succeeds and a code replaced by a resend never
    does.
    """

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    @staticmethod
    def _failure(message: str, error_code: Optional[ErrorCode] = None, **fields) -> OtpVerifyResponse:
        return OtpVerifyResponse(
            success=False,
            message=message,
            error_code=error_code.value if error_code else None,
            **fields
        )

    def _exhausted(self, record: VerificationRecord) -> OtpVerifyResponse:
        if record.fallback_channels:
            next_channel = record.fallback_channels[0]
            return self._failure(
                f"Invalid OTP. Maximum attempts reached. Request a new code via {next_channel.value}.",
                ErrorCode.MAX_ATTEMPTS_EXCEEDED,
                can_retry=False,
                suggest_fallback=True,
                next_fallback_channel=next_channel,
                remaining_attempts=0
            )
        return self._failure(
            "Invalid OTP. Maximum attempts reached. Please request a new OTP.",
            ErrorCode.MAX_ATTEMPTS_EXCEEDED,
            can_retry=False,
            suggest_fallback=False,
            remaining_attempts=0
        )

    async def verify(self, request: OtpVerify) -> OtpVerifyResponse:
        try:
            return await self._verify(request)
        except StoreUnavailableError as e:
            logger.error(f"Record store failed during verification: {e}")
            return self._failure(
                "No valid OTP found. Please request a new OTP.",
                ErrorCode.EXPIRED_OR_NOT_FOUND,
                can_retry=False
            )

    async def _verify(self, request: OtpVerify) -> OtpVerifyResponse:
        now = self.clock()
        key = request.otp_id if request.otp_id is not None else request.identifier.value

        candidates = await self.store.get_by_id_or_identifier(key, request.purpose, now, request.channel)
        if not candidates:
            return self._failure(
                "No valid OTP found. Please request a new OTP.",
                ErrorCode.EXPIRED_OR_NOT_FOUND,
                can_retry=False
            )

        record = candidates[0]

        attempts = await self.store.increment_attempts(record.id)
        if attempts is None:
            current = await self.store.get(record.id) or record
            if current.used:
                return self._failure("OTP has already been used", ErrorCode.ALREADY_USED, can_retry=False)
            return self._exhausted(current)

        if not verify_code(request.code, record.code_hash):
            remaining = record.max_attempts - attempts
            if remaining > 0:
                return self._failure(
                    f"Invalid OTP. {remaining} attempt{'s' if remaining != 1 else ''} remaining.",
                    can_retry=True,
                    remaining_attempts=remaining
                )
            logger.info(f"OTP {record.id} exhausted after {attempts} attempts")
            return self._exhausted(record)

        if not await self.store.mark_used(record.id, record.code_hash, self.clock()):
            current = await self.store.get(record.id)
            if current is None or not current.used:
                # code replaced or record expired since the lookup
                return self._failure(
                    "This OTP is no longer valid. Please use the latest code sent to you.",
                    ErrorCode.EXPIRED_OR_NOT_FOUND,
                    can_retry=False
                )
            return self._failure("OTP has already been used", ErrorCode.ALREADY_USED, can_retry=False)

        token = None
        if record.associated_user_id:
            token = create_verification_token(record.associated_user_id, record.id, record.purpose.value)

        logger.info(f"OTP {record.id} verified for {record.purpose.value}")
        return OtpVerifyResponse(
            success=True,
            message="OTP verified successfully",
            token=token,
            user_id=record.associated_user_id
        )
