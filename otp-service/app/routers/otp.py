from typing import List
import uuid

from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.dependencies import get_otp_service, get_resend_limiter, get_send_limiter, get_verifier
from app.schemas.otp import (
    ErrorResponse, OtpRequest, OtpResend, OtpResendResponse, OtpResponse,
    OtpStatusResponse, OtpVerify, OtpVerifyResponse
)
from app.services.otp_service import OtpService
from app.services.verifier import OtpVerifier
from app.utils.exceptions import ErrorCode, OtpError, StoreUnavailableError
from app.utils.logger import get_logger
from app.utils.rate_limit import RateLimiter

logger = get_logger(__name__)

router = APIRouter()

ERROR_STATUS = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NO_DELIVERY_METHOD: status.HTTP_400_BAD_REQUEST,
    ErrorCode.DELIVERY_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.EXPIRED_OR_NOT_FOUND: status.HTTP_400_BAD_REQUEST,
    ErrorCode.ALREADY_USED: status.HTTP_409_CONFLICT,
    ErrorCode.MAX_ATTEMPTS_EXCEEDED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
}

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def error_response(error: OtpError) -> JSONResponse:
    headers = None
    if error.code == ErrorCode.RATE_LIMITED and "retry_after" in error.details:
        headers = {"Retry-After": str(error.details["retry_after"])}
    return JSONResponse(
        status_code=ERROR_STATUS[error.code],
        content=error.to_dict(),
        headers=headers
    )


def store_unavailable(e: StoreUnavailableError) -> HTTPException:
    logger.error(f"OTP storage unavailable: {e}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="OTP storage is temporarily unavailable"
    )


async def enforce_rate_limit(limiter: RateLimiter, keys: List[str]):
    if settings.OTP_RATE_LIMIT_BYPASS:
        return
    for key in keys:
        result = await limiter.hit(key)
        if not result.allowed:
            raise OtpError(
                ErrorCode.RATE_LIMITED,
                "Too many OTP requests. Please try again later.",
                {"retry_after": result.retry_after}
            )


@router.post("/send", response_model=OtpResponse, responses=ERROR_RESPONSES)
async def send_otp(
    otp_request: OtpRequest,
    request: Request,
    otp_service: OtpService = Depends(get_otp_service),
    limiter: RateLimiter = Depends(get_send_limiter)
):
    """
    Generate an OTP and deliver it on the best available channel
    """
    client_ip = request.client.host if request.client else "0.0.0.0"
    keys = [f"{i.kind.value}:{i.value}" for i in otp_request.identifiers] + [f"ip:{client_ip}"]

    try:
        await enforce_rate_limit(limiter, keys)
        return await otp_service.generate(otp_request)
    except OtpError as e:
        return error_response(e)
    except StoreUnavailableError as e:
        raise store_unavailable(e)


@router.post("/verify", response_model=OtpVerifyResponse, responses={400: {"model": OtpVerifyResponse}})
async def verify_otp(
    verify_data: OtpVerify,
    verifier: OtpVerifier = Depends(get_verifier)
):
    """
    Verify OTP entered by user
    """
    result = await verifier.verify(verify_data)
    if not result.success:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=result.model_dump(mode="json")
        )
    return result


@router.post("/resend", response_model=OtpResendResponse, responses=ERROR_RESPONSES)
async def resend_otp(
    resend_data: OtpResend,
    otp_service: OtpService = Depends(get_otp_service),
    limiter: RateLimiter = Depends(get_resend_limiter)
):
    """
    Send a fresh code for an existing OTP, optionally on another channel
    """
    try:
        await enforce_rate_limit(limiter, [f"otp:{resend_data.otp_id}"])
        return await otp_service.resend(resend_data.otp_id, resend_data.channel)
    except OtpError as e:
        return error_response(e)
    except StoreUnavailableError as e:
        raise store_unavailable(e)


@router.get("/orders/{order_id}/status", response_model=OtpStatusResponse, responses={404: {"model": ErrorResponse}})
async def order_otp_status(
    order_id: uuid.UUID,
    otp_service: OtpService = Depends(get_otp_service)
):
    try:
        return await otp_service.status_for_order(order_id)
    except OtpError as e:
        return error_response(e)
    except StoreUnavailableError as e:
        raise store_unavailable(e)


@router.get("/{otp_id}/status", response_model=OtpStatusResponse, responses={404: {"model": ErrorResponse}})
async def otp_status(
    otp_id: uuid.UUID,
    otp_service: OtpService = Depends(get_otp_service)
):
    """
    Report attempts, expiry and resend availability of an OTP
    """
    try:
        return await otp_service.status(otp_id)
    except OtpError as e:
        return error_response(e)
    except StoreUnavailableError as e:
        raise store_unavailable(e)
