from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.schemas.otp import Channel
from app.services.channel_policy import ChannelPolicy
from app.services.delivery import ChannelDispatcher
from app.services.email_service import EmailService
from app.services.otp_service import OtpService
from app.services.record_store import InMemoryRecordStore, RecordStore, ResilientRecordStore, SqlRecordStore
from app.services.verifier import OtpVerifier
from app.utils.rate_limit import CounterStore, InMemoryCounterStore, RateLimiter, RedisCounterStore
from app.utils.sms_client import SmsClient
from app.utils.whatsapp_client import WhatsAppClient

# Degraded-mode records live here for the lifetime of the process
memory_store = InMemoryRecordStore()


def get_record_store(db: AsyncSession = Depends(get_db)) -> RecordStore:
    return ResilientRecordStore(SqlRecordStore(db), memory_store)


@lru_cache()
def get_dispatcher() -> ChannelDispatcher:
    return ChannelDispatcher({
        Channel.SMS: SmsClient(),
        Channel.EMAIL: EmailService(),
        Channel.WHATSAPP: WhatsAppClient(),
    })


@lru_cache()
def get_channel_policy() -> ChannelPolicy:
    return ChannelPolicy()


def get_otp_service(
    store: RecordStore = Depends(get_record_store),
    dispatcher: ChannelDispatcher = Depends(get_dispatcher),
    policy: ChannelPolicy = Depends(get_channel_policy)
) -> OtpService:
    return OtpService(store, dispatcher, policy)


def get_verifier(store: RecordStore = Depends(get_record_store)) -> OtpVerifier:
    return OtpVerifier(store)


@lru_cache()
def get_counter_store() -> CounterStore:
    if settings.REDIS_URL:
        return RedisCounterStore(settings.REDIS_URL)
    return InMemoryCounterStore()


def get_send_limiter(counters: CounterStore = Depends(get_counter_store)) -> RateLimiter:
    return RateLimiter(
        counters,
        settings.OTP_RATE_LIMIT_MAX_REQUESTS,
        settings.OTP_RATE_LIMIT_WINDOW_SECONDS,
        prefix="otp_send"
    )


def get_resend_limiter(counters: CounterStore = Depends(get_counter_store)) -> RateLimiter:
    return RateLimiter(
        counters,
        settings.OTP_RESEND_RATE_LIMIT_MAX_REQUESTS,
        settings.OTP_RATE_LIMIT_WINDOW_SECONDS,
        prefix="otp_resend"
    )
