# tests/conftest.py

import os
from datetime import timedelta

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("OTP_DELIVERY_DRY_RUN", "true")
os.environ.setdefault("OTP_HASH_SECRET", "test-hash-secret")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import otp as otp_models  # noqa: F401
from app.schemas.otp import Channel, ContactIdentifier, IdentifierKind, OtpRequest, Purpose
from app.services.channel_policy import ChannelPolicy
from app.services.delivery import ChannelDispatcher, DeliveryOutcome
from app.services.otp_service import OtpService
from app.services.record_store import InMemoryRecordStore, SqlRecordStore
from app.services.verifier import OtpVerifier
from app.utils.clock import utcnow

PHONE = "+919876543210"
EMAIL = "shopper@example.com"


class FakeAdapter:
    """Delivery adapter that records what it was asked to send"""

    def __init__(self, provider: str, fail: bool = False):
        self.provider = provider
        self.fail = fail
        self.sent = []

    async def send(self, destination, code, purpose, expires_minutes=None):
        self.sent.append((destination, code, purpose, expires_minutes))
        if self.fail:
            return DeliveryOutcome(success=False, provider=self.provider, error=f"{self.provider} unavailable")
        return DeliveryOutcome(success=True, provider=self.provider, provider_message_id=f"msg-{len(self.sent)}")

    @property
    def last_code(self):
        return self.sent[-1][1]

    @property
    def last_destination(self):
        return self.sent[-1][0]

    @property
    def last_expires_minutes(self):
        return self.sent[-1][3]


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_request(phone=None, email=None, purpose=Purpose.SIGNUP, **kwargs) -> OtpRequest:
    identifiers = []
    if phone:
        identifiers.append(ContactIdentifier(kind=IdentifierKind.PHONE, value=phone))
    if email:
        identifiers.append(ContactIdentifier(kind=IdentifierKind.EMAIL, value=email))
    return OtpRequest(identifiers=identifiers, purpose=purpose, **kwargs)


@pytest.fixture
async def db_session():
    """Session on a private in-memory SQLite database"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request, db_session):
    if request.param == "sql":
        return SqlRecordStore(db_session)
    return InMemoryRecordStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapters():
    return {
        Channel.SMS: FakeAdapter("fake-sms"),
        Channel.EMAIL: FakeAdapter("fake-email"),
        Channel.WHATSAPP: FakeAdapter("fake-whatsapp"),
    }


@pytest.fixture
def dispatcher(adapters):
    return ChannelDispatcher(adapters)


@pytest.fixture
def otp_service(store, dispatcher, clock):
    return OtpService(store, dispatcher, ChannelPolicy(whatsapp_fallback=True), clock=clock)


@pytest.fixture
def verifier(store, clock):
    return OtpVerifier(store, clock=clock)
