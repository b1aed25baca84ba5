import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.otp import OtpVerification
from app.schemas.otp import Channel, CHANNEL_CONTACT_KIND, IdentifierKind, Purpose, RecordState
from app.utils.exceptions import StoreUnavailableError
from app.utils.logger import get_logger, mask_identifier

logger = get_logger(__name__)

LookupKey = Union[uuid.UUID, str]


@dataclass
class VerificationRecord:
    identifier: str
    code_hash: str
    purpose: Purpose
    channel: Channel
    expires_at: datetime
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    secondary_identifier: Optional[str] = None
    fallback_channels: List[Channel] = field(default_factory=list)
    attempts: int = 0
    max_attempts: int = 3
    used: bool = False
    created_at: Optional[datetime] = None
    last_sent_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    associated_user_id: Optional[uuid.UUID] = None
    associated_order_id: Optional[uuid.UUID] = None

    def is_active(self, now: datetime) -> bool:
        return not self.used and self.expires_at > now

    def state(self, now: datetime) -> RecordState:
        if self.used:
            return RecordState.VERIFIED
        if self.expires_at <= now:
            return RecordState.EXPIRED
        if self.attempts >= self.max_attempts:
            if self.fallback_channels:
                return RecordState.AWAITING_FALLBACK_RESEND
            return RecordState.EXHAUSTED
        return RecordState.PENDING

    def contact_for(self, kind: IdentifierKind) -> Optional[str]:
        """Contact address of the given kind, if the record has one"""
        if CHANNEL_CONTACT_KIND[self.channel] == kind:
            return self.identifier
        return self.secondary_identifier

    def contacts(self) -> List[str]:
        return [value for value in (self.identifier, self.secondary_identifier) if value]

    def switched_to(self, channel: Channel) -> Dict[str, Any]:
        """Field values that move the record onto another channel"""
        kind = CHANNEL_CONTACT_KIND[channel]
        other = IdentifierKind.EMAIL if kind == IdentifierKind.PHONE else IdentifierKind.PHONE
        return {
            "channel": channel,
            "identifier": self.contact_for(kind),
            "secondary_identifier": self.contact_for(other),
            "fallback_channels": [c for c in self.fallback_channels if c != channel],
        }


class RecordStore(ABC):
    """Storage contract for verification records"""

    @abstractmethod
    async def put(self, record: VerificationRecord) -> None: ...

    @abstractmethod
    async def get(self, record_id: uuid.UUID) -> Optional[VerificationRecord]: ...

    @abstractmethod
    async def get_by_id_or_identifier(
        self,
        key: LookupKey,
        purpose: Purpose,
        now: datetime,
        channel: Optional[Channel] = None
    ) -> List[VerificationRecord]:
        """Active (unused, unexpired) candidates for the key, newest first"""

    @abstractmethod
    async def find_latest_by_order(self, order_id: uuid.UUID) -> Optional[VerificationRecord]: ...

    @abstractmethod
    async def update(self, record_id: uuid.UUID, values: Dict[str, Any], require_unused: bool = True) -> bool: ...

    @abstractmethod
    async def increment_attempts(self, record_id: uuid.UUID) -> Optional[int]:
        """Atomically reserve one attempt; None once max_attempts is reached"""

    @abstractmethod
    async def mark_used(self, record_id: uuid.UUID, code_hash: str, now: datetime) -> bool:
        """Compare-and-set used=False -> True while code_hash is still current; False otherwise"""

    @abstractmethod
    async def supersede(
        self,
        identifiers: Iterable[str],
        purpose: Purpose,
        now: datetime,
        exclude_id: Optional[uuid.UUID] = None
    ) -> int: ...

    @abstractmethod
    async def delete(self, record_id: uuid.UUID) -> None: ...

    @abstractmethod
    async def delete_expired(self, before: datetime) -> int: ...


def _to_record(row: OtpVerification) -> VerificationRecord:
    return VerificationRecord(
        id=row.id,
        identifier=row.identifier,
        secondary_identifier=row.secondary_identifier,
        code_hash=row.code_hash,
        purpose=Purpose(row.purpose),
        channel=Channel(row.channel),
        fallback_channels=[Channel(c) for c in (row.fallback_channels or [])],
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        used=row.used,
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_sent_at=row.last_sent_at,
        verified_at=row.verified_at,
        associated_user_id=row.associated_user_id,
        associated_order_id=row.associated_order_id,
    )


def _column_values(values: Dict[str, Any]) -> Dict[str, Any]:
    columns = {}
    for name, value in values.items():
        if name == "fallback_channels":
            value = [Channel(c).value for c in value]
        elif isinstance(value, Enum):
            value = value.value
        columns[name] = value
    return columns


class SqlRecordStore(RecordStore):
    """Durable store backed by the otp_verifications table"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _execute(self, statement, commit: bool = False):
        try:
            result = await self.db.execute(statement)
            if commit:
                await self.db.commit()
            return result
        except (SQLAlchemyError, OSError) as e:
            await self._rollback()
            raise StoreUnavailableError(str(e)) from e

    async def _rollback(self):
        try:
            await self.db.rollback()
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Rollback after store failure also failed: {e}")

    async def _select(self, statement) -> List[VerificationRecord]:
        result = await self._execute(statement.execution_options(populate_existing=True))
        return [_to_record(row) for row in result.scalars().all()]

    async def put(self, record: VerificationRecord) -> None:
        row = OtpVerification(
            id=record.id,
            identifier=record.identifier,
            secondary_identifier=record.secondary_identifier,
            code_hash=record.code_hash,
            purpose=record.purpose.value,
            channel=record.channel.value,
            fallback_channels=[c.value for c in record.fallback_channels],
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            used=record.used,
            created_at=record.created_at,
            expires_at=record.expires_at,
            last_sent_at=record.last_sent_at,
            verified_at=record.verified_at,
            associated_user_id=record.associated_user_id,
            associated_order_id=record.associated_order_id,
        )
        try:
            await self.db.merge(row)
            await self.db.commit()
        except (SQLAlchemyError, OSError) as e:
            await self._rollback()
            raise StoreUnavailableError(str(e)) from e

    async def get(self, record_id: uuid.UUID) -> Optional[VerificationRecord]:
        records = await self._select(select(OtpVerification).where(OtpVerification.id == record_id))
        return records[0] if records else None

    async def get_by_id_or_identifier(
        self,
        key: LookupKey,
        purpose: Purpose,
        now: datetime,
        channel: Optional[Channel] = None
    ) -> List[VerificationRecord]:
        query = select(OtpVerification).where(
            OtpVerification.purpose == purpose.value,
            OtpVerification.used == False,  # noqa: E712
            OtpVerification.expires_at > now
        )
        if isinstance(key, uuid.UUID):
            query = query.where(OtpVerification.id == key)
        else:
            query = query.where(or_(
                OtpVerification.identifier == key,
                OtpVerification.secondary_identifier == key
            ))
        if channel is not None:
            query = query.where(OtpVerification.channel == channel.value)

        return await self._select(query.order_by(OtpVerification.created_at.desc()))

    async def find_latest_by_order(self, order_id: uuid.UUID) -> Optional[VerificationRecord]:
        query = select(OtpVerification).where(
            OtpVerification.associated_order_id == order_id
        ).order_by(OtpVerification.created_at.desc()).limit(1)
        records = await self._select(query)
        return records[0] if records else None

    async def update(self, record_id: uuid.UUID, values: Dict[str, Any], require_unused: bool = True) -> bool:
        statement = update(OtpVerification).where(OtpVerification.id == record_id)
        if require_unused:
            statement = statement.where(OtpVerification.used == False)  # noqa: E712
        statement = statement.values(**_column_values(values)).execution_options(synchronize_session=False)
        result = await self._execute(statement, commit=True)
        return result.rowcount == 1

    async def increment_attempts(self, record_id: uuid.UUID) -> Optional[int]:
        statement = update(OtpVerification).where(
            OtpVerification.id == record_id,
            OtpVerification.used == False,  # noqa: E712
            OtpVerification.attempts < OtpVerification.max_attempts
        ).values(
            attempts=OtpVerification.attempts + 1
        ).returning(OtpVerification.attempts).execution_options(synchronize_session=False)
        result = await self._execute(statement, commit=True)
        return result.scalar_one_or_none()

    async def mark_used(self, record_id: uuid.UUID, code_hash: str, now: datetime) -> bool:
        statement = update(OtpVerification).where(
            OtpVerification.id == record_id,
            OtpVerification.code_hash == code_hash,
            OtpVerification.used == False,  # noqa: E712
            OtpVerification.attempts <= OtpVerification.max_attempts,
            OtpVerification.expires_at > now
        ).values(used=True, verified_at=now).execution_options(synchronize_session=False)
        result = await self._execute(statement, commit=True)
        return result.rowcount == 1

    async def supersede(
        self,
        identifiers: Iterable[str],
        purpose: Purpose,
        now: datetime,
        exclude_id: Optional[uuid.UUID] = None
    ) -> int:
        identifiers = list(identifiers)
        if not identifiers:
            return 0
        statement = update(OtpVerification).where(
            OtpVerification.purpose == purpose.value,
            OtpVerification.used == False,  # noqa: E712
            OtpVerification.expires_at > now,
            or_(
                OtpVerification.identifier.in_(identifiers),
                OtpVerification.secondary_identifier.in_(identifiers)
            )
        )
        if exclude_id is not None:
            statement = statement.where(OtpVerification.id != exclude_id)
        statement = statement.values(expires_at=now).execution_options(synchronize_session=False)
        result = await self._execute(statement, commit=True)
        return result.rowcount

    async def delete(self, record_id: uuid.UUID) -> None:
        await self._execute(delete(OtpVerification).where(OtpVerification.id == record_id), commit=True)

    async def delete_expired(self, before: datetime) -> int:
        statement = delete(OtpVerification).where(OtpVerification.expires_at < before)
        result = await self._execute(statement, commit=True)
        return result.rowcount


class InMemoryRecordStore(RecordStore):
    """
    Process-local store used when the database cannot be reached.

    Records do not survive a restart and are invisible to other instances.
    None of the check-then-write sequences below await, so each one runs
    without interleaving on the event loop.
    """

    def __init__(self, retention: Optional[timedelta] = None):
        self.records: Dict[uuid.UUID, VerificationRecord] = {}
        self.retention = retention or timedelta(hours=settings.OTP_RETENTION_HOURS)

    def __contains__(self, record_id: uuid.UUID) -> bool:
        return record_id in self.records

    def __len__(self) -> int:
        return len(self.records)

    def _prune(self, now: datetime) -> None:
        cutoff = now - self.retention
        for record_id in [r.id for r in self.records.values() if r.expires_at < cutoff]:
            del self.records[record_id]

    @staticmethod
    def _copy(record: VerificationRecord) -> VerificationRecord:
        return replace(record, fallback_channels=list(record.fallback_channels))

    async def put(self, record: VerificationRecord) -> None:
        self.records[record.id] = self._copy(record)

    async def get(self, record_id: uuid.UUID) -> Optional[VerificationRecord]:
        record = self.records.get(record_id)
        return self._copy(record) if record else None

    async def get_by_id_or_identifier(
        self,
        key: LookupKey,
        purpose: Purpose,
        now: datetime,
        channel: Optional[Channel] = None
    ) -> List[VerificationRecord]:
        self._prune(now)
        if isinstance(key, uuid.UUID):
            candidates = [self.records[key]] if key in self.records else []
        else:
            candidates = [r for r in self.records.values() if key in r.contacts()]

        matches = [
            self._copy(r) for r in candidates
            if r.purpose == purpose and r.is_active(now) and (channel is None or r.channel == channel)
        ]
        return sorted(matches, key=lambda r: r.created_at or now, reverse=True)

    async def find_latest_by_order(self, order_id: uuid.UUID) -> Optional[VerificationRecord]:
        matches = [r for r in self.records.values() if r.associated_order_id == order_id]
        if not matches:
            return None
        return self._copy(max(matches, key=lambda r: r.created_at or datetime.min))

    async def update(self, record_id: uuid.UUID, values: Dict[str, Any], require_unused: bool = True) -> bool:
        record = self.records.get(record_id)
        if record is None or (require_unused and record.used):
            return False
        for name, value in values.items():
            setattr(record, name, list(value) if name == "fallback_channels" else value)
        return True

    async def increment_attempts(self, record_id: uuid.UUID) -> Optional[int]:
        record = self.records.get(record_id)
        if record is None or record.used or record.attempts >= record.max_attempts:
            return None
        record.attempts += 1
        return record.attempts

    async def mark_used(self, record_id: uuid.UUID, code_hash: str, now: datetime) -> bool:
        record = self.records.get(record_id)
        if (
            record is None
            or record.used
            or record.code_hash != code_hash
            or record.attempts > record.max_attempts
            or record.expires_at <= now
        ):
            return False
        record.used = True
        record.verified_at = now
        return True

    async def supersede(
        self,
        identifiers: Iterable[str],
        purpose: Purpose,
        now: datetime,
        exclude_id: Optional[uuid.UUID] = None
    ) -> int:
        identifiers = set(identifiers)
        count = 0
        for record in self.records.values():
            if (
                record.id != exclude_id
                and record.purpose == purpose
                and record.is_active(now)
                and identifiers.intersection(record.contacts())
            ):
                record.expires_at = now
                count += 1
        return count

    async def delete(self, record_id: uuid.UUID) -> None:
        self.records.pop(record_id, None)

    async def delete_expired(self, before: datetime) -> int:
        expired = [r.id for r in self.records.values() if r.expires_at < before]
        for record_id in expired:
            del self.records[record_id]
        return len(expired)


class ResilientRecordStore(RecordStore):
    """
    Durable store first, in-process store when the database is unreachable.

    A record written in degraded mode stays in the in-process store for its
    whole life; every switch to degraded mode is logged.
    """

    def __init__(self, primary: RecordStore, fallback: InMemoryRecordStore):
        self.primary = primary
        self.fallback = fallback

    def _store_for(self, record_id: uuid.UUID) -> RecordStore:
        return self.fallback if record_id in self.fallback else self.primary

    async def put(self, record: VerificationRecord) -> None:
        if record.id in self.fallback:
            await self.fallback.put(record)
            return
        try:
            await self.primary.put(record)
        except StoreUnavailableError as e:
            logger.warning(
                f"Record store unavailable, keeping OTP {record.id} for "
                f"{mask_identifier(record.identifier)} in process memory "
                f"(not shared across instances, lost on restart): {e}"
            )
            await self.fallback.put(record)

    async def get(self, record_id: uuid.UUID) -> Optional[VerificationRecord]:
        return await self._store_for(record_id).get(record_id)

    async def get_by_id_or_identifier(
        self,
        key: LookupKey,
        purpose: Purpose,
        now: datetime,
        channel: Optional[Channel] = None
    ) -> List[VerificationRecord]:
        local = await self.fallback.get_by_id_or_identifier(key, purpose, now, channel)
        try:
            remote = await self.primary.get_by_id_or_identifier(key, purpose, now, channel)
        except StoreUnavailableError:
            if not local:
                raise
            logger.warning("Record store unavailable, verifying against in-process records only")
            remote = []
        return sorted(local + remote, key=lambda r: r.created_at or now, reverse=True)

    async def find_latest_by_order(self, order_id: uuid.UUID) -> Optional[VerificationRecord]:
        local = await self.fallback.find_latest_by_order(order_id)
        try:
            remote = await self.primary.find_latest_by_order(order_id)
        except StoreUnavailableError:
            if local is None:
                raise
            remote = None
        candidates = [r for r in (local, remote) if r is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda r: r.created_at or datetime.min)

    async def update(self, record_id: uuid.UUID, values: Dict[str, Any], require_unused: bool = True) -> bool:
        return await self._store_for(record_id).update(record_id, values, require_unused)

    async def increment_attempts(self, record_id: uuid.UUID) -> Optional[int]:
        return await self._store_for(record_id).increment_attempts(record_id)

    async def mark_used(self, record_id: uuid.UUID, code_hash: str, now: datetime) -> bool:
        return await self._store_for(record_id).mark_used(record_id, code_hash, now)

    async def supersede(
        self,
        identifiers: Iterable[str],
        purpose: Purpose,
        now: datetime,
        exclude_id: Optional[uuid.UUID] = None
    ) -> int:
        identifiers = list(identifiers)
        count = await self.fallback.supersede(identifiers, purpose, now, exclude_id)
        try:
            count += await self.primary.supersede(identifiers, purpose, now, exclude_id)
        except StoreUnavailableError as e:
            logger.warning(f"Could not supersede earlier OTPs in the record store: {e}")
        return count

    async def delete(self, record_id: uuid.UUID) -> None:
        await self._store_for(record_id).delete(record_id)

    async def delete_expired(self, before: datetime) -> int:
        count = await self.fallback.delete_expired(before)
        return count + await self.primary.delete_expired(before)
