from datetime import timedelta
from typing import Optional

from app.config import settings
from app.services.record_store import RecordStore
from app.utils.clock import utcnow


class CleanupService:
    def __init__(self, store: RecordStore):
        self.store = store

    async def cleanup_expired_otps(self, retention: Optional[timedelta] = None) -> int:
        """Remove OTP records that expired more than `retention` ago"""
        if retention is None:
            retention = timedelta(hours=settings.OTP_RETENTION_HOURS)
        return await self.store.delete_expired(utcnow() - retention)
