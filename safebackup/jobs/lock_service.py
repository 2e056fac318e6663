from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from safebackup.core.config import Settings
from safebackup.db.models import JobLock

BACKUP_BATCH_LOCK_KEY = "backup_batch"


class JobLockService:
    def __init__(self, settings: Settings):
        self._settings = settings

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def acquire(self, session: Session, lock_key: str, owner_token: str) -> bool:
        now = self._now()
        expires_at = now + timedelta(seconds=self._settings.lock_ttl_seconds)

        session.execute(
            delete(JobLock).where(
                JobLock.lock_key == lock_key,
                JobLock.expires_at <= now,
            )
        )

        lock = JobLock(
            lock_key=lock_key,
            owner_token=owner_token,
            acquired_at=now,
            heartbeat_at=now,
            expires_at=expires_at,
        )
        session.add(lock)

        try:
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False

    def refresh(self, session: Session, lock_key: str, owner_token: str, *, commit: bool = True) -> bool:
        """Extend the lease if ``owner_token`` still holds it.

        With ``commit=False`` the heartbeat joins the caller's transaction.
        """
        now = self._now()
        expires_at = now + timedelta(seconds=self._settings.lock_ttl_seconds)

        lock = session.scalar(
            select(JobLock).where(
                JobLock.lock_key == lock_key,
                JobLock.owner_token == owner_token,
            )
        )
        if lock is None:
            return False

        lock.heartbeat_at = now
        lock.expires_at = expires_at
        if commit:
            session.commit()
        else:
            session.flush()
        return True

    def release(self, session: Session, lock_key: str, owner_token: str) -> None:
        session.execute(
            delete(JobLock).where(
                JobLock.lock_key == lock_key,
                JobLock.owner_token == owner_token,
            )
        )
        session.commit()

    def force_release(self, session: Session, lock_key: str) -> None:
        session.execute(delete(JobLock).where(JobLock.lock_key == lock_key))
        session.commit()

    def is_held(self, session: Session, lock_key: str) -> bool:
        lock = session.scalar(select(JobLock).where(JobLock.lock_key == lock_key))
        if lock is None:
            return False
        return self._coerce_utc(lock.expires_at) > self._now()
